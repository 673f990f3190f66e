"""
Admission Scoring Engine

Turns a candidate snapshot plus whatever on-chain insights could be fetched
into an accept/reject verdict with a 0-100 confidence score.

Components (points):
- Bonding curve position (25)
- Contract security (20)
- Holder distribution (20)
- Volume / buy ratio (15)
- Curve velocity (15, stalled curves are penalized)
- Liquidity depth (10)
- Age window (5)
- Metadata (5)

Adjustments: +10 sweet spot with clean distribution, -20 when deployer share
and top-10 concentration are both high, +10 momentum waiver.
"""
from __future__ import annotations

from pump_trader.config import AdmissionBounds, AdmissionConfig, AdmissionMode
from pump_trader.core.bonding_curve import curve_progress, growth_rate_per_min, liquidity_growth
from pump_trader.core.models import AdmissionVerdict, Candidate, RiskTier, TokenInsights

SWEET_SPOT = (5.0, 15.0)
OPTIMAL_AGE_SEC = (30.0, 300.0)
LENIENT_FREEZE_PENALTY = 15.0
MOMENTUM_BONUS = 10.0
DISTRIBUTION_BONUS = 10.0
CONCENTRATION_PENALTY = 20.0


def risk_tier_for(score: float) -> RiskTier:
    if score >= 70:
        return RiskTier.LOW
    if score >= 50:
        return RiskTier.MEDIUM
    if score >= 30:
        return RiskTier.HIGH
    return RiskTier.CRITICAL


class AdmissionScorer:
    """
    Pure scoring over a candidate. No I/O: insights are fetched by the caller.

    Usage:
        scorer = AdmissionScorer(load_admission_config(path))
        verdict = scorer.score(candidate, AdmissionMode.STANDARD, insights, now)
        if verdict.passed:
            ...
    """

    def __init__(self, config: AdmissionConfig | None = None) -> None:
        self.config = config or AdmissionConfig()

    def score(
        self,
        candidate: Candidate,
        mode: AdmissionMode,
        insights: TokenInsights | None,
        now: float,
    ) -> AdmissionVerdict:
        bounds = self.config.for_mode(mode)
        lenient = mode == AdmissionMode.LENIENT
        reasons: list[str] = []
        warnings: list[str] = []
        strengths: list[str] = []

        degraded = insights is None
        if degraded:
            insights = TokenInsights()
            warnings.append("Data source unavailable: scored from reserves only")

        progress = curve_progress(candidate.token_reserve)
        age = candidate.age_sec(now)
        liquidity = candidate.sol_reserve
        growth = liquidity_growth(liquidity)
        momentum = growth_rate_per_min(liquidity, age)
        waiver = momentum > bounds.momentum_waiver_rate

        def reject(reason: str) -> AdmissionVerdict:
            reasons.append(reason)
            return AdmissionVerdict(
                score=0.0,
                risk_tier=RiskTier.CRITICAL,
                passed=False,
                reject_reasons=reasons,
                warnings=warnings,
                strengths=strengths,
                progress=progress,
                degraded=degraded,
            )

        score = 0.0

        # === HARD REJECTS ===
        if insights.freeze_authority_active:
            if not lenient:
                return reject("Freeze authority active (honeypot)")
            score -= LENIENT_FREEZE_PENALTY
            warnings.append("Freeze authority active")

        if not (lenient and waiver):
            min_progress = 0.0 if waiver else bounds.min_progress
            if progress < min_progress or progress > bounds.max_progress:
                return reject(
                    f"Bonding curve {progress:.1f}% outside {min_progress:.0f}-{bounds.max_progress:.0f}%"
                )

        if liquidity < bounds.min_liquidity_sol:
            return reject(f"Liquidity {liquidity:.2f} SOL below {bounds.min_liquidity_sol:.2f}")

        deployer = insights.deployer_pct
        if deployer is not None and deployer > bounds.max_deployer_pct:
            if not lenient or deployer >= bounds.lenient_deployer_ceiling_pct:
                return reject(f"Deployer holds {deployer:.1f}%")
            warnings.append(f"High deployer share {deployer:.1f}%")

        top10 = insights.top10_pct
        if top10 is not None and top10 > bounds.max_top10_pct:
            if not lenient or top10 >= bounds.lenient_top10_ceiling_pct:
                return reject(f"Top 10 holders own {top10:.1f}%")
            warnings.append(f"High top-10 concentration {top10:.1f}%")

        # === WEIGHTED SCORING ===
        score += self._score_progress(progress, strengths)
        score += self._score_security(insights, warnings, strengths)
        score += self._score_holders(insights, warnings, strengths)
        score += self._score_volume(insights, warnings, strengths)
        score += self._score_velocity(progress, age, bounds, warnings, strengths)
        score += self._score_liquidity(growth, strengths)
        if OPTIMAL_AGE_SEC[0] <= age <= OPTIMAL_AGE_SEC[1]:
            score += 5
        if insights.has_metadata or candidate.uri or candidate.name:
            score += 5
        else:
            warnings.append("No metadata")

        # === COMBINATIONS ===
        in_sweet_spot = SWEET_SPOT[0] <= progress <= SWEET_SPOT[1]
        if in_sweet_spot and deployer is not None and top10 is not None and deployer < 10 and top10 < 40:
            score += DISTRIBUTION_BONUS
            strengths.append("Sweet spot with clean distribution")
        if deployer is not None and top10 is not None and deployer >= 15 and top10 >= 50:
            score -= CONCENTRATION_PENALTY
            warnings.append("High deployer share with concentrated holders")
        if waiver:
            score += MOMENTUM_BONUS
            strengths.append(f"Momentum {momentum:.1f} SOL/min")

        score = max(0.0, min(100.0, score))

        if lenient:
            passed = score > bounds.pass_score and liquidity >= bounds.min_liquidity_sol
        else:
            passed = score >= bounds.pass_score
        if not passed:
            reasons.append(f"Score {score:.0f} below {bounds.pass_score:.0f}")

        return AdmissionVerdict(
            score=score,
            risk_tier=risk_tier_for(score),
            passed=passed,
            reject_reasons=reasons,
            warnings=warnings,
            strengths=strengths,
            progress=progress,
            degraded=degraded,
        )

    @staticmethod
    def _score_progress(progress: float, strengths: list[str]) -> float:
        if SWEET_SPOT[0] <= progress <= SWEET_SPOT[1]:
            strengths.append(f"Bonding curve sweet spot ({progress:.1f}%)")
            return 25
        if SWEET_SPOT[1] < progress <= 30:
            return 15
        if progress < SWEET_SPOT[0]:
            return 10
        if progress <= 60:
            return 5
        return 0

    @staticmethod
    def _score_security(insights: TokenInsights, warnings: list[str], strengths: list[str]) -> float:
        points = 0.0
        for label, active in (
            ("Freeze", insights.freeze_authority_active),
            ("Mint", insights.mint_authority_active),
        ):
            if active is None:
                points += 5
                warnings.append(f"{label} authority unknown")
            elif not active:
                points += 10
            else:
                warnings.append(f"{label} authority active")
        if points >= 20:
            strengths.append("Authorities revoked")
        return points

    @staticmethod
    def _score_holders(insights: TokenInsights, warnings: list[str], strengths: list[str]) -> float:
        if insights.holder_count is None and insights.deployer_pct is None and insights.top10_pct is None:
            warnings.append("Holder data unavailable")
            return 6
        points = 0.0
        count = insights.holder_count
        if count is not None:
            if count >= 20:
                points += 8
                strengths.append(f"{count} holders")
            elif count >= 10:
                points += 6
            elif count >= 5:
                points += 4
        deployer = insights.deployer_pct
        if deployer is not None:
            if deployer < 5:
                points += 6
            elif deployer < 15:
                points += 3
        top10 = insights.top10_pct
        if top10 is not None:
            if top10 < 20:
                points += 6
            elif top10 < 40:
                points += 4
            elif top10 < 60:
                points += 2
        return points

    @staticmethod
    def _score_volume(insights: TokenInsights, warnings: list[str], strengths: list[str]) -> float:
        if insights.volume_sol is None and insights.buy_ratio is None:
            warnings.append("Volume data unavailable")
            return 5
        points = 0.0
        volume = insights.volume_sol or 0.0
        if volume >= 5:
            points += 8
        elif volume >= 1:
            points += 5
        elif volume > 0:
            points += 2
        ratio = insights.buy_ratio
        if ratio is not None:
            if ratio >= 0.6:
                points += 7
                strengths.append(f"Buy pressure {ratio * 100:.0f}%")
            elif ratio >= 0.5:
                points += 4
            else:
                warnings.append(f"Sell pressure: buys {ratio * 100:.0f}%")
        return points

    @staticmethod
    def _score_velocity(
        progress: float,
        age: float,
        bounds: AdmissionBounds,
        warnings: list[str],
        strengths: list[str],
    ) -> float:
        if age < 1:
            return 0
        velocity = progress / age * 60.0
        if velocity <= 0 or velocity < bounds.min_velocity:
            warnings.append(f"Stalled curve ({velocity:.2f}%/min)")
            return -10
        if 0.5 <= velocity <= 5:
            strengths.append(f"Organic velocity ({velocity:.1f}%/min)")
            return 15
        if 0.1 <= velocity < 0.5:
            return 8
        if 5 < velocity <= 10:
            return 5
        if velocity > 10:
            warnings.append(f"Pump velocity ({velocity:.1f}%/min)")
        return 0

    @staticmethod
    def _score_liquidity(growth: float, strengths: list[str]) -> float:
        if growth >= 5:
            strengths.append(f"Deep liquidity (+{growth:.1f} SOL)")
            return 10
        if growth >= 2:
            return 7
        if growth >= 0.5:
            return 4
        if growth > 0:
            return 2
        return 0
