"""
Trading engine: one message channel, one consumer.

Producers:
- heartbeat timer posts Tick messages
- PumpPortal stream posts Candidate and TradeUpdate messages

The consumer refreshes prices and evaluates exits on every Tick (and on trade
pushes for held mints), and hands candidates to the admission pipeline.
Order I/O runs in tracked tasks on the same event loop, so every state
mutation happens on a single thread between suspension points.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable

from pump_trader.config import Settings, load_admission_config
from pump_trader.core.admission_scorer import AdmissionScorer
from pump_trader.core.bonding_curve import spot_price
from pump_trader.core.circuit_breaker import DataSourceGuard
from pump_trader.core.exit_evaluator import ExitEvaluator, build_exit_plan
from pump_trader.core.lifecycle import TradeLifecycleManager
from pump_trader.core.market_data import MarketDataGateway
from pump_trader.core.models import Candidate, ExitAction, ExitReason, PortfolioStats, Position, TokenInsights
from pump_trader.core.persistence import StateRepository
from pump_trader.core.position_store import PositionStore
from pump_trader.core.price_engine import PriceEngine
from pump_trader.core.pumpportal_client import PumpPortalClient, TradeUpdate
from pump_trader.core.rug_prefilter import RugPreFilter
from pump_trader.core.sizing import PositionSizer
from pump_trader.core.trade_executor import LiveExecutor, PaperExecutor, PumpPortalTrader, TradeExecutor
from pump_trader.core.vault import ProfitVault
from pump_trader.core.wallet import WalletSigner
from pump_trader.exceptions import DataSourceException, DataSourceTimeout
from pump_trader.utils.time import utc_ts


@dataclass(frozen=True)
class Tick:
    ts: float


class Bot:
    CHANNEL_SIZE = 1000
    SYNC_EVERY_TICKS = 5
    STATUS_EVERY_SEC = 30.0
    PUSH_MIN_INTERVAL_SEC = 0.5

    def __init__(
        self,
        settings: Settings,
        gateway: MarketDataGateway | None = None,
        executor: TradeExecutor | None = None,
        stream: PumpPortalClient | None = None,
        repository: StateRepository | None = None,
    ) -> None:
        self.settings = settings
        self.logger = logging.getLogger("pump_trader.bot")
        self.mode = settings.admission_mode
        self.channel: asyncio.Queue = asyncio.Queue(maxsize=self.CHANNEL_SIZE)

        self.gateway = gateway or MarketDataGateway(settings)
        self.executor = executor or self._build_executor()
        self.stream = stream or PumpPortalClient(settings, self.channel)
        self.repository = repository or StateRepository(settings.STATE_PATH)

        self.store = PositionStore(history_limit=settings.HISTORY_LIMIT)
        self.guard = DataSourceGuard(settings)
        self.prefilter = RugPreFilter(settings)
        self.scorer = AdmissionScorer(load_admission_config(settings.ADMISSION_CONFIG_PATH))
        self.sizer = PositionSizer(settings)
        self.evaluator = ExitEvaluator(settings)
        self.vault = ProfitVault()
        self.vault.set_enabled(settings.PROTECTION_ENABLED)
        self.vault.set_percent(settings.PROTECTION_PERCENT)
        self.lifecycle = TradeLifecycleManager(
            settings,
            self.store,
            self.executor,
            self.vault,
            repository=self.repository,
            stats=PortfolioStats(),
            on_close=self._on_position_closed,
        )
        self.prices = PriceEngine(settings, self.gateway, self.store, self.guard, secondary=self.stream)

        self._running = False
        self._tasks: set[asyncio.Task] = set()
        self._pending_buys: set[str] = set()
        self._tick_count = 0
        self._last_tick_at = 0.0
        self._last_status_at = 0.0

    def _build_executor(self) -> TradeExecutor:
        if self.settings.PAPER_TRADING_MODE:
            self.logger.info("📝 PAPER TRADING MODE (balance %.2f SOL)", self.settings.PAPER_STARTING_BALANCE_SOL)
            return PaperExecutor(self.settings)
        wallet = WalletSigner(self.settings.PRIVATE_KEY)
        trader = PumpPortalTrader(self.settings, wallet, self.gateway.client)
        return LiveExecutor(self.settings, trader, self.gateway)

    # ============================================
    # RUN LOOP
    # ============================================

    async def run(self) -> None:
        self.lifecycle.restore()
        self._running = True
        held = [p.mint for p in self.store.all()]
        if held:
            await self.stream.subscribe_trades(held)
        self.logger.info(
            "🤖 Engine started: mode=%s trade=%.3f SOL max=%d positions=%d",
            self.mode.value,
            self.settings.TRADE_AMOUNT_SOL,
            self.settings.MAX_POSITIONS,
            len(held),
        )

        stream_task = asyncio.create_task(self.stream.start(), name="stream")
        heartbeat_task = asyncio.create_task(self._heartbeat(), name="heartbeat")
        try:
            await self._consume()
        finally:
            self._running = False
            for task in (stream_task, heartbeat_task):
                task.cancel()
            await self._shutdown(stream_task, heartbeat_task)

    async def _heartbeat(self) -> None:
        while self._running:
            await asyncio.sleep(self.settings.HEARTBEAT_SEC)
            self._post(Tick(utc_ts()))

    def _post(self, message: Any) -> None:
        try:
            self.channel.put_nowait(message)
        except asyncio.QueueFull:
            self.logger.warning("Channel full, dropping %s", type(message).__name__)

    async def _consume(self) -> None:
        while self._running:
            message = await self.channel.get()
            if isinstance(message, Tick):
                await self.on_tick(message.ts)
            elif isinstance(message, Candidate):
                self._spawn(self.handle_candidate(message))
            elif isinstance(message, TradeUpdate):
                await self.on_trade_update(message)

    def stop(self) -> None:
        self._running = False
        # Wake the consumer so it sees the flag
        self._post(Tick(utc_ts()))

    async def _shutdown(self, *tasks: asyncio.Task) -> None:
        pending = list(tasks) + list(self._tasks)
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        await self.stream.stop()
        self.lifecycle.persist()
        await self.gateway.close()
        self.logger.info("🛑 Engine stopped")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error("Background task failed: %r", error, exc_info=error)

    # ============================================
    # TICK
    # ============================================

    async def on_tick(self, now: float) -> None:
        self._last_tick_at = now
        self._tick_count += 1

        rugged = await self.prices.refresh(now)
        for mint in rugged:
            self._spawn(self.lifecycle.sell(mint, ExitAction(100.0, ExitReason.RUG), now))

        for position in self.store.open_positions():
            if position.mint in rugged or self.lifecycle.is_busy(position.mint):
                continue
            action = self.evaluator.evaluate(position, now)
            if action is not None:
                self.logger.info(
                    "📉 EXIT SIGNAL %s: %s %.0f%% (pnl %.1f%%, peak %.1f%%)",
                    position.symbol,
                    action.reason.value,
                    action.percent,
                    position.pnl_percent,
                    position.peak_gain_percent,
                )
                self._spawn(self.lifecycle.sell(position.mint, action, now))

        if self.lifecycle.stale_positions(now):
            self._spawn(self.lifecycle.enforce_policies(now))
        if self._tick_count % self.SYNC_EVERY_TICKS == 0 and not self.executor.paper:
            self._spawn(self.lifecycle.sync(now))
        if now - self._last_status_at >= self.STATUS_EVERY_SEC:
            self._last_status_at = now
            self._log_status()

    async def on_trade_update(self, update: TradeUpdate) -> None:
        position = self.store.get(update.mint)
        if position is None:
            return
        if update.ts - self._last_tick_at >= self.PUSH_MIN_INTERVAL_SEC:
            await self.on_tick(update.ts)

    def _log_status(self) -> None:
        stats = self.lifecycle.stats
        breaker = self.guard.breaker.get_status()
        self.logger.info(
            "📊 open=%d closed=%d pnl=%+.4f SOL W/L %d/%d vault=%.4f | rpc %s (%d errors, %d mints cooling)",
            self.store.active_count(),
            len(self.store.history()),
            stats.realized_pnl,
            stats.wins,
            stats.losses,
            self.vault.balance,
            breaker["state"],
            breaker["failures"],
            len(self.guard.cooling_mints()),
        )

    def _on_position_closed(self, mint: str) -> None:
        if self._running:
            self._spawn(self.stream.unsubscribe_trades([mint]))

    # ============================================
    # ADMISSION
    # ============================================

    async def handle_candidate(self, candidate: Candidate) -> bool:
        """Run one candidate through pre-filter, scoring, sizing and the buy. True if a position opened."""
        now = utc_ts()
        pre = self.prefilter.check(candidate, self.mode, now)
        if not pre.passed:
            self.logger.info("🚫 REJECT %s (prefilter): %s", candidate.symbol, pre.reason)
            return False

        gate = self.sizer.check_admission(candidate.mint, self.store, now, len(self._pending_buys))
        if not gate.allowed or candidate.mint in self._pending_buys:
            self.logger.info("🔇 SKIP %s: %s", candidate.symbol, gate.reason if not gate.allowed else "PENDING")
            return False

        self._pending_buys.add(candidate.mint)
        position = None
        try:
            # Trades pushed while the candidate is evaluated feed its volume signal
            await self.stream.subscribe_trades([candidate.mint])
            position = await self._admit(candidate, pre.warnings)
        finally:
            self._pending_buys.discard(candidate.mint)
            if position is None:
                await self.stream.unsubscribe_trades([candidate.mint])
        return position is not None

    async def _admit(self, candidate: Candidate, prefilter_warnings: list[str]) -> Position | None:
        if self.settings.ADMISSION_DELAY_SEC > 0:
            candidate = await self._confirm_after_delay(candidate)
            if candidate is None:
                return None

        insights = await self._fetch_insights(candidate)
        now = utc_ts()
        verdict = self.scorer.score(candidate, self.mode, insights, now)
        verdict.warnings.extend(prefilter_warnings)
        if not verdict.passed:
            self.logger.info(
                "🚫 REJECT %s score=%.0f %s: %s",
                candidate.symbol,
                verdict.score,
                verdict.risk_tier.value,
                "; ".join(verdict.reject_reasons),
            )
            return None
        self.logger.info(
            "✅ PASS %s score=%.0f %s curve=%.1f%%%s",
            candidate.symbol,
            verdict.score,
            verdict.risk_tier.value,
            verdict.progress,
            " (degraded)" if verdict.degraded else "",
        )

        pending_others = len(self._pending_buys) - 1
        decision = self.sizer.decide(candidate.mint, verdict.score, self.store, now, pending_others)
        if not decision.allowed:
            self.logger.info("🔇 SKIP %s: %s", candidate.symbol, decision.reason)
            return None

        plan = build_exit_plan(self.mode, self.settings)
        ref_price = spot_price(candidate.sol_reserve, candidate.token_reserve)
        self.sizer.record_buy(now)
        return await self.lifecycle.open_position(
            candidate,
            verdict,
            decision.size_sol,
            plan,
            ref_price,
            candidate.sol_reserve,
            now,
        )

    async def _confirm_after_delay(self, candidate: Candidate) -> Candidate | None:
        """Watch the token for a while, then re-read its reserves before scoring."""
        await asyncio.sleep(self.settings.ADMISSION_DELAY_SEC)
        try:
            snapshot = await asyncio.wait_for(
                self.gateway.get_reserves(candidate.mint),
                timeout=self.settings.REQUEST_TIMEOUT_SEC,
            )
        except (DataSourceException, asyncio.TimeoutError) as e:
            self.logger.debug("Re-snapshot failed for %s: %s", candidate.symbol, e)
            return candidate
        refreshed = replace(candidate, sol_reserve=snapshot.sol_reserve, token_reserve=snapshot.token_reserve)
        pre = self.prefilter.check(refreshed, self.mode, utc_ts())
        if not pre.passed:
            self.logger.info("🚫 REJECT %s after delay: %s", candidate.symbol, pre.reason)
            return None
        return refreshed

    async def _fetch_insights(self, candidate: Candidate) -> TokenInsights | None:
        mint = candidate.mint
        now = utc_ts()
        if not self.guard.allow(mint, now):
            self.logger.debug("Insights skipped for %s: data source cooling down", candidate.symbol)
            return None
        try:
            insights = await asyncio.wait_for(
                self.gateway.get_token_insights(mint, candidate.creator),
                timeout=self.settings.REQUEST_TIMEOUT_SEC * 2,
            )
        except asyncio.TimeoutError:
            self.guard.record_error(mint, DataSourceTimeout("Insights timed out", mint=mint[:12]), now)
            self.logger.warning("⚠️ Insights timed out for %s, scoring degraded", candidate.symbol)
            return None
        except DataSourceException as e:
            self.guard.record_error(mint, e, now)
            self.logger.warning("⚠️ Insights failed for %s (%s), scoring degraded", candidate.symbol, e)
            return None
        self.guard.record_success(now)
        stats = self.stream.get_stats(mint)
        if stats is not None or candidate.initial_buy_sol > 0:
            insights.volume_sol = candidate.initial_buy_sol + (stats.volume_sol if stats else 0.0)
            insights.buy_ratio = stats.buy_ratio if stats else None
        return insights
