"""
Admission Bounds Configuration

Per-mode numeric bounds consumed by the admission scorer and the rug
pre-filter. Built-in defaults can be overridden from a YAML or JSON file:

    strict:
      min_progress: 5
      max_progress: 30
    lenient:
      min_liquidity_sol: 30.2
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import yaml

from ..exceptions import ConfigurationException

logger = logging.getLogger(__name__)


class AdmissionMode(str, Enum):
    STRICT = "strict"
    STANDARD = "standard"
    LENIENT = "lenient"


@dataclass(frozen=True)
class AdmissionBounds:
    """Numeric admission bounds for one strictness mode"""
    min_progress: float = 2.0
    max_progress: float = 50.0
    min_liquidity_sol: float = 30.5
    max_deployer_pct: float = 20.0
    max_top10_pct: float = 60.0
    min_velocity: float = 0.1  # curve %/min below which a token counts as stalled
    pass_score: float = 30.0

    # Absolute ceilings tolerated in lenient mode
    lenient_deployer_ceiling_pct: float = 30.0
    lenient_top10_ceiling_pct: float = 90.0

    # Liquidity growth rate (SOL/min) that waives the progress floor
    momentum_waiver_rate: float = 1.5


DEFAULT_BOUNDS: Dict[AdmissionMode, AdmissionBounds] = {
    AdmissionMode.STRICT: AdmissionBounds(
        min_progress=5.0,
        max_progress=30.0,
        min_liquidity_sol=31.0,
        max_deployer_pct=10.0,
        max_top10_pct=40.0,
        min_velocity=0.5,
        pass_score=50.0,
    ),
    AdmissionMode.STANDARD: AdmissionBounds(),
    AdmissionMode.LENIENT: AdmissionBounds(
        min_progress=0.0,
        max_progress=80.0,
        min_liquidity_sol=30.0,
        max_deployer_pct=25.0,
        max_top10_pct=80.0,
        min_velocity=0.0,
        pass_score=0.0,
    ),
}


@dataclass
class AdmissionConfig:
    """Bounds table for every admission mode"""
    bounds: Dict[AdmissionMode, AdmissionBounds] = field(default_factory=lambda: dict(DEFAULT_BOUNDS))

    def for_mode(self, mode: AdmissionMode | str) -> AdmissionBounds:
        return self.bounds[AdmissionMode(mode)]

    def to_dict(self) -> Dict[str, Any]:
        return {mode.value: asdict(b) for mode, b in self.bounds.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdmissionConfig":
        """Overlay per-mode overrides onto the defaults"""
        known = {f.name for f in fields(AdmissionBounds)}
        bounds = dict(DEFAULT_BOUNDS)
        for key, overrides in (data or {}).items():
            try:
                mode = AdmissionMode(key)
            except ValueError as e:
                raise ConfigurationException("Unknown admission mode in bounds file", mode=key) from e
            overrides = overrides or {}
            unknown = set(overrides) - known
            if unknown:
                raise ConfigurationException("Unknown admission bound", mode=key, keys=sorted(unknown))
            bounds[mode] = replace(bounds[mode], **{k: float(v) for k, v in overrides.items()})
        config = cls(bounds=bounds)
        config.validate()
        return config

    def validate(self) -> None:
        for mode, b in self.bounds.items():
            if not 0 <= b.min_progress <= b.max_progress <= 100:
                raise ConfigurationException(
                    "Progress band must satisfy 0 <= min <= max <= 100",
                    mode=mode.value,
                    min_progress=b.min_progress,
                    max_progress=b.max_progress,
                )
            if b.min_liquidity_sol < 0:
                raise ConfigurationException("Minimum liquidity cannot be negative", mode=mode.value)


def load_admission_config(path: str | None) -> AdmissionConfig:
    """Load the bounds table, falling back to defaults when no file is given."""
    if not path:
        return AdmissionConfig()
    config_path = Path(path)
    if not config_path.exists():
        logger.warning("Admission config %s not found, using defaults", config_path)
        return AdmissionConfig()
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationException("Cannot read admission config", path=str(config_path)) from e
    config = AdmissionConfig.from_dict(data or {})
    logger.info("Admission bounds loaded from %s", config_path)
    return config
