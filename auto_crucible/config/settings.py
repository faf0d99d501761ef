"""Unified configuration and settings module.

Single source of truth for triage weights, tier thresholds, validation budgets,
calibration steps and observability toggles. Every field can be overridden from
the environment with the ``CRUCIBLE_`` prefix.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from auto_crucible.models import FACTORS, Mode, WEIGHT_MAX, WEIGHT_MIN


DEFAULT_DIMENSIONS: Tuple[str, ...] = (
    "correctness",
    "completeness",
    "clarity",
    "robustness",
    "efficiency",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CRUCIBLE_", extra="ignore")

    # ==== Observability ====
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    LOG_JSON: bool = Field(True, description="Render structlog events as JSON lines")
    PROMETHEUS_PORT: Optional[int] = Field(None, description="Expose prometheus metrics on this port from the CLI")

    # ==== Mode ====
    DEFAULT_MODE: Mode = Mode.SILENT

    # ==== Layer 0: triage ====
    FACTOR_WEIGHTS: Dict[str, float] = Field(
        default_factory=lambda: {f: 1.0 for f in FACTORS},
        description="Initial weight per triage factor (calibration adjusts these)",
    )
    TIER_THRESHOLDS: Tuple[float, float, float] = Field(
        (3.0, 5.0, 8.0),
        description="Cut points between SKIP|LIGHT, LIGHT|FULL and FULL|DEEP",
    )
    INDICATORS_PATH: Optional[str] = Field(None, description="YAML file overriding the bundled indicator patterns")

    # ==== Layer 1: validation ====
    DIMENSIONS: List[str] = Field(default_factory=lambda: list(DEFAULT_DIMENSIONS))
    DIMENSION_WEIGHTS: Dict[str, float] = Field(default_factory=dict, description="Composite weights; missing = 1.0")
    PASS_BAR: float = Field(8.0, ge=0, le=10)
    MAX_ITERATIONS_LIGHT: int = Field(1, ge=1)
    MAX_ITERATIONS_FULL: int = Field(3, ge=1)
    MAX_ITERATIONS_DEEP: int = Field(5, ge=1)
    EVOLVER_TIMEOUT_SEC: float = Field(60.0, gt=0, description="Bounded wait for one evolve attempt")
    EVOLVER_MAX_ATTEMPTS: int = Field(2, ge=1, description="First try plus one retry")

    # ==== Outcomes & calibration ====
    CALIBRATION_WINDOW: int = Field(50, ge=1, description="New outcomes between calibration passes")
    ACCURACY_WINDOW: int = Field(50, ge=1)
    ACCURACY_TARGET: float = Field(0.80, ge=0, le=1)
    WEIGHT_STEP: float = Field(0.05, gt=0, le=0.5)
    THRESHOLD_STEP: float = Field(0.5, gt=0, le=2.0)
    OUTCOME_TIMEOUT_SEC: float = Field(3600.0, gt=0, description="No signal within this long counts as correct")

    # ==== Persistence ====
    JOURNAL_PATH: Optional[str] = None
    CALIBRATION_STATE_PATH: Optional[str] = None

    @field_validator("FACTOR_WEIGHTS")
    @classmethod
    def known_factors(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = sorted(set(v) - set(FACTORS))
        if unknown:
            raise ValueError(f"Unknown triage factors: {unknown}")
        merged = {f: float(v.get(f, 1.0)) for f in FACTORS}
        for name, w in merged.items():
            if not (WEIGHT_MIN <= w <= WEIGHT_MAX):
                raise ValueError(f"Weight for {name}={w} outside [{WEIGHT_MIN}, {WEIGHT_MAX}]")
        return merged

    @field_validator("TIER_THRESHOLDS")
    @classmethod
    def thresholds_ordered(cls, v: Tuple[float, float, float]) -> Tuple[float, float, float]:
        t1, t2, t3 = v
        if not (0 < t1 < t2 < t3 <= 10):
            raise ValueError(f"Tier thresholds must satisfy 0 < t1 < t2 < t3 <= 10, got {list(v)}")
        return v

    @model_validator(mode="after")
    def dimensions_present(self):
        if not self.DIMENSIONS:
            raise ValueError("At least one validation dimension is required")
        if len(set(self.DIMENSIONS)) != len(self.DIMENSIONS):
            raise ValueError(f"Duplicate dimensions in {self.DIMENSIONS}")
        return self

    def max_iterations_for(self, tier_value: str) -> int:
        """Base iteration budget for a tier value ('light', 'full', 'deep')."""
        return {
            "light": self.MAX_ITERATIONS_LIGHT,
            "full": self.MAX_ITERATIONS_FULL,
            "deep": self.MAX_ITERATIONS_DEEP,
        }.get(tier_value, 0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings instance built from the environment."""
    return Settings()
