"""
Detection thresholds.

A DetectionConfig is built once per run (defaults < environment < stored
overrides) and handed explicitly to every stage. It is frozen: re-analysis
with different thresholds builds a new instance instead of mutating one.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from wastewatch.app.detection.errors import ConfigInvalid

ENV_PREFIX = "WASTEWATCH_"


class DetectionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Strict profile (default)
    strict_min_transactions: int = Field(3, ge=2)
    strict_amount_variance: float = Field(0.05, ge=0.0, le=1.0)
    strict_interval_consistency: float = Field(0.70, ge=0.0, le=1.0)

    # Smart profile (oracle says SUBSCRIPTION with enough confidence)
    smart_min_transactions: int = Field(2, ge=2)
    smart_amount_variance: float = Field(0.50, ge=0.0, le=1.0)
    smart_interval_consistency: float = Field(0.50, ge=0.0, le=1.0)
    ollama_confidence_threshold: float = Field(0.70, ge=0.0, le=1.0)

    oracle_timeout_seconds: float = Field(10.0, gt=0.0)
    classification_workers: int = Field(4, ge=1, le=32)
    description_similarity: float = Field(0.70, ge=0.0, le=1.0)

    zombie_min_months: int = Field(3, ge=0)

    price_increase_percent: float = Field(5.0, ge=0.0)
    price_increase_absolute: float = Field(1.00, ge=0.0)
    price_lookback_days: int = Field(90, ge=1)

    grace_days_weekly: int = Field(3, ge=0)
    grace_days_monthly: int = Field(7, ge=0)
    grace_days_quarterly: int = Field(7, ge=0)
    grace_days_yearly: int = Field(30, ge=0)

    spending_increase_threshold: float = Field(30.0, gt=0.0)
    spending_decrease_threshold: float = Field(40.0, gt=0.0, le=100.0)
    spending_anomaly_min_baseline: float = Field(50.0, ge=0.0)

    acknowledgment_stale_days: int = Field(90, ge=0)

    tip_discrepancy_threshold: float = Field(0.50, ge=0.0)
    amount_tolerance: float = Field(0.01, ge=0.0, le=1.0)

    excluded_categories: List[str] = Field(default_factory=lambda: ["Fees"])

    @field_validator("excluded_categories", mode="before")
    @classmethod
    def split_categories(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def check_profiles(self) -> "DetectionConfig":
        if self.smart_min_transactions > self.strict_min_transactions:
            raise ValueError("smart_min_transactions must not exceed strict_min_transactions")
        if self.smart_amount_variance < self.strict_amount_variance:
            raise ValueError("smart_amount_variance must be at least strict_amount_variance")
        if self.smart_interval_consistency > self.strict_interval_consistency:
            raise ValueError("smart_interval_consistency must not exceed strict_interval_consistency")
        return self

    def grace_days_for(self, frequency: str) -> int:
        return {
            "weekly": self.grace_days_weekly,
            "monthly": self.grace_days_monthly,
            "quarterly": self.grace_days_quarterly,
            "yearly": self.grace_days_yearly,
        }.get(frequency, self.grace_days_monthly)

    def is_excluded_category(self, category: Optional[str]) -> bool:
        if not category:
            return False
        lowered = category.strip().lower()
        return any(lowered == c.lower() for c in self.excluded_categories)


def field_names() -> List[str]:
    return list(DetectionConfig.model_fields.keys())


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for name in field_names():
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is None or raw == "":
            continue
        overrides[name] = raw
    return overrides


def build_config(*layers: Optional[Mapping[str, Any]]) -> DetectionConfig:
    """Merge override layers left to right and validate the result."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        if layer:
            merged.update(layer)
    try:
        return DetectionConfig(**merged)
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ConfigInvalid("invalid detection config: " + "; ".join(problems), errors=problems) from exc
