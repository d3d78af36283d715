from .config import DetectionConfig, build_config, env_overrides
from .errors import (
    ConfigInvalid,
    DetectionError,
    OracleUnavailable,
    PersistenceConflict,
    SeriesInsufficientData,
)
from .classification import RetailLabel, SubscriptionLabel, Unavailable, classify_series
from .series import Series, build_series, normalize_merchant
from .pattern import match_series
from .detectors import DetectionContext, Finding, KINDS, run_detectors

__all__ = [
    "ConfigInvalid",
    "DetectionConfig",
    "DetectionContext",
    "DetectionError",
    "Finding",
    "KINDS",
    "OracleUnavailable",
    "PersistenceConflict",
    "RetailLabel",
    "Series",
    "SeriesInsufficientData",
    "SubscriptionLabel",
    "Unavailable",
    "build_config",
    "build_series",
    "classify_series",
    "env_overrides",
    "match_series",
    "normalize_merchant",
    "run_detectors",
]
