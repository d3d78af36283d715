from __future__ import annotations

from typing import Optional


class DetectionError(Exception):
    """Base class for detection engine errors."""


class ConfigInvalid(DetectionError):
    """Malformed thresholds. Raised before a run performs any write."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class OracleUnavailable(DetectionError):
    """The classification oracle is not configured, failed or timed out."""


class SeriesInsufficientData(DetectionError):
    """A series has too few transactions for the requested profile."""

    def __init__(self, key, count: int, required: int):
        super().__init__(f"series {key} has {count} transactions, {required} required")
        self.key = key
        self.count = count
        self.required = required


class PersistenceConflict(DetectionError):
    """Two writers raced on the same alert dedup key."""

    def __init__(self, dedup_key: str):
        super().__init__(f"concurrent write conflict on alert {dedup_key}")
        self.dedup_key = dedup_key
