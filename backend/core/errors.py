"""
Engine error taxonomy.

DataQualityError and EstimatorError are per-style and never abort a run;
ConcurrencyConflict rejects a trigger; EngineTimeoutError either degrades
to an EstimatorError (one style) or aborts the run (context loading).
"""

from typing import Any


class SizeEngineError(Exception):
    """Base class for all engine failures."""

    kind = "engine_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, **{k: str(v) for k, v in self.context.items()}}


class DataQualityError(SizeEngineError):
    """Missing size mapping or malformed position; the style is skipped."""

    kind = "data_quality"


class EstimatorError(SizeEngineError):
    """One style/record computation failed; the record is skipped."""

    kind = "estimator"


class ConcurrencyConflict(SizeEngineError):
    """A run is already in flight for the tenant. Retry later."""

    kind = "concurrency_conflict"


class EngineTimeoutError(SizeEngineError):
    """An external fetch or computation exceeded its bound."""

    kind = "timeout"
