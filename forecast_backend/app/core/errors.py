r"""forecast_backend\app\core\errors.py

Exception taxonomy shared by the forecasting engine.

The classes double-inherit from the closest builtin so callers that already
catch ``ValueError``/``KeyError``/``RuntimeError`` keep working.
"""

from __future__ import annotations


class ForecastEngineError(Exception):
    """Base class for every error raised by the forecasting engine."""


class UnknownModelError(ForecastEngineError, KeyError):
    """Raised when a model id is not present in the registry."""

    def __init__(self, model_id: str) -> None:
        super().__init__(model_id)
        self.model_id = model_id

    def __str__(self) -> str:
        return f"Unknown model '{self.model_id}'"


class InsufficientDataError(ForecastEngineError, ValueError):
    """Raised when a series is too short for the requested model."""

    def __init__(self, required: int, available: int, message: str | None = None) -> None:
        self.required = int(required)
        self.available = int(available)
        super().__init__(
            message
            or f"need at least {self.required} observations (got {self.available})"
        )


class NotTrainedError(ForecastEngineError, RuntimeError):
    """Raised when ``predict``/``validate`` is called before ``train``."""


class InvalidSeriesError(ForecastEngineError, ValueError):
    """Raised when a series contains values a model cannot work with."""


class InvalidParametersError(ForecastEngineError, ValueError):
    """Raised when model parameters fall outside the registered schema."""

    def __init__(self, model_id: str, issues: list[str]) -> None:
        self.model_id = model_id
        self.issues = list(issues)
        super().__init__(f"Invalid parameters for '{model_id}': " + "; ".join(self.issues))


class AdvisoryUnavailableError(ForecastEngineError, RuntimeError):
    """Raised when the advisory optimizer cannot produce a recommendation."""


class RateLimitError(AdvisoryUnavailableError):
    """Raised when the advisory provider rejects a request due to quota."""
