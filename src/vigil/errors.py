"""Error taxonomy for Vigil.

Failures are split by what the caller should do about them:

- :class:`TransientIOError` -- throttling, timeouts, unavailable services.
  Retried by :class:`~vigil.resilience.ResilientCaller` and surfaced only as
  :class:`RetryBudgetExhausted` once the budget is spent.
- :class:`PermanentIOError` -- not-found, malformed requests.  Never retried.
- :class:`ReasoningParseError` -- structured model output did not parse.
  Always recovered locally with a degraded result.
- :class:`ConsolidationError` -- raised inside a consolidation run and caught
  at the consolidation boundary.
- :class:`OperationCancelled` -- a retried call was abandoned because the
  shutdown signal fired.
"""

from __future__ import annotations


class VigilError(Exception):
    """Base class for all Vigil errors."""


class TransientIOError(VigilError):
    """A retryable I/O failure.

    Attributes:
        status_code: HTTP-like status code when the backend reported one.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class PermanentIOError(VigilError):
    """A non-retryable I/O failure."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RetryBudgetExhausted(VigilError):
    """Raised when a transient failure persists past the retry budget.

    The last underlying error is chained as ``__cause__``.
    """

    def __init__(self, description: str, attempts: int) -> None:
        self.description = description
        self.attempts = attempts
        super().__init__(f"{description} failed after {attempts} attempt(s)")


class ReasoningParseError(VigilError):
    """Structured output from the reasoning capability could not be parsed."""


class ConsolidationError(VigilError):
    """A consolidation run failed."""


class OperationCancelled(VigilError):
    """A retried call was abandoned because the shutdown signal was set."""

    def __init__(self, description: str) -> None:
        self.description = description
        super().__init__(f"{description} cancelled")
