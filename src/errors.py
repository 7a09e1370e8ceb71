"""
Royalty Engine - Error Hierarchy

Provides a consistent set of exceptions for every engine component.
Each error carries a machine-readable code, the HTTP status the API layer
maps it to, and structured details for logging and API responses.

Propagation:
- Calculator errors surface synchronously to the caller
- Claim processing errors are captured into the ClaimResult
- Detection errors are logged per candidate and never abort a batch
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class ErrorContext:
    """Structured context for error tracking."""
    component: str
    action: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
        }


class RoyaltyEngineError(Exception):
    """
    Base exception for all engine errors.

    Subclasses set ``code`` and ``http_status``. ``retryable`` marks
    errors the retry policy may attempt again.
    """

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        component: str = "engine",
        action: str = "unknown",
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.context = ErrorContext(component=component, action=action)
        self.cause = cause
        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API error shape {code, message, details}."""
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }

    def to_log_dict(self) -> dict[str, Any]:
        """Convert to a dictionary for structured logging."""
        result = {
            "error_type": type(self).__name__,
            **self.to_dict(),
            **self.context.to_dict(),
        }
        if self.cause:
            result["cause"] = str(self.cause)
        return result


# =============================================================================
# Input errors
# =============================================================================


class ValidationError(RoyaltyEngineError):
    """Bad input. Never retried."""
    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidTierError(ValidationError):
    """Unknown license tier."""
    code = "INVALID_TIER"


class InvalidAmountError(ValidationError):
    """Negative, malformed or out-of-range token amount."""
    code = "INVALID_AMOUNT"


class NotFoundError(RoyaltyEngineError):
    """A referenced record does not exist."""
    code = "NOT_FOUND"
    http_status = 404


# =============================================================================
# Flow control errors
# =============================================================================


class RateLimitedError(RoyaltyEngineError):
    """Caller exceeded a fixed-window quota and should back off until reset_time."""
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str, reset_time: float, retry_after: int, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.update({"resetTime": reset_time, "retryAfter": retry_after})
        super().__init__(message, details=details, **kwargs)
        self.reset_time = reset_time
        self.retry_after = retry_after


class ClaimInProgressError(RoyaltyEngineError):
    """Another claim for the same content and author holds the claim lease."""
    code = "CLAIM_IN_PROGRESS"
    http_status = 409


# =============================================================================
# Business rule errors
# =============================================================================


class NoClaimableFundsError(RoyaltyEngineError):
    """Nothing (or less than the minimum) is available to claim."""
    code = "NO_CLAIMABLE_ROYALTIES"
    http_status = 400


class InsufficientBalanceError(RoyaltyEngineError):
    """The paying account cannot cover the transfer. Not retried."""
    code = "INSUFFICIENT_BALANCE"
    http_status = 500


# =============================================================================
# Collaborator errors
# =============================================================================


class LedgerTransferError(RoyaltyEngineError):
    """
    A token ledger call failed.

    Transient failures (timeouts, connection errors, 5xx) are retryable;
    everything else is terminal.
    """
    code = "BLOCKCHAIN_ERROR"
    http_status = 500

    def __init__(self, message: str, transient: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.transient = transient

    @property
    def retryable(self) -> bool:
        return self.transient


class OracleUnavailableError(RoyaltyEngineError):
    """The content similarity oracle could not be reached."""
    code = "ORACLE_UNAVAILABLE"
    http_status = 503


# =============================================================================
# Internal errors
# =============================================================================


class ConfigurationError(RoyaltyEngineError):
    """Invalid static configuration, detected at start-up."""
    code = "CONFIGURATION_ERROR"
    http_status = 500


class InternalError(RoyaltyEngineError):
    """Unexpected failure. Always a 500."""
    code = "INTERNAL_ERROR"
    http_status = 500


def to_engine_error(exc: Exception, include_trace: bool = False) -> RoyaltyEngineError:
    """
    Normalize any exception into a RoyaltyEngineError.

    Args:
        exc: The exception to normalize
        include_trace: Attach the formatted stack trace to details

    Returns:
        The exception itself if it already is an engine error, else an InternalError
    """
    if isinstance(exc, RoyaltyEngineError):
        return exc

    details: dict[str, Any] = {"errorType": type(exc).__name__}
    if include_trace:
        import traceback

        details["stack"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return InternalError(str(exc) or "Unexpected error", details=details, cause=exc)
