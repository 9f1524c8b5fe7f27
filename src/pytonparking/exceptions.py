"""Library exceptions."""

from __future__ import annotations


class PyTonParkingError(Exception):
    """Base exception for the library."""

    error_type = "unknown"
    default_code: str | None = None
    retryable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        detail: str | None = None,
        user_message: str | None = None,
    ) -> None:
        text = message if message is not None else detail
        super().__init__(text or "")
        self.error_code = error_code if error_code is not None else self.default_code
        self.detail = detail if detail is not None else text
        self.user_message = user_message


class ValidationError(PyTonParkingError):
    """Raised when inputs or preconditions fail validation."""

    error_type = "validation"
    default_code = "validation_error"


class DuplicateSessionError(ValidationError):
    """Raised when a license plate already holds an active session."""

    default_code = "duplicate_session"


class ConcurrencyConflictError(ValidationError):
    """Raised when a re-check under the space lock fails."""

    default_code = "concurrency_conflict"


class PaymentError(PyTonParkingError):
    """Base class for payment verification outcomes that block a reservation."""

    error_type = "payment"
    default_code = "payment_error"

    def __init__(self, reason: str, **kwargs: str | None) -> None:
        super().__init__(reason, **kwargs)
        self.reason = reason


class PaymentPendingError(PaymentError):
    """Raised when a payment cannot be confirmed yet; the caller may poll."""

    default_code = "payment_pending"
    retryable = True


class PaymentRejectedError(PaymentError):
    """Raised when a payment reference is terminally rejected."""

    default_code = "payment_rejected"

    def __init__(
        self,
        reason: str,
        *,
        expected: int | None = None,
        actual: int | None = None,
        **kwargs: str | None,
    ) -> None:
        if expected is not None and actual is not None and "detail" not in kwargs:
            kwargs["detail"] = f"{reason}: expected {expected}, got {actual}"
        super().__init__(reason, **kwargs)
        self.expected = expected
        self.actual = actual


class IndexerError(PyTonParkingError):
    """Raised when the blockchain indexer returns an error or is misconfigured."""

    error_type = "indexer"
    default_code = "indexer_error"


class IndexerUnavailableError(IndexerError):
    """Raised when the indexer cannot be reached or is temporarily failing."""

    error_type = "network"
    default_code = "indexer_unavailable"
    retryable = True


class IndexerAuthError(IndexerError):
    """Raised when the indexer rejects the API key."""

    default_code = "indexer_auth_error"


class TransactionNotFoundError(IndexerError):
    """Raised when a reference does not resolve to an indexed transaction."""

    default_code = "not_found"


class ConfigError(PyTonParkingError):
    """Raised when zone or space configuration is invalid."""

    error_type = "config"
    default_code = "config_error"
