from typing import Any, Dict, Optional


class PasteHostError(Exception):
    """Base class for every error the core reports to its callers."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details or {}

    def to_payload(self) -> dict:
        payload: Dict[str, Any] = {
            "success": False,
            "error": str(self),
            "code": self.error_code,
        }
        payload.update(self.details)
        return payload


class ValidationError(PasteHostError):
    """Malformed input. Always a client mistake, never retried."""

    status_code = 400
    error_code = "validation_error"


class DurationParseError(ValidationError):
    error_code = "invalid_duration"


class PolicyRejected(PasteHostError):
    """A retention or expiry rule refused the request."""

    status_code = 400
    error_code = "policy_rejected"


class AuthenticationRequired(PasteHostError):
    status_code = 401
    error_code = "authentication_required"


class Forbidden(PasteHostError):
    status_code = 403
    error_code = "forbidden"


class NotFound(PasteHostError):
    status_code = 404
    error_code = "not_found"


class Conflict(PasteHostError):
    status_code = 409
    error_code = "conflict"


class RateLimited(PasteHostError):
    status_code = 429
    error_code = "rate_limited"


class IngestionError(PasteHostError):
    """Content could not be obtained from the submitted source."""

    status_code = 502
    error_code = "ingestion_failed"


class FetchFailed(IngestionError):
    error_code = "fetch_failed"


class FetchStatusError(IngestionError):
    error_code = "fetch_bad_status"

    def __init__(self, message: str, upstream_status: int) -> None:
        super().__init__(message, details={"upstream_status": upstream_status})
        self.upstream_status = upstream_status


class ContentTooLarge(IngestionError):
    status_code = 413
    error_code = "content_too_large"


class StorageUnavailable(PasteHostError):
    status_code = 503
    error_code = "storage_unavailable"


class QuotaExceeded(StorageUnavailable):
    """Raised when a write would exceed the configured storage quota."""

    status_code = 507
    error_code = "quota_exceeded"

    def __init__(self, current_usage: int, quota_limit: int) -> None:
        super().__init__("Storage quota exceeded")
        self.current_usage = current_usage
        self.quota_limit = quota_limit


class PersistenceError(PasteHostError):
    status_code = 500
    error_code = "persistence_error"


class NotificationFailed(PasteHostError):
    status_code = 503
    error_code = "notification_failed"
