import re
from typing import Optional, Dict, Any


class CostSyncException(Exception):
    """Base exception for all CostSync errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AdapterError(CostSyncException):
    """
    Raised when an external cloud call fails.
    Error messages are sanitized so request ids and secrets never reach the job record.
    """
    def __init__(
        self,
        message: str,
        code: str = "adapter_error",
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(self._sanitize(message), code=code, status_code=status_code, details=details)

    @staticmethod
    def _sanitize(msg: str) -> str:
        """Remove request ids and credential values from error messages."""
        msg = re.sub(r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', '[REDACTED_ID]', msg, flags=re.IGNORECASE)
        msg = re.sub(r'(?i)(access_token|client_secret|secret|token|password|signature)=[^&\s]+', r'\1=[REDACTED]', msg)
        return msg


class CredentialsNotFound(CostSyncException):
    """Raised when a tenant has no usable stored cloud credentials."""
    def __init__(self, message: str = "No Azure credentials configured for tenant", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="credentials_not_found", status_code=404, details=details)


class AuthFailed(AdapterError):
    """Raised when the identity provider rejects the credential exchange."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="auth_failed", status_code=502, details=details)


class RateLimited(AdapterError):
    """Raised on HTTP 429 from the billing API. Retried a bounded number of times."""
    def __init__(self, message: str = "Azure Cost Management rate limit exceeded", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="rate_limited", status_code=429, details=details)


class FetchFailed(AdapterError):
    """Raised on non-retryable billing API or transport failures."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="fetch_failed", status_code=502, details=details)


class StoreWriteError(CostSyncException):
    """Raised when cost records cannot be persisted."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="store_write_error", status_code=500, details=details)


class InvalidRange(CostSyncException):
    """Raised when a requested date range is empty, reversed or too old."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_range", status_code=400, details=details)


class SyncAlreadyRunning(CostSyncException):
    """Raised when a tenant already has an unfinished sync job of the same kind."""
    def __init__(self, message: str = "A sync job is already in progress for this tenant", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="sync_already_running", status_code=409, details=details)


class ResourceNotFoundError(CostSyncException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class ChunkTimedOut(CostSyncException):
    """Raised when a single sync chunk runs past its deadline."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="chunk_timeout", status_code=504, details=details)
