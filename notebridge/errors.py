"""
Shared error types for NoteBridge services.
"""

from typing import Optional


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class PoolOperationRejected(ValueError):
    """Base for index pool operations rejected for operator or capacity reasons."""

    error_type = "rejected"


class DuplicateSlot(PoolOperationRejected):
    error_type = "duplicate_slot"


class PoolExhausted(PoolOperationRejected):
    error_type = "pool_exhausted"


class SlotInUse(PoolOperationRejected):
    error_type = "slot_in_use"


class SlotNotFound(PoolOperationRejected):
    error_type = "slot_not_found"


class NoCategoryConfigured(RuntimeError):
    """Raised when neither the owner's slot nor the config provides a category."""


class BindingNotFound(LookupError):
    """Raised when an owner has no knowledge base binding."""


class RemoteServiceError(RuntimeError):
    """Base for failures talking to the remote knowledge base service."""


class RemoteTransportError(RemoteServiceError):
    """Network failure, timeout, or non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteApplicationError(RemoteServiceError):
    """2xx response whose envelope reports Success=false."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = code
        self.request_id = request_id


class SyncCancelled(RuntimeError):
    """Raised inside an upload pipeline when the run's cancel event is set."""
