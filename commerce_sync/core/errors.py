"""
Error taxonomy for webhook ingestion and marketplace synchronization.

Only AuthenticationFailure (and unexpected exceptions) ever reach an HTTP
caller as a non-200 response. Adapter failures are absorbed by the sync
engine and surface through SyncLog counts and mapping status.
"""
from enum import Enum
from typing import Optional


class CommerceSyncError(Exception):
    """Base exception for this service."""

    pass


class GatewayError(CommerceSyncError):
    """Raised when a webhook delivery cannot be ingested."""

    pass


class AuthenticationFailure(GatewayError):
    """Raised when a webhook signature is missing or invalid. Never retried."""

    pass


class UnknownChannel(GatewayError):
    """Raised when a webhook arrives for an endpoint key that is not configured."""

    pass


class EndpointNotConfigured(GatewayError):
    """Raised when a known endpoint has no signing secret."""

    pass


class DuplicateEvent(CommerceSyncError):
    """Signals that an event id is already in the dedup ledger. Not an error."""

    def __init__(self, event_id: str):
        super().__init__(f"Event {event_id} already processed")
        self.event_id = event_id


class AdapterErrorType(Enum):
    """Classification of marketplace adapter errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff
    PERMANENT = "permanent"  # Don't retry these


class AdapterError(CommerceSyncError):
    """Base exception for channel adapter failures."""

    def __init__(
        self,
        message: str,
        error_type: AdapterErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize adapter error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Underlying transport or API exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is not AdapterErrorType.PERMANENT


class TransientAdapterFailure(AdapterError):
    """Network failure, timeout, rate limit or 5xx. Retried with backoff."""

    def __init__(
        self,
        message: str,
        error_type: AdapterErrorType = AdapterErrorType.TRANSIENT,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, error_type, original_error)


class PermanentAdapterFailure(AdapterError):
    """Validation failure or unknown entity. Never retried."""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, AdapterErrorType.PERMANENT, original_error)
        self.status_code = status_code


class UnmappedLineItem(CommerceSyncError):
    """An inbound order line references an external SKU with no product mapping."""

    def __init__(self, channel: str, external_sku: Optional[str]):
        super().__init__(f"No product mapping for SKU {external_sku!r} on channel {channel}")
        self.channel = channel
        self.external_sku = external_sku


class ReconciliationConflict(CommerceSyncError):
    """
    Canonical and external data disagree on an authoritative field.

    Logged, never raised past the component that detects it: canonical wins.
    """

    def __init__(self, entity: str, field: str, canonical: object, external: object):
        super().__init__(
            f"{entity} {field} mismatch: canonical={canonical!r} external={external!r}"
        )
        self.entity = entity
        self.field = field
        self.canonical = canonical
        self.external = external


class MappingConflictError(CommerceSyncError):
    """A mapping write would violate (canonical, channel) or (external, channel) uniqueness."""

    pass


class PaymentOperationError(CommerceSyncError):
    """An explicit payment operation was requested in a state that does not allow it."""

    pass


class SyncOperationError(CommerceSyncError):
    """An operator requested a sync operation that cannot run."""

    pass
