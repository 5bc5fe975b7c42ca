"""
Messaging Domain Exceptions

Worker-facing taxonomy. ``retryable`` decides whether the queue reschedules
the job with backoff or dead-letters it at once.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import status

from inboxflow.shared.exceptions import DomainError, NotFoundError, TransientInfraError

__all__ = [
    "WhatsAppDomainError",
    "TransientInfraError",
    "DuplicateEventError",
    "UnresolvedTenantError",
    "RawEventNotFoundError",
    "MessageNotFoundError",
    "InvalidMessageContentError",
    "CredentialNotFoundError",
    "CredentialInvalidError",
    "RateLimitExceededError",
    "ProviderRejectionError",
    "ProviderRateLimitedError",
    "ProviderAuthError",
    "ProviderBadParameterError",
    "UndeliverableRecipientError",
    "ProviderTransientError",
]


class WhatsAppDomainError(DomainError):
    """Base exception for WhatsApp domain errors."""
    code = "whatsapp_error"


class DuplicateEventError(WhatsAppDomainError):
    """Idempotency hit; callers treat it as success."""
    code = "duplicate_event"
    status_code = status.HTTP_409_CONFLICT


class UnresolvedTenantError(WhatsAppDomainError):
    """No tenant owns the routing key; there is no safe target to retry against."""
    code = "unresolved_tenant"


class RawEventNotFoundError(NotFoundError):
    code = "raw_event_not_found"


class MessageNotFoundError(NotFoundError):
    code = "message_not_found"


class InvalidMessageContentError(WhatsAppDomainError):
    """Raised when message content is invalid."""
    code = "invalid_message_content"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class CredentialNotFoundError(WhatsAppDomainError):
    """Raised when tenant credentials not configured."""
    code = "credential_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class CredentialInvalidError(WhatsAppDomainError):
    """Credential was invalidated after a provider auth failure."""
    code = "credential_invalid"
    status_code = status.HTTP_403_FORBIDDEN


class RateLimitExceededError(WhatsAppDomainError):
    """Local per-tenant limiter denied the send."""
    code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    retryable = True

    def __init__(self, message: str = "", *, retry_after: int = 1, **kwargs: Any) -> None:
        super().__init__(message or f"Rate limit exceeded, retry after {retry_after}s", **kwargs)
        self.retry_after = retry_after


class ProviderRejectionError(WhatsAppDomainError):
    """Provider refused the send; subclasses carry the failure kind."""
    code = "provider_rejection"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        message: str = "",
        *,
        http_status: Optional[int] = None,
        provider_code: Optional[int] = None,
        error_data: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.http_status = http_status
        self.provider_code = provider_code
        self.error_data = error_data or {}


class ProviderRateLimitedError(ProviderRejectionError):
    code = "provider_rate_limited"
    retryable = True

    def __init__(self, message: str = "", *, retry_after: int = 60, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderAuthError(ProviderRejectionError):
    """401/403 or an expired token; the credential must be re-validated."""
    code = "provider_auth_invalid"


class ProviderBadParameterError(ProviderRejectionError):
    code = "provider_bad_parameter"


class UndeliverableRecipientError(ProviderRejectionError):
    code = "undeliverable_recipient"


class ProviderTransientError(ProviderRejectionError):
    """5xx, timeouts and transport failures."""
    code = "provider_transient"
    retryable = True
