"""WhatsApp Business Cloud API adapter: payload building, sending, error classification."""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from inboxflow.messaging.domain.exceptions import (
    InvalidMessageContentError,
    ProviderAuthError,
    ProviderBadParameterError,
    ProviderRateLimitedError,
    ProviderRejectionError,
    ProviderTransientError,
    UndeliverableRecipientError,
)
from inboxflow.messaging.domain.phone import provider_recipient
from inboxflow.messaging.domain.value_objects import MessageType
from inboxflow.messaging.infrastructure.models import MessageModel
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)

# Graph API error codes
AUTH_ERROR_CODES = {190}
RATE_LIMIT_ERROR_CODES = {4, 80007, 130429, 131048, 131056}
UNDELIVERABLE_ERROR_CODES = {131021, 131026, 131030, 131047}
DEFAULT_RATE_LIMIT_RETRY_AFTER = 60


def _media_object(message: MessageModel, *, caption: bool = True, filename: bool = False) -> Dict[str, Any]:
    if message.media_url:
        media: Dict[str, Any] = {"link": message.media_url}
    elif message.media_id:
        media = {"id": message.media_id}
    else:
        raise InvalidMessageContentError(f"{message.type.value} message {message.id} has no media")
    if caption and message.media_caption:
        media["caption"] = message.media_caption
    if filename and message.media_filename:
        media["filename"] = message.media_filename
    return media


def build_message_payload(message: MessageModel) -> Dict[str, Any]:
    """Build WhatsApp API message payload."""
    if not message.to_phone:
        raise InvalidMessageContentError(f"Message {message.id} has no recipient")

    payload: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": provider_recipient(message.to_phone),
    }

    mtype = message.type
    if mtype == MessageType.TEXT:
        if not message.content:
            raise InvalidMessageContentError(f"Text message {message.id} has no body")
        payload["type"] = "text"
        payload["text"] = {"body": message.content}
    elif mtype == MessageType.IMAGE:
        payload["type"] = "image"
        payload["image"] = _media_object(message)
    elif mtype == MessageType.VIDEO:
        payload["type"] = "video"
        payload["video"] = _media_object(message)
    elif mtype == MessageType.AUDIO:
        payload["type"] = "audio"
        payload["audio"] = _media_object(message, caption=False)
    elif mtype == MessageType.DOCUMENT:
        payload["type"] = "document"
        payload["document"] = _media_object(message, filename=True)
    elif mtype == MessageType.TEMPLATE:
        if not message.template_name:
            raise InvalidMessageContentError(f"Template message {message.id} has no template name")
        template: Dict[str, Any] = {
            "name": message.template_name,
            "language": {"code": message.template_language or "en_US"},
        }
        if message.template_params:
            template["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": str(p)} for p in message.template_params],
                }
            ]
        payload["type"] = "template"
        payload["template"] = template
    elif mtype == MessageType.INTERACTIVE:
        if not message.interactive:
            raise InvalidMessageContentError(f"Interactive message {message.id} has no body")
        payload["type"] = "interactive"
        payload["interactive"] = message.interactive
    else:
        raise InvalidMessageContentError(f"Unsupported message type: {mtype.value}")

    return payload


def classify_provider_error(response: httpx.Response) -> ProviderRejectionError:
    """Map a non-2xx Graph API response onto the rejection taxonomy."""
    try:
        error = (response.json() or {}).get("error") or {}
    except ValueError:
        error = {}
    code = error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    message = error.get("message") or error.get("error_user_msg") or response.text[:500] or "Unknown error"
    http_status = response.status_code
    kwargs: Dict[str, Any] = {"http_status": http_status, "provider_code": code, "error_data": error}

    if http_status in (401, 403) or code in AUTH_ERROR_CODES:
        return ProviderAuthError(message, **kwargs)
    if http_status == 429 or code in RATE_LIMIT_ERROR_CODES:
        retry_after = response.headers.get("Retry-After")
        try:
            seconds = int(retry_after) if retry_after else DEFAULT_RATE_LIMIT_RETRY_AFTER
        except ValueError:
            seconds = DEFAULT_RATE_LIMIT_RETRY_AFTER
        return ProviderRateLimitedError(message, retry_after=seconds, **kwargs)
    if code in UNDELIVERABLE_ERROR_CODES:
        return UndeliverableRecipientError(message, **kwargs)
    if http_status >= 500:
        return ProviderTransientError(message, **kwargs)
    return ProviderBadParameterError(message, **kwargs)


class WhatsAppCloudClient:
    """WhatsApp Business Cloud API client (one pooled httpx client per process)."""

    def __init__(
        self,
        graph_url: str = "https://graph.facebook.com/v18.0",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.graph_url = graph_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def send_message(self, phone_number_id: str, access_token: str, payload: Dict[str, Any]) -> str:
        """
        POST the payload; returns the provider message id.

        Raises a ProviderRejectionError subclass on any failure, including
        timeouts and transport errors (ProviderTransientError).
        """
        url = f"{self.graph_url}/{phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        try:
            response = await self.client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as e:
            logger.warning("whatsapp_api_timeout", phone_number_id=phone_number_id)
            raise ProviderTransientError("Request timeout") from e
        except httpx.HTTPError as e:
            logger.warning("whatsapp_api_transport_error", phone_number_id=phone_number_id, error=str(e))
            raise ProviderTransientError(f"Transport error: {e}") from e

        if response.is_success:
            try:
                return str(response.json()["messages"][0]["id"])
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise ProviderTransientError("Provider response has no message id", http_status=response.status_code) from e

        error = classify_provider_error(response)
        logger.warning(
            "whatsapp_api_rejected",
            phone_number_id=phone_number_id,
            http_status=response.status_code,
            provider_code=error.provider_code,
            kind=error.code,
        )
        raise error

    async def aclose(self) -> None:
        await self.client.aclose()
