import json
from uuid import uuid4

import httpx
import pytest

from inboxflow.messaging.domain.exceptions import (
    InvalidMessageContentError,
    ProviderAuthError,
    ProviderBadParameterError,
    ProviderRateLimitedError,
    ProviderTransientError,
    UndeliverableRecipientError,
)
from inboxflow.messaging.domain.value_objects import MessageDirection, MessageStatus, MessageType
from inboxflow.messaging.infrastructure.adapters.whatsapp_adapter import (
    WhatsAppCloudClient,
    build_message_payload,
    classify_provider_error,
)
from inboxflow.messaging.infrastructure.models import MessageModel
from inboxflow.shared.exceptions import is_retryable


def _message(**kwargs) -> MessageModel:
    defaults = dict(
        id=uuid4(),
        tenant_id=uuid4(),
        conversation_id=uuid4(),
        direction=MessageDirection.OUTBOUND,
        status=MessageStatus.PENDING,
        type=MessageType.TEXT,
        to_phone="+15551234567",
    )
    defaults.update(kwargs)
    return MessageModel(**defaults)


def _error_response(status_code: int, code=None, headers=None) -> httpx.Response:
    body = {"error": {"message": "boom", "code": code}} if code is not None else {"error": {"message": "boom"}}
    return httpx.Response(status_code, json=body, headers=headers)


def test_text_payload():
    payload = build_message_payload(_message(content="Hi there"))
    assert payload == {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": "15551234567",
        "type": "text",
        "text": {"body": "Hi there"},
    }


def test_image_payload_prefers_link():
    payload = build_message_payload(
        _message(type=MessageType.IMAGE, media_url="https://cdn.example/a.jpg", media_id="M1", media_caption="cap")
    )
    assert payload["image"] == {"link": "https://cdn.example/a.jpg", "caption": "cap"}


def test_document_payload_uses_media_id_and_filename():
    payload = build_message_payload(_message(type=MessageType.DOCUMENT, media_id="D1", media_filename="x.pdf"))
    assert payload["type"] == "document"
    assert payload["document"] == {"id": "D1", "filename": "x.pdf"}


def test_audio_payload_has_no_caption():
    payload = build_message_payload(_message(type=MessageType.AUDIO, media_id="A1", media_caption="ignored"))
    assert payload["audio"] == {"id": "A1"}


def test_template_payload_defaults_language_and_maps_params():
    payload = build_message_payload(
        _message(type=MessageType.TEMPLATE, template_name="order_update", template_params=["Alice", 42])
    )
    assert payload["template"] == {
        "name": "order_update",
        "language": {"code": "en_US"},
        "components": [
            {"type": "body", "parameters": [{"type": "text", "text": "Alice"}, {"type": "text", "text": "42"}]}
        ],
    }


def test_interactive_payload_passthrough():
    interactive = {"type": "button", "body": {"text": "Pick"}, "action": {"buttons": []}}
    payload = build_message_payload(_message(type=MessageType.INTERACTIVE, interactive=interactive))
    assert payload["type"] == "interactive"
    assert payload["interactive"] == interactive


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(content=None),
        dict(type=MessageType.IMAGE),
        dict(type=MessageType.TEMPLATE),
        dict(type=MessageType.LOCATION, content="x"),
        dict(content="x", to_phone=None),
    ],
)
def test_invalid_content_is_rejected(kwargs):
    with pytest.raises(InvalidMessageContentError):
        build_message_payload(_message(**kwargs))


@pytest.mark.parametrize(
    "response, expected, retryable",
    [
        (_error_response(401), ProviderAuthError, False),
        (_error_response(400, code=190), ProviderAuthError, False),
        (_error_response(429), ProviderRateLimitedError, True),
        (_error_response(400, code=131056), ProviderRateLimitedError, True),
        (_error_response(400, code=131026), UndeliverableRecipientError, False),
        (_error_response(400, code=131047), UndeliverableRecipientError, False),
        (_error_response(503), ProviderTransientError, True),
        (_error_response(400, code=100), ProviderBadParameterError, False),
    ],
)
def test_error_classification(response, expected, retryable):
    error = classify_provider_error(response)
    assert type(error) is expected
    assert is_retryable(error) is retryable


def test_rate_limit_honours_retry_after_header():
    error = classify_provider_error(_error_response(429, headers={"Retry-After": "17"}))
    assert error.retry_after == 17


async def test_send_message_returns_provider_id():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

    client = WhatsAppCloudClient("https://graph.example/v18.0", transport=httpx.MockTransport(handler))
    try:
        external_id = await client.send_message("PNID", "tok", {"to": "1", "type": "text", "text": {"body": "x"}})
    finally:
        await client.aclose()

    assert external_id == "wamid.ABC"
    assert str(seen[0].url) == "https://graph.example/v18.0/PNID/messages"
    assert seen[0].headers["Authorization"] == "Bearer tok"
    assert json.loads(seen[0].content)["text"] == {"body": "x"}


async def test_send_message_timeout_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = WhatsAppCloudClient("https://graph.example/v18.0", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(ProviderTransientError):
            await client.send_message("PNID", "tok", {})
    finally:
        await client.aclose()


async def test_send_message_rejection_raises_classified_error():
    client = WhatsAppCloudClient(
        "https://graph.example/v18.0",
        transport=httpx.MockTransport(lambda request: _error_response(400, code=131026)),
    )
    try:
        with pytest.raises(UndeliverableRecipientError) as exc_info:
            await client.send_message("PNID", "tok", {})
    finally:
        await client.aclose()
    assert exc_info.value.provider_code == 131026
    assert exc_info.value.http_status == 400
