from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from inboxflow.messaging.domain.value_objects import MessageType


@dataclass(frozen=True)
class InboundContent:
    type: MessageType
    text: Optional[str] = None
    media_id: Optional[str] = None
    media_mime_type: Optional[str] = None
    media_caption: Optional[str] = None
    media_filename: Optional[str] = None
    interactive: Optional[dict[str, Any]] = None
    # id of a tapped reply button or list row, used to resume flows
    button_payload: Optional[str] = None


def _media(kind: MessageType, data: dict[str, Any], text: Optional[str]) -> InboundContent:
    return InboundContent(
        type=kind,
        text=text,
        media_id=data.get("id"),
        media_mime_type=data.get("mime_type"),
        media_caption=data.get("caption"),
        media_filename=data.get("filename"),
    )


def classify_inbound(message: dict[str, Any]) -> InboundContent:
    """Map one Cloud API ``messages[]`` item onto a message type and its content fields."""
    if isinstance(message.get("text"), dict):
        return InboundContent(type=MessageType.TEXT, text=message["text"].get("body"))

    if isinstance(message.get("interactive"), dict):
        interactive = message["interactive"]
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return InboundContent(
            type=MessageType.INTERACTIVE,
            text=reply.get("title"),
            interactive=interactive,
            button_payload=reply.get("id"),
        )

    if isinstance(message.get("button"), dict):
        # quick-reply button on a template message
        button = message["button"]
        return InboundContent(
            type=MessageType.INTERACTIVE,
            text=button.get("text"),
            interactive={"type": "button", "button": button},
            button_payload=button.get("payload"),
        )

    if isinstance(message.get("image"), dict):
        image = message["image"]
        return _media(MessageType.IMAGE, image, image.get("caption"))
    if isinstance(message.get("video"), dict):
        video = message["video"]
        return _media(MessageType.VIDEO, video, video.get("caption"))
    if isinstance(message.get("audio"), dict):
        return _media(MessageType.AUDIO, message["audio"], None)
    if isinstance(message.get("document"), dict):
        document = message["document"]
        return _media(MessageType.DOCUMENT, document, document.get("filename"))

    if isinstance(message.get("location"), dict):
        loc = message["location"]
        return InboundContent(
            type=MessageType.LOCATION,
            text=f"Location: {loc.get('latitude')},{loc.get('longitude')}",
        )

    if message.get("contacts"):
        return InboundContent(type=MessageType.CONTACT, text="Contact shared")

    return InboundContent(type=MessageType.UNSUPPORTED)
