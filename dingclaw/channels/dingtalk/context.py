"""
Inbound context building: validated message + media -> InboundEnvelope.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

from dingclaw.bus.events import InboundMessage, from_epoch_ms
from dingclaw.channels.dingtalk.models import ChatbotMessage, MediaContext, MediaItem
from dingclaw.utils.helpers import now_ms

PROVIDER = "dingtalk"

_MEDIA_TAGS = {
    "picture": "image",
    "audio": "audio",
    "video": "video",
    "file": "file",
}


@dataclass(slots=True)
class InboundEnvelope:
    """Normalized inbound message handed to the agent runtime."""

    account_id: str
    body: str
    raw_body: str
    from_address: str
    to_address: str
    chat_type: Literal["direct", "group"]
    chat_id: str
    sender_id: str
    sender_name: str
    conversation_label: str
    message_sid: str
    timestamp: int
    was_mentioned: bool = False
    group_subject: Optional[str] = None
    provider: str = PROVIDER

    media_path: Optional[str] = None
    media_type: Optional[str] = None
    media_paths: list[str] = field(default_factory=list)
    media_types: list[str] = field(default_factory=list)
    media: list[MediaItem] = field(default_factory=list)

    def to_inbound_message(self, channel: str) -> InboundMessage:
        metadata: dict[str, Any] = {
            k: v for k, v in asdict(self).items() if k not in ("body", "media")
        }
        return InboundMessage(
            channel=channel,
            sender_id=self.sender_id,
            chat_id=self.chat_id,
            content=self.body,
            timestamp=from_epoch_ms(self.timestamp),
            message_id=self.message_sid,
            media=list(self.media_paths),
            metadata=metadata,
        )


def resolve_addresses(message: ChatbotMessage) -> tuple[str, str]:
    """Canonical (from, to); the same address in both directions."""
    if message.is_group:
        address = f"{PROVIDER}:group:{message.conversation_id}"
    else:
        address = f"{PROVIDER}:{message.sender}"
    return address, address


def media_placeholder(media: Optional[MediaContext]) -> str:
    """Text stand-in for messages that carry media but no literal text."""
    if not media or not media.items:
        return ""

    primary = media.items[0]
    tag = f"<media:{_MEDIA_TAGS.get(primary.kind, primary.kind)}>"

    if len(media.items) > 1:
        return f"{tag} x{len(media.items)}"
    if primary.kind in ("audio", "video") and primary.duration:
        return f"{tag} ({primary.duration / 1000:.1f}s)"
    if primary.kind == "file" and primary.file_name:
        return f"{tag} {primary.file_name}"
    return tag


def build_inbound_context(
    message: ChatbotMessage,
    account_id: str,
    text: Optional[str] = None,
    media: Optional[MediaContext] = None,
) -> InboundEnvelope:
    """
    Normalize a handled message.

    ``text`` is the handler's normalized text; without it the placeholder
    for the attached media becomes the body.
    """
    raw_body = (text or "").strip() or media_placeholder(media)
    from_address, to_address = resolve_addresses(message)

    sender_id = message.sender
    sender_name = message.sender_nick or sender_id
    items = list(media.items) if media else []
    primary = items[0] if items else None

    if message.is_group:
        label = f"group:{message.conversation_title or message.conversation_id}"
    else:
        label = sender_name

    return InboundEnvelope(
        account_id=account_id,
        body=raw_body,
        raw_body=raw_body,
        from_address=from_address,
        to_address=to_address,
        chat_type="group" if message.is_group else "direct",
        chat_id=message.chat_id,
        sender_id=sender_id,
        sender_name=sender_name,
        conversation_label=label,
        group_subject=message.conversation_id if message.is_group else None,
        message_sid=message.msg_id,
        timestamp=message.create_at or now_ms(),
        was_mentioned=message.is_in_at_list,
        media_path=primary.path if primary else None,
        media_type=primary.content_type if primary else None,
        media_paths=[i.path for i in items],
        media_types=[i.content_type for i in items],
        media=items,
    )
