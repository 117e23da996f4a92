"""
Messages exchanged between DingTalk channels and the agent runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def from_epoch_ms(ms: Optional[int]) -> datetime:
    """Platform timestamps are unix milliseconds; missing means now."""
    if not ms:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


@dataclass(slots=True)
class InboundMessage:
    """
    One user message, normalized and ready for the agent runtime.

    ``metadata`` carries the full inbound envelope (addresses, sender name,
    mention flag, media types) minus the body.
    """

    channel: str              # "dingtalk" or "dingtalk-<account>"
    sender_id: str            # senderStaffId
    chat_id: str              # conversationId (group) or sender id (direct)
    content: str              # text, or a <media:...> placeholder

    timestamp: datetime = field(default_factory=lambda: from_epoch_ms(None))
    message_id: Optional[str] = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def session_key(self) -> str:
        return f"{self.channel}:{self.chat_id}"

    @property
    def account_id(self) -> Optional[str]:
        return self.metadata.get("account_id")

    @property
    def is_group(self) -> bool:
        return self.metadata.get("chat_type") == "group"


@dataclass(slots=True)
class OutboundMessage:
    """
    A reply or notification for a DingTalk chat.

    ``reply_to`` is the inbound message id being answered; while that
    message's session webhook is valid the reply goes through it, otherwise
    the channel falls back to an active send. ``markdown`` overrides the
    channel's default reply format.
    """

    channel: str
    chat_id: str
    content: str

    reply_to: Optional[str] = None
    markdown: Optional[bool] = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
