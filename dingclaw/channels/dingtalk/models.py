"""
Data model for DingTalk robot messages and downloaded media.

Inbound bodies are decoded into a frozen ``ChatbotMessage``; the wire uses
camelCase, attributes are snake_case.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from dingclaw.channels.dingtalk.errors import DecodeError


class MessageKind(str, Enum):
    """Robot message kinds the channel understands."""

    TEXT = "text"
    PICTURE = "picture"
    AUDIO = "audio"
    VIDEO = "video"
    FILE = "file"
    RICH_TEXT = "richText"


class ConversationType(str, Enum):
    DIRECT = "1"
    GROUP = "2"


# ---------------------------------------------------------------------
# Message body
# ---------------------------------------------------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        frozen=True,
    )


class TextContent(_WireModel):
    content: str = ""


class AtUser(_WireModel):
    dingtalk_id: str = ""
    staff_id: Optional[str] = None


class ChatbotMessage(_WireModel):
    """Robot callback payload delivered on the Stream topic."""

    msgtype: str = ""
    msg_id: str = ""
    conversation_id: str = ""
    conversation_type: str = ConversationType.DIRECT.value
    conversation_title: Optional[str] = None
    chatbot_corp_id: Optional[str] = None
    chatbot_user_id: Optional[str] = None
    sender_id: Optional[str] = None
    sender_staff_id: str = ""
    sender_nick: str = ""
    sender_corp_id: Optional[str] = None
    robot_code: Optional[str] = None
    create_at: Optional[int] = None
    is_in_at_list: bool = False
    session_webhook: Optional[str] = None
    session_webhook_expired_time: Optional[int] = None
    text: Optional[TextContent] = None
    content: Optional[dict[str, Any]] = None
    at_users: list[AtUser] = Field(default_factory=list)

    # -----------------------------------------------------------------

    @property
    def is_group(self) -> bool:
        return self.conversation_type == ConversationType.GROUP.value

    @property
    def sender(self) -> str:
        """Best available sender identifier."""
        return self.sender_staff_id or self.sender_id or ""

    @property
    def chat_id(self) -> str:
        """Group conversation id, or the sender for direct chats."""
        return self.conversation_id if self.is_group else self.sender

    @property
    def text_content(self) -> str:
        return (self.text.content if self.text else "").strip()

    @property
    def download_code(self) -> Optional[str]:
        if not self.content:
            return None
        code = self.content.get("downloadCode") or self.content.get("pictureDownloadCode")
        return code if isinstance(code, str) and code else None

    def content_field(self, name: str, default: Any = None) -> Any:
        if not self.content:
            return default
        value = self.content.get(name)
        return default if value is None else value


def decode_message(data: str | bytes | Mapping[str, Any]) -> ChatbotMessage:
    """
    Decode a raw Stream event body into a ``ChatbotMessage``.

    Raises:
        DecodeError: body is not JSON, not an object, or has the wrong shape.
    """
    if isinstance(data, (str, bytes, bytearray)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"invalid JSON body: {e}") from e

    if not isinstance(data, Mapping):
        raise DecodeError(f"message body must be an object, got {type(data).__name__}")

    try:
        return ChatbotMessage.model_validate(dict(data))
    except PydanticValidationError as e:
        raise DecodeError(f"malformed robot message: {e.error_count()} field error(s)") from e


# ---------------------------------------------------------------------
# richText
# ---------------------------------------------------------------------

@dataclass(slots=True)
class ImageInfo:
    download_code: str
    width: Optional[int] = None
    height: Optional[int] = None
    extension: Optional[str] = None


@dataclass(slots=True)
class RichTextParts:
    text_parts: list[str] = field(default_factory=list)
    images: list[ImageInfo] = field(default_factory=list)
    # elements whose text or download code is not a string
    malformed: int = 0

    @property
    def is_empty(self) -> bool:
        return not any(p.strip() for p in self.text_parts) and not self.images

    @property
    def text(self) -> str:
        return "\n".join(p for p in self.text_parts if p.strip()).strip()


def parse_rich_text_content(elements: list[Mapping[str, Any]]) -> RichTextParts:
    """
    Split richText elements into text parts and picture infos, in order.

    Text elements may omit ``type``; pictures carry ``downloadCode`` or,
    failing that, ``pictureDownloadCode``. Non-string text or codes are
    counted in ``malformed`` and otherwise skipped.
    """
    parts = RichTextParts()

    for element in elements:
        if not isinstance(element, Mapping):
            continue
        kind = element.get("type")

        if kind == "picture":
            code = element.get("downloadCode") or element.get("pictureDownloadCode")
            if code and not isinstance(code, str):
                parts.malformed += 1
            elif code:
                parts.images.append(
                    ImageInfo(
                        download_code=code,
                        width=element.get("width"),
                        height=element.get("height"),
                        extension=element.get("extension"),
                    )
                )
        elif isinstance(element.get("text"), str):
            parts.text_parts.append(element["text"])
        elif element.get("text") is not None:
            parts.malformed += 1

    return parts


# ---------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------

@dataclass(slots=True)
class MediaItem:
    """A downloaded inbound attachment stored on local disk."""

    kind: str
    path: str
    content_type: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[int] = None   # milliseconds


@dataclass(slots=True)
class MediaContext:
    items: list[MediaItem] = field(default_factory=list)

    @property
    def primary(self) -> Optional[MediaItem]:
        return self.items[0] if self.items else None

    def __len__(self) -> int:
        return len(self.items)
