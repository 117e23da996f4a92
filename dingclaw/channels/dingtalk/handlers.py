"""
Message classification and per-kind handlers.

classify() maps a message to exactly one handler: one per MessageKind plus
an "unsupported" default. Each handler offers preview / validate / handle.

Validation outcomes:
    valid                         -> handle()
    invalid, no error_message     -> silently ignored (nothing to say)
    invalid, with error_message   -> error text is sent back to the user
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Final, Optional, Protocol

from loguru import logger

from dingclaw.channels.dingtalk.accounts import ResolvedDingTalkAccount
from dingclaw.channels.dingtalk.errors import DingTalkError
from dingclaw.channels.dingtalk.models import (
    ChatbotMessage,
    MediaContext,
    MediaItem,
    MessageKind,
    RichTextParts,
    parse_rich_text_content,
)
from dingclaw.utils.helpers import truncate

UNSUPPORTED_MESSAGE: Final[str] = "暂不支持该类型消息，请发送文本、图片、语音、视频、文件或富文本消息。"


class Downloader(Protocol):
    async def download(
        self,
        download_code: str,
        account: ResolvedDingTalkAccount,
        kind: str,
        extension: Optional[str] = None,
        file_name: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> MediaItem: ...


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    error_message: Optional[str] = None


@dataclass(slots=True)
class HandleResult:
    """
    Outcome of handle().

    ``text`` is the handler's normalized body text (e.g. the text extracted
    from a richText message, or a voice recognition result).
    """

    success: bool
    media: Optional[MediaContext] = None
    error_message: Optional[str] = None
    skip_processing: bool = False
    text: Optional[str] = None


def _number(value: object) -> Optional[float]:
    """Numeric content field, tolerating numbers sent as strings."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _milliseconds(value: object) -> Optional[int]:
    number = _number(value)
    return int(number) if number else None


def _seconds(duration_ms: object) -> str:
    ms = _number(duration_ms)
    return f"{ms / 1000:.1f}s" if ms else "?"


# =============================
# Base
# =============================

class MessageHandler(ABC):
    """Validate and normalize one kind of robot message."""

    kind: ClassVar[str] = ""
    label: ClassVar[str] = "消息"

    def can_handle(self, message: ChatbotMessage) -> bool:
        return message.msgtype == self.kind

    @abstractmethod
    def preview(self, message: ChatbotMessage) -> str:
        ...

    @abstractmethod
    def validate(self, message: ChatbotMessage) -> ValidationResult:
        ...

    @abstractmethod
    async def handle(
        self,
        message: ChatbotMessage,
        account: ResolvedDingTalkAccount,
        downloader: Downloader,
    ) -> HandleResult:
        ...

    def failure(self, error: Exception | str) -> HandleResult:
        return HandleResult(success=False, error_message=f"{self.label}处理失败：{error}")


# =============================
# Text
# =============================

class TextHandler(MessageHandler):
    kind = MessageKind.TEXT.value
    label = "文本"

    def preview(self, message: ChatbotMessage) -> str:
        return f'text "{truncate(message.text_content, 60)}"'

    def validate(self, message: ChatbotMessage) -> ValidationResult:
        if not message.text_content:
            return ValidationResult(valid=False)
        return ValidationResult(valid=True)

    async def handle(
        self,
        message: ChatbotMessage,
        account: ResolvedDingTalkAccount,
        downloader: Downloader,
    ) -> HandleResult:
        return HandleResult(success=True, text=message.text_content)


# =============================
# Single-attachment kinds
# =============================

class AttachmentHandler(MessageHandler):
    """Shared logic for picture / audio / video / file: one download code, one item."""

    def validate(self, message: ChatbotMessage) -> ValidationResult:
        if not message.content:
            return ValidationResult(valid=False, error_message=f"{self.label}处理失败：消息内容缺失")
        if not message.download_code:
            return ValidationResult(valid=False, error_message=f"{self.label}处理失败：缺少下载码")
        return ValidationResult(valid=True)

    def normalized_text(self, message: ChatbotMessage) -> Optional[str]:
        return None

    async def handle(
        self,
        message: ChatbotMessage,
        account: ResolvedDingTalkAccount,
        downloader: Downloader,
    ) -> HandleResult:
        download_code = message.download_code
        if not download_code:
            return self.failure("缺少下载码")

        try:
            item = await downloader.download(
                download_code,
                account,
                kind=self.kind,
                extension=message.content_field("extension"),
                file_name=message.content_field("fileName"),
                duration=_milliseconds(message.content_field("duration")),
            )
        except DingTalkError as e:
            logger.error("DingTalk {} download failed | msg_id={} err={}", self.kind, message.msg_id, e)
            return self.failure(e)

        return HandleResult(
            success=True,
            media=MediaContext(items=[item]),
            text=self.normalized_text(message),
        )


class PictureHandler(AttachmentHandler):
    kind = MessageKind.PICTURE.value
    label = "图片"

    def preview(self, message: ChatbotMessage) -> str:
        return f"picture code={truncate(message.download_code or '-', 24)}"


class AudioHandler(AttachmentHandler):
    kind = MessageKind.AUDIO.value
    label = "语音"

    def preview(self, message: ChatbotMessage) -> str:
        return (
            f"audio {_seconds(message.content_field('duration'))} "
            f"{message.content_field('extension', 'amr')}"
        )

    def normalized_text(self, message: ChatbotMessage) -> Optional[str]:
        # Platform speech-to-text, when the robot has it enabled.
        recognition = message.content_field("recognition")
        return recognition.strip() if isinstance(recognition, str) and recognition.strip() else None


class VideoHandler(AttachmentHandler):
    kind = MessageKind.VIDEO.value
    label = "视频"

    def preview(self, message: ChatbotMessage) -> str:
        return (
            f"video {_seconds(message.content_field('duration'))} "
            f"{message.content_field('extension', 'mp4')}"
        )


class FileHandler(AttachmentHandler):
    kind = MessageKind.FILE.value
    label = "文件"

    def preview(self, message: ChatbotMessage) -> str:
        size = _number(message.content_field("fileSize"))
        size_text = f"{size / 1024:.2f}KB" if size else "?"
        return f"file {message.content_field('fileName', 'unknown_file')} {size_text}"


# =============================
# richText
# =============================

class RichTextHandler(MessageHandler):
    kind = MessageKind.RICH_TEXT.value
    label = "富文本"

    @staticmethod
    def _elements(message: ChatbotMessage) -> Optional[list]:
        elements = message.content_field("richText")
        return elements if isinstance(elements, list) else None

    def parse(self, message: ChatbotMessage) -> RichTextParts:
        return parse_rich_text_content(self._elements(message) or [])

    def preview(self, message: ChatbotMessage) -> str:
        parts = self.parse(message)
        return f'richText "{truncate(parts.text, 40)}" +{len(parts.images)} picture(s)'

    def validate(self, message: ChatbotMessage) -> ValidationResult:
        if self._elements(message) is None:
            return ValidationResult(valid=False, error_message=f"{self.label}处理失败：消息格式错误")
        parts = self.parse(message)
        if parts.malformed:
            return ValidationResult(valid=False, error_message=f"{self.label}处理失败：消息格式错误")
        if parts.is_empty:
            return ValidationResult(valid=False)
        return ValidationResult(valid=True)

    async def handle(
        self,
        message: ChatbotMessage,
        account: ResolvedDingTalkAccount,
        downloader: Downloader,
    ) -> HandleResult:
        parts = self.parse(message)
        items: list[MediaItem] = []

        for index, image in enumerate(parts.images, start=1):
            try:
                item = await downloader.download(
                    image.download_code,
                    account,
                    kind=MessageKind.PICTURE.value,
                    extension=image.extension,
                )
            except DingTalkError as e:
                logger.error(
                    "DingTalk richText picture {}/{} failed | msg_id={} err={}",
                    index,
                    len(parts.images),
                    message.msg_id,
                    e,
                )
                _discard(items)
                return self.failure(e)
            items.append(item)

        return HandleResult(
            success=True,
            media=MediaContext(items=items) if items else None,
            text=parts.text or None,
        )


def _discard(items: list[MediaItem]) -> None:
    for item in items:
        Path(item.path).unlink(missing_ok=True)


# =============================
# Unsupported
# =============================

_KNOWN_KINDS: Final[frozenset[str]] = frozenset(k.value for k in MessageKind)


class UnsupportedHandler(MessageHandler):
    kind = ""
    label = "消息"

    def can_handle(self, message: ChatbotMessage) -> bool:
        return message.msgtype not in _KNOWN_KINDS

    def preview(self, message: ChatbotMessage) -> str:
        return f"unsupported msgtype={message.msgtype or '-'}"

    def validate(self, message: ChatbotMessage) -> ValidationResult:
        return ValidationResult(valid=False, error_message=UNSUPPORTED_MESSAGE)

    async def handle(
        self,
        message: ChatbotMessage,
        account: ResolvedDingTalkAccount,
        downloader: Downloader,
    ) -> HandleResult:
        return HandleResult(success=True, skip_processing=True, error_message=UNSUPPORTED_MESSAGE)


# =============================
# Classification
# =============================

HANDLERS: Final[dict[MessageKind, MessageHandler]] = {
    MessageKind.TEXT: TextHandler(),
    MessageKind.PICTURE: PictureHandler(),
    MessageKind.AUDIO: AudioHandler(),
    MessageKind.VIDEO: VideoHandler(),
    MessageKind.FILE: FileHandler(),
    MessageKind.RICH_TEXT: RichTextHandler(),
}

UNSUPPORTED: Final[MessageHandler] = UnsupportedHandler()


def classify(message: ChatbotMessage) -> MessageHandler:
    """Pick the handler for ``message.msgtype``; unknown kinds get UNSUPPORTED."""
    try:
        kind = MessageKind(message.msgtype)
    except ValueError:
        return UNSUPPORTED
    return HANDLERS[kind]
