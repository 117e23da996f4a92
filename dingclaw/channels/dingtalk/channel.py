"""DingTalk robot channel: one Stream session per configured account."""

from __future__ import annotations

import asyncio
import re
from collections import OrderedDict
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from loguru import logger

from dingclaw.bus.events import OutboundMessage
from dingclaw.bus.queue import MessageBus
from dingclaw.channels.base import BaseChannel
from dingclaw.channels.dingtalk.accounts import DEFAULT_ACCOUNT_ID, ResolvedDingTalkAccount
from dingclaw.channels.dingtalk.client import DingTalkClient, SendResult
from dingclaw.channels.dingtalk.context import InboundEnvelope
from dingclaw.channels.dingtalk.errors import DingTalkError, ValidationError
from dingclaw.channels.dingtalk.handlers import Downloader
from dingclaw.channels.dingtalk.media import MediaDownloader, MediaStore, guess_content_type
from dingclaw.channels.dingtalk.monitor import SessionMonitor
from dingclaw.channels.dingtalk.reply import ReplyDispatcher
from dingclaw.channels.dingtalk.runtime import RUNTIME_STATE, RuntimeStateStore
from dingclaw.channels.dingtalk.stream import DingTalkStreamConnection, StreamConnection
from dingclaw.config.schema import DingTalkConfig
from dingclaw.utils.helpers import now_ms

_TARGET_PREFIXES = ("dingtalk:user:", "dingtalk:group:", "dingtalk:")
_TARGET_ID = re.compile(r"^[A-Za-z0-9_$+\-]+$")
_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp"}


def channel_name(account_id: str) -> str:
    """Bus routing key for an account."""
    if account_id == DEFAULT_ACCOUNT_ID:
        return "dingtalk"
    return f"dingtalk-{account_id}"


def _strip_prefix(target: str) -> str:
    for prefix in _TARGET_PREFIXES:
        if target.lower().startswith(prefix):
            return target[len(prefix):]
    return target


def normalize_target(raw: str) -> str:
    """
    Strip ``dingtalk:`` style prefixes and check the remaining id.

    Raises:
        ValidationError: empty or malformed target.
    """
    target = _strip_prefix((raw or "").strip())

    if not target or not _TARGET_ID.match(target):
        raise ValidationError(f"invalid DingTalk target: {raw!r}")
    return target


def _is_url(source: str) -> bool:
    return source.lower().startswith(("http://", "https://"))


def is_group_target(target: str) -> bool:
    # Group conversation ids are issued with a "cid" prefix.
    return target.startswith("cid")


class DingTalkChannel(BaseChannel):
    """
    Channel for one DingTalk robot.

    Architecture:
        Stream -> SessionMonitor -> sink -> MessageBus
        MessageBus -> send() -> ReplyDispatcher (webhook) | active send API
    """

    def __init__(
        self,
        config: DingTalkConfig,
        bus: MessageBus,
        account: ResolvedDingTalkAccount,
        client: Optional[DingTalkClient] = None,
        connection: Optional[StreamConnection] = None,
        downloader: Optional[Downloader] = None,
        state_store: RuntimeStateStore = RUNTIME_STATE,
        pending_limit: int = 1000,
    ):
        super().__init__(config, bus)
        self.config = config
        self.account = account
        self.name = channel_name(account.account_id)

        self.client = client or DingTalkClient()
        self.state_store = state_store
        self.downloader = downloader or MediaDownloader(
            self.client,
            MediaStore(config.media_path / account.account_id),
        )

        self._connection = connection
        self.monitor: Optional[SessionMonitor] = None
        self._abort = asyncio.Event()

        self._pending: OrderedDict[str, ReplyDispatcher] = OrderedDict()
        self._latest: dict[str, ReplyDispatcher] = {}
        self._pending_limit = pending_limit

    @property
    def allow_list(self) -> list[str]:
        return self.account.allow_from

    def normalize_allow_entry(self, entry: str) -> str:
        # allow_from may hold addresses like "dingtalk:user:<staffId>"
        return _strip_prefix(entry.strip())

    # =============================
    # Lifecycle
    # =============================

    async def start(self) -> None:
        if not self.account.is_configured:
            logger.error("DingTalk account {} missing clientId/clientSecret", self.account.account_id)
            return

        connection = self._connection or DingTalkStreamConnection(
            self.account.client_id,
            self.account.client_secret,
            reconnect_interval=self.config.reconnect_interval,
        )

        self.monitor = SessionMonitor(
            account=self.account,
            connection=connection,
            client=self.client,
            downloader=self.downloader,
            sink=self._on_inbound,
            state_store=self.state_store,
            markdown_replies=self.config.markdown_replies,
            abort=self._abort,
        )

        self._running = True
        await self.monitor.start()
        logger.info("DingTalk channel started | name={}", self.name)

        try:
            await self.monitor.wait_closed()
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        self._abort.set()

        if self.monitor:
            await self.monitor.stop()

        logger.info("DingTalk channel stopped | name={}", self.name)

    # =============================
    # Inbound
    # =============================

    async def _on_inbound(self, envelope: InboundEnvelope, dispatcher: ReplyDispatcher) -> None:
        msg = envelope.to_inbound_message(self.name)

        self._remember(envelope.message_sid, envelope.chat_id, dispatcher)
        if not await self.publish(msg):
            self._forget(envelope.message_sid, envelope.chat_id)

    def _remember(self, message_id: str, chat_id: str, dispatcher: ReplyDispatcher) -> None:
        self._pending[message_id] = dispatcher
        self._pending.move_to_end(message_id)
        self._latest[chat_id] = dispatcher

        while len(self._pending) > self._pending_limit:
            self._pending.popitem(last=False)

    def _forget(self, message_id: str, chat_id: str) -> None:
        dispatcher = self._pending.pop(message_id, None)
        if dispatcher is not None and self._latest.get(chat_id) is dispatcher:
            del self._latest[chat_id]

    def dispatcher_for(self, msg: OutboundMessage) -> Optional[ReplyDispatcher]:
        """Dispatcher of the message being answered, else the latest one for the chat."""
        dispatcher = None
        if msg.reply_to:
            dispatcher = self._pending.get(msg.reply_to)
        if dispatcher is None:
            dispatcher = self._latest.get(msg.chat_id)
        return dispatcher

    # =============================
    # Sending
    # =============================

    async def send(self, msg: OutboundMessage) -> None:
        markdown = msg.markdown

        if msg.content:
            try:
                await self._send_text(msg, markdown)
            except Exception as e:
                logger.error("DingTalk send failed | channel={} chat={} err={}", self.name, msg.chat_id, e)

        for path in msg.media:
            try:
                await self.send_media(msg.chat_id, path)
            except Exception as e:
                logger.error("DingTalk media send failed | path={} err={}", path, e)

    async def _send_text(self, msg: OutboundMessage, markdown: Optional[bool]) -> None:
        dispatcher = self.dispatcher_for(msg)
        if dispatcher is not None:
            # Answers to inbound messages only use their webhook; deliver() drops when there is none.
            if await dispatcher.deliver(msg.content, markdown=markdown):
                logger.debug("DingTalk → {} (webhook): {}", msg.chat_id, msg.content[:80])
            return

        use_markdown = self.config.markdown_replies if markdown is None else markdown
        result = await self.send_text(msg.chat_id, msg.content, markdown=use_markdown)
        logger.debug("DingTalk → {} (active, id={}): {}", result.chat_id, result.message_id, msg.content[:80])

    async def send_text(self, target: str, content: str, markdown: bool = False) -> SendResult:
        """Active send outside any reply window."""
        target = normalize_target(target)

        if is_group_target(target):
            result = await self.client.send_group_message(target, content, self.account, markdown=markdown)
        else:
            result = await self.client.send_text_message(target, content, self.account, markdown=markdown)

        self._record_outbound()
        return result

    async def send_image(self, target: str, source: str) -> SendResult:
        """
        Upload an image from a local path or an http(s) URL and send it actively.

        Raises:
            ValidationError: bad target, or a local file that is not an image.
            TransferError: the URL could not be fetched.
        """
        target = normalize_target(target)
        data, file_name = await self._load_image(source)

        uploaded = await self.client.upload_media(
            data,
            file_name,
            self.account,
            media_type="image",
            content_type=guess_content_type(file_name, "picture"),
        )
        result = await self.client.send_image_message(
            target,
            uploaded.url,
            self.account,
            group=is_group_target(target),
        )

        self._record_outbound()
        return result

    async def send_media(self, target: str, source: str, text: str = "") -> SendResult:
        """Send an image, then ``text``; if the image fails, send the text with a link instead."""
        try:
            result = await self.send_image(target, source)
        except (DingTalkError, OSError) as e:
            logger.error("DingTalk image send failed, falling back to link | source={} err={}", source, e)
            link = f"📎 图片: {source}"
            return await self.send_text(target, f"{text}\n\n{link}" if text else link)

        if text.strip():
            await self.send_text(target, text)
        return result

    async def _load_image(self, source: str) -> tuple[bytes, str]:
        if _is_url(source):
            data = await self.client.download_from_url(source)
            file_name = Path(urlparse(source).path).name
            if Path(file_name).suffix.lower() not in _IMAGE_SUFFIXES:
                file_name = f"image_{now_ms()}.png"
            return data, file_name

        file = Path(source).expanduser()
        if file.suffix.lower() not in _IMAGE_SUFFIXES:
            raise ValidationError(f"only images can be sent, got {file.name}")
        return await asyncio.to_thread(file.read_bytes), file.name

    def _record_outbound(self) -> None:
        self.state_store.record(
            "dingtalk",
            self.account.account_id,
            last_outbound_at=self.state_store.now(),
        )
