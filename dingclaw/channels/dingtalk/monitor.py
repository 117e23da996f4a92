"""
DingTalk Stream session monitor.

Owns one robot's duplex connection and the per-event pipeline:

    StreamEvent
        -> decode            (DecodeError: ack FAILURE, stop)
        -> classify + preview log
        -> ack SUCCESS       (always before any network work)
        -> validate          (invalid: optional error reply, stop)
        -> spawn pipeline:  handle -> build envelope -> sink(envelope, dispatcher)

Pipelines run as supervised background tasks: failures are logged and
recorded in runtime state, never raised into the transport.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from enum import Enum
from typing import Awaitable, Callable, Coroutine, Optional

from loguru import logger

from dingclaw.channels.dingtalk.accounts import ResolvedDingTalkAccount
from dingclaw.channels.dingtalk.client import DingTalkClient
from dingclaw.channels.dingtalk.context import InboundEnvelope, build_inbound_context
from dingclaw.channels.dingtalk.errors import DecodeError
from dingclaw.channels.dingtalk.handlers import Downloader, MessageHandler, classify
from dingclaw.channels.dingtalk.models import ChatbotMessage, decode_message
from dingclaw.channels.dingtalk.reply import ReplyDispatcher
from dingclaw.channels.dingtalk.runtime import RUNTIME_STATE, RuntimeStateStore
from dingclaw.channels.dingtalk.stream import AckStatus, StreamConnection, StreamEvent, TOPIC_ROBOT

InboundSink = Callable[[InboundEnvelope, ReplyDispatcher], Awaitable[None]]

STATE_CHANNEL = "dingtalk"


class MonitorState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class SessionMonitor:
    """
    Stream session for one DingTalk robot account.

    ``sink`` receives each normalized envelope together with the dispatcher
    that can answer it; it stands for the agent runtime.
    """

    def __init__(
        self,
        account: ResolvedDingTalkAccount,
        connection: StreamConnection,
        client: DingTalkClient,
        downloader: Downloader,
        sink: InboundSink,
        state_store: RuntimeStateStore = RUNTIME_STATE,
        markdown_replies: bool = False,
        abort: Optional[asyncio.Event] = None,
        dedup_limit: int = 1000,
    ):
        self.account = account
        self.connection = connection
        self.client = client
        self.downloader = downloader
        self.sink = sink
        self.state_store = state_store
        self.markdown_replies = markdown_replies

        self.state: MonitorState = MonitorState.DISCONNECTED

        self._abort = abort
        self._abort_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._started: bool = False
        self._stopped: bool = False
        self._closed = asyncio.Event()

        self._seen_ids: OrderedDict[str, None] = OrderedDict()
        self._dedup_limit = dedup_limit
        self._dedup_trim = max(1, dedup_limit // 2)

    @property
    def account_id(self) -> str:
        return self.account.account_id

    def _record(self, **changes) -> None:
        self.state_store.record(STATE_CHANNEL, self.account_id, **changes)

    # =============================
    # Lifecycle
    # =============================

    async def start(self) -> None:
        """Register callbacks and open the connection. Returns once connecting."""
        if self._started:
            return
        self._started = True

        self._record(running=True, last_start_at=self.state_store.now())
        self.state = MonitorState.CONNECTING

        self.connection.register_callback_listener(TOPIC_ROBOT, self.on_event)
        self.connection.on("open", self._on_open)
        self.connection.on("close", self._on_close)
        self.connection.on("error", self._on_error)

        if self._abort is not None:
            self._abort_task = asyncio.create_task(
                self._watch_abort(self._abort),
                name=f"dingtalk-abort-{self.account_id}",
            )

        logger.info("DingTalk stream connecting | account={}", self.account_id)
        await self.connection.connect()

    async def stop(self) -> None:
        """Disconnect once; later calls are no-ops. In-flight pipelines keep running."""
        if self._stopped:
            return
        self._stopped = True
        self.state = MonitorState.CLOSING

        logger.info("Stopping DingTalk provider | account={}", self.account_id)

        if self._abort_task and self._abort_task is not asyncio.current_task():
            self._abort_task.cancel()

        try:
            await self.connection.disconnect()
        finally:
            self._record(running=False, last_stop_at=self.state_store.now())
            self.state = MonitorState.DISCONNECTED
            self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def wait_idle(self) -> None:
        """Wait for every spawned pipeline to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _watch_abort(self, abort: asyncio.Event) -> None:
        await abort.wait()
        await self.stop()

    # =============================
    # Connection events
    # =============================

    def _on_open(self) -> None:
        self.state = MonitorState.CONNECTED
        self._record(running=True)
        logger.success("DingTalk stream connected | account={}", self.account_id)

    def _on_close(self) -> None:
        if self.state is not MonitorState.CLOSING:
            self.state = MonitorState.CONNECTING if not self._stopped else MonitorState.DISCONNECTED
        self._record(running=False, last_stop_at=self.state_store.now())
        logger.warning("DingTalk stream closed | account={}", self.account_id)

    def _on_error(self, error: Exception) -> None:
        self._record(last_error=str(error))
        logger.error("DingTalk stream error | account={} err={}", self.account_id, error)

    # =============================
    # Inbound
    # =============================

    def on_event(self, event: StreamEvent) -> None:
        """
        Per-event callback. Acks synchronously, then hands off to a background task.
        """
        try:
            message = decode_message(event.data)
        except DecodeError as e:
            logger.error("DingTalk message decode failed | event_id={} err={}", event.event_id, e)
            self._record(last_error=str(e))
            self.connection.socket_callback_response(event.event_id, AckStatus.FAILURE)
            return

        handler = classify(message)
        logger.info(
            "DingTalk inbound | account={} msg_id={} chat={} sender={}({}) | {}",
            self.account_id,
            message.msg_id,
            "group" if message.is_group else "direct",
            message.sender_nick,
            message.sender,
            self._preview(handler, message),
        )
        self._record(last_inbound_at=self.state_store.now())

        self.connection.socket_callback_response(event.event_id, AckStatus.SUCCESS)

        if self._is_duplicate(message.msg_id):
            logger.debug("DingTalk duplicate delivery dropped | msg_id={}", message.msg_id)
            return

        dispatcher = self.make_dispatcher(message)
        try:
            verdict = handler.validate(message)
        except Exception as e:
            logger.exception("DingTalk validation crashed | msg_id={}", message.msg_id)
            self._record(last_error=str(e))
            return

        if not verdict.valid:
            if verdict.error_message:
                self.spawn(
                    self._reply_error(dispatcher, verdict.error_message),
                    name=f"dingtalk-invalid-{message.msg_id}",
                )
            return

        self.spawn(
            self._process(message, handler, dispatcher),
            name=f"dingtalk-process-{message.msg_id}",
        )

    @staticmethod
    def _preview(handler: MessageHandler, message: ChatbotMessage) -> str:
        # Runs before the ack; a bad payload must not block it.
        try:
            return handler.preview(message)
        except Exception:
            logger.opt(exception=True).warning("DingTalk preview failed | msg_id={}", message.msg_id)
            return f"msgtype={message.msgtype or '-'}"

    def make_dispatcher(self, message: ChatbotMessage) -> ReplyDispatcher:
        return ReplyDispatcher(
            message=message,
            client=self.client,
            state=self.state_store,
            account_id=self.account_id,
            markdown=self.markdown_replies,
            channel=STATE_CHANNEL,
        )

    async def _process(
        self,
        message: ChatbotMessage,
        handler: MessageHandler,
        dispatcher: ReplyDispatcher,
    ) -> None:
        result = await handler.handle(message, self.account, self.downloader)

        if not result.success:
            await self._reply_error(dispatcher, result.error_message or f"{handler.label}处理失败")
            return

        if result.skip_processing:
            return

        envelope = build_inbound_context(
            message,
            self.account_id,
            text=result.text,
            media=result.media,
        )
        await self.sink(envelope, dispatcher)

    async def _reply_error(self, dispatcher: ReplyDispatcher, text: str) -> None:
        if not dispatcher.reply_address:
            logger.warning(
                "DingTalk error reply dropped, no session webhook | msg_id={} text={}",
                dispatcher.message.msg_id,
                text,
            )
            return
        await dispatcher.deliver(text)

    # =============================
    # Background tasks
    # =============================

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """Run ``coro`` detached behind an error boundary."""
        task = asyncio.get_running_loop().create_task(self._guarded(coro, name or "pipeline"), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro: Coroutine, name: str) -> None:
        try:
            await coro
        except Exception as e:
            logger.exception("DingTalk async processing failed | task={}", name)
            self._record(last_error=str(e))

    # =============================
    # Helpers
    # =============================

    def _is_duplicate(self, message_id: str) -> bool:
        if not message_id:
            return False

        if message_id in self._seen_ids:
            return True

        self._seen_ids[message_id] = None

        if len(self._seen_ids) > self._dedup_limit:
            for _ in range(self._dedup_trim):
                self._seen_ids.popitem(last=False)

        return False
