"""
Duplex Stream connection.

The monitor depends only on the StreamConnection protocol. The production
implementation wraps the dingtalk-stream SDK: the SDK opens the gateway
ticket, parses frames and writes acks; this module owns the websocket
reconnect loop and turns SDK callbacks into StreamEvents.

Architecture:
    DingTalk gateway
          ↓  websocket
    DingTalkStreamConnection (SDK routing + ack frames)
          ↓  StreamEvent
    SessionMonitor
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, DefaultDict, Final, Mapping, Optional, Protocol
from urllib.parse import quote_plus

import dingtalk_stream
import websockets
from loguru import logger

from dingclaw.channels.dingtalk.errors import StreamConnectionError

TOPIC_ROBOT: Final[str] = dingtalk_stream.chatbot.ChatbotMessage.TOPIC


class AckStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """One inbound callback: ack id plus the JSON message body."""

    event_id: str
    data: str | bytes | Mapping[str, Any]
    topic: str = TOPIC_ROBOT


EventListener = Callable[[StreamEvent], None]


class StreamConnection(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def on(self, event: str, callback: Callable[..., None]) -> None: ...

    def register_callback_listener(self, topic: str, listener: EventListener) -> None: ...

    def socket_callback_response(self, event_id: str, status: AckStatus) -> None: ...


# =============================
# SDK adapter
# =============================

class _ListenerHandler(dingtalk_stream.CallbackHandler):
    """
    Bridges SDK callbacks to a synchronous listener.

    The listener must call socket_callback_response() before returning;
    the recorded status becomes the SDK ack frame.
    """

    def __init__(self, connection: "DingTalkStreamConnection", listener: EventListener):
        super().__init__()
        self._connection = connection
        self._listener = listener

    async def process(self, callback: dingtalk_stream.CallbackMessage):
        event_id = callback.headers.message_id
        try:
            self._listener(StreamEvent(event_id=event_id, data=callback.data, topic=callback.headers.topic))
        except Exception as e:
            logger.exception("DingTalk stream listener error | event_id={}", event_id)
            self._connection.socket_callback_response(event_id, AckStatus.FAILURE)
            self._connection.pop_ack(event_id)
            return dingtalk_stream.AckMessage.STATUS_SYSTEM_EXCEPTION, str(e)

        status = self._connection.pop_ack(event_id)
        if status is AckStatus.SUCCESS:
            return dingtalk_stream.AckMessage.STATUS_OK, "OK"
        return dingtalk_stream.AckMessage.STATUS_SYSTEM_EXCEPTION, "FAILURE"


class DingTalkStreamConnection:
    """
    StreamConnection backed by dingtalk-stream.

    Events emitted through on():
        open   - websocket established
        close  - websocket ended (before any reconnect)
        error  - gateway/socket failure, argument is the exception
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        reconnect_interval: float = 10.0,
    ):
        credential = dingtalk_stream.Credential(client_id, client_secret)
        self._client = dingtalk_stream.DingTalkStreamClient(credential)
        self._reconnect_interval = reconnect_interval

        self._listeners: DefaultDict[str, list[Callable[..., None]]] = defaultdict(list)
        self._acks: dict[str, AckStatus] = {}
        self._task: Optional[asyncio.Task] = None
        self._ws: Optional[Any] = None
        self._closing: bool = False

    # =============================
    # Registration
    # =============================

    def on(self, event: str, callback: Callable[..., None]) -> None:
        self._listeners[event].append(callback)

    def register_callback_listener(self, topic: str, listener: EventListener) -> None:
        self._client.register_callback_handler(topic, _ListenerHandler(self, listener))

    def socket_callback_response(self, event_id: str, status: AckStatus) -> None:
        # First ack wins; a late FAILURE must not overwrite SUCCESS.
        self._acks.setdefault(event_id, status)

    def pop_ack(self, event_id: str) -> Optional[AckStatus]:
        return self._acks.pop(event_id, None)

    def _emit(self, event: str, *args: Any) -> None:
        for callback in self._listeners.get(event, []):
            try:
                callback(*args)
            except Exception:
                logger.exception("DingTalk stream '{}' listener failed", event)

    # =============================
    # Lifecycle
    # =============================

    async def connect(self) -> None:
        if self._task and not self._task.done():
            return
        self._closing = False
        self._client.pre_start()
        self._task = asyncio.create_task(self._run(), name="dingtalk-stream")

    async def disconnect(self) -> None:
        self._closing = True

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("DingTalk websocket close failed: {}", e)

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while not self._closing:
            try:
                await self._serve_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._emit("error", e)
            finally:
                if self._ws is not None:
                    self._ws = None
                    self._emit("close")

            if not self._closing:
                logger.info("Reconnecting DingTalk stream in {}s...", self._reconnect_interval)
                await asyncio.sleep(self._reconnect_interval)

    async def _serve_once(self) -> None:
        connection = await asyncio.to_thread(self._client.open_connection)
        if not connection:
            raise StreamConnectionError("open connection failed")

        uri = f"{connection['endpoint']}?ticket={quote_plus(connection['ticket'])}"

        async with websockets.connect(uri) as ws:
            self._ws = ws
            self._client.websocket = ws
            self._emit("open")

            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError as e:
                    logger.error("DingTalk stream frame is not JSON: {}", e)
                    continue

                result = await self._client.route_message(frame)
                if result == dingtalk_stream.DingTalkStreamClient.TAG_DISCONNECT:
                    logger.info("DingTalk gateway requested disconnect")
                    break
