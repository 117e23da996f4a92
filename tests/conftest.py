from __future__ import annotations

import json
from typing import Any, Callable, Optional

import httpx
import pytest

from dingclaw.channels.dingtalk.accounts import ResolvedDingTalkAccount
from dingclaw.channels.dingtalk.client import DingTalkClient
from dingclaw.channels.dingtalk.models import MediaItem
from dingclaw.channels.dingtalk.runtime import RuntimeStateStore
from dingclaw.channels.dingtalk.stream import AckStatus, EventListener, StreamEvent
from dingclaw.channels.dingtalk.token import TokenCache


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeConnection:
    """In-memory StreamConnection: records acks and lets tests push events."""

    def __init__(self) -> None:
        self.listeners: dict[str, EventListener] = {}
        self.handlers: dict[str, list[Callable[..., None]]] = {}
        self.acks: list[tuple[str, AckStatus]] = []
        self.log: list[str] = []
        self.connect_calls = 0
        self.disconnect_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        self.emit("open")

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.emit("close")

    def on(self, event: str, callback: Callable[..., None]) -> None:
        self.handlers.setdefault(event, []).append(callback)

    def register_callback_listener(self, topic: str, listener: EventListener) -> None:
        self.listeners[topic] = listener

    def socket_callback_response(self, event_id: str, status: AckStatus) -> None:
        self.acks.append((event_id, status))
        self.log.append(f"ack:{status.value}")

    def emit(self, event: str, *args: Any) -> None:
        for callback in self.handlers.get(event, []):
            callback(*args)

    def push(self, data: Any, event_id: str = "evt-1") -> None:
        for listener in self.listeners.values():
            listener(StreamEvent(event_id=event_id, data=data))


class FakeDownloader:
    """Downloader double; writes nothing, returns canned items or raises."""

    def __init__(self, log: Optional[list[str]] = None, fail_on: Optional[set[str]] = None) -> None:
        self.calls: list[tuple[str, str]] = []
        self.log = log if log is not None else []
        self.fail_on = fail_on or set()

    async def download(
        self,
        download_code: str,
        account: ResolvedDingTalkAccount,
        kind: str,
        extension: Optional[str] = None,
        file_name: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> MediaItem:
        from dingclaw.channels.dingtalk.errors import TransferError

        self.calls.append((download_code, kind))
        self.log.append(f"download:{download_code}")
        if download_code in self.fail_on:
            raise TransferError("download failed: 404 Not Found", status_code=404)
        return MediaItem(
            kind=kind,
            path=f"/tmp/{download_code}.{extension or 'bin'}",
            content_type="image/png" if kind == "picture" else "application/octet-stream",
            file_name=file_name,
            file_size=3,
            duration=duration,
        )


class Recorder:
    """httpx.MockTransport handler that records requests and answers by URL."""

    def __init__(self, routes: dict[str, Any]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    @staticmethod
    def key(request: httpx.Request) -> str:
        return f"{request.url.scheme}://{request.url.host}{request.url.path}"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get(self.key(request))
        if answer is None:
            return httpx.Response(404, json={"message": "not found"})
        if isinstance(answer, httpx.Response):
            return answer
        if callable(answer):
            return answer(request)
        return httpx.Response(200, json=answer)

    def bodies(self, key: str) -> list[dict[str, Any]]:
        """JSON bodies posted to ``scheme://host/path``."""
        return [json.loads(r.content) for r in self.requests if self.key(r) == key]


@pytest.fixture
def account() -> ResolvedDingTalkAccount:
    return ResolvedDingTalkAccount(
        account_id="default",
        enabled=True,
        client_id="ding_app_key",
        client_secret="ding_app_secret",
        token_source="config",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> RuntimeStateStore:
    ticks = iter(range(1_000, 10_000_000, 1_000))
    return RuntimeStateStore(clock=lambda: next(ticks))


@pytest.fixture
def make_client(clock: FakeClock) -> Callable[[Recorder], DingTalkClient]:
    def build(recorder: Recorder) -> DingTalkClient:
        client = DingTalkClient(transport=httpx.MockTransport(recorder))
        client.tokens = TokenCache(client.exchange_token, clock=clock)
        return client

    return build


@pytest.fixture
def token_route() -> dict[str, Any]:
    return {
        "https://api.dingtalk.com/v1.0/oauth2/accessToken": {
            "accessToken": "tok-1",
            "expireIn": 7200,
        }
    }
