from __future__ import annotations

import asyncio

import pytest

from dingclaw.channels.dingtalk.errors import CredentialError
from dingclaw.channels.dingtalk.token import TokenCache

from conftest import FakeClock


class CountingExchange:
    def __init__(self, tokens: list[tuple[str, int]]) -> None:
        self.tokens = list(tokens)
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, app_key: str, app_secret: str) -> tuple[str, int]:
        self.calls.append((app_key, app_secret))
        return self.tokens.pop(0)


def test_token_served_from_cache_while_far_from_expiry(account) -> None:
    async def run() -> None:
        clock = FakeClock()
        exchange = CountingExchange([("tok-1", 7200)])
        cache = TokenCache(exchange, clock=clock)

        assert await cache.get_token(account) == "tok-1"
        clock.advance(7200 - 301)
        assert await cache.get_token(account) == "tok-1"

        assert exchange.calls == [("ding_app_key", "ding_app_secret")]

    asyncio.run(run())


def test_token_refreshed_inside_safety_margin(account) -> None:
    async def run() -> None:
        clock = FakeClock()
        exchange = CountingExchange([("tok-1", 7200), ("tok-2", 7200)])
        cache = TokenCache(exchange, clock=clock)

        await cache.get_token(account)
        clock.advance(7200 - 300)

        assert await cache.get_token(account) == "tok-2"
        assert len(exchange.calls) == 2
        assert cache.get("ding_app_key").expires_at == clock.now + 7200

    asyncio.run(run())


def test_missing_token_raises_credential_error(account) -> None:
    async def run() -> None:
        cache = TokenCache(CountingExchange([("", 7200)]), clock=FakeClock())
        with pytest.raises(CredentialError):
            await cache.get_token(account)
        assert len(cache) == 0

    asyncio.run(run())


def test_zero_expire_in_falls_back_to_default(account) -> None:
    async def run() -> None:
        clock = FakeClock()
        cache = TokenCache(CountingExchange([("tok-1", 0)]), clock=clock)
        await cache.get_token(account)
        assert cache.get("ding_app_key").expires_at == clock.now + 7200

    asyncio.run(run())
