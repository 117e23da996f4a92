from __future__ import annotations

import pytest

from dingclaw.channels.dingtalk.runtime import RuntimeStateStore, get_dingtalk_runtime_state


def test_record_merges_and_returns_copies() -> None:
    store = RuntimeStateStore(clock=lambda: 42)

    store.record("dingtalk", "default", running=True, last_start_at=store.now())
    snapshot = store.record("dingtalk", "default", last_error="boom")

    assert snapshot.running is True
    assert snapshot.last_start_at == 42
    assert snapshot.last_error == "boom"

    snapshot.running = False
    assert get_dingtalk_runtime_state("default", store).running is True
    assert store.snapshot()["dingtalk:default"]["last_error"] == "boom"


def test_unknown_field_is_rejected() -> None:
    with pytest.raises(ValueError):
        RuntimeStateStore().record("dingtalk", "default", colour="red")


def test_accounts_are_isolated() -> None:
    store = RuntimeStateStore(clock=lambda: 1)
    store.record("dingtalk", "a", running=True)

    assert store.get("dingtalk", "b") is None
    assert get_dingtalk_runtime_state("a", store).running is True
