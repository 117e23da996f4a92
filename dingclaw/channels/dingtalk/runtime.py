"""
Per-account runtime state, kept for external status reporting only.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Callable, Final, Optional

from dingclaw.utils.helpers import now_ms


@dataclass(slots=True)
class ChannelRuntimeState:
    running: bool = False
    last_start_at: Optional[int] = None
    last_stop_at: Optional[int] = None
    last_error: Optional[str] = None
    last_inbound_at: Optional[int] = None
    last_outbound_at: Optional[int] = None


_FIELDS: Final[frozenset[str]] = frozenset(f.name for f in fields(ChannelRuntimeState))


class RuntimeStateStore:
    """
    Records keyed by ``<channel>:<account_id>``.

    Timestamps are unix milliseconds from ``clock``.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._states: dict[str, ChannelRuntimeState] = {}

    @staticmethod
    def key(channel: str, account_id: str) -> str:
        return f"{channel}:{account_id}"

    def now(self) -> int:
        return self._clock()

    def get(self, channel: str, account_id: str) -> Optional[ChannelRuntimeState]:
        state = self._states.get(self.key(channel, account_id))
        return replace(state) if state else None

    def record(self, channel: str, account_id: str, **changes: Any) -> ChannelRuntimeState:
        """Merge ``changes`` into the record, creating it on first use."""
        unknown = set(changes) - _FIELDS
        if unknown:
            raise ValueError(f"unknown runtime state fields: {sorted(unknown)}")

        key = self.key(channel, account_id)
        state = self._states.get(key) or ChannelRuntimeState()
        for name, value in changes.items():
            setattr(state, name, value)
        self._states[key] = state
        return replace(state)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {key: asdict(state) for key, state in self._states.items()}


# Process-wide default store
RUNTIME_STATE: Final[RuntimeStateStore] = RuntimeStateStore()


def get_dingtalk_runtime_state(
    account_id: str,
    store: RuntimeStateStore = RUNTIME_STATE,
) -> Optional[ChannelRuntimeState]:
    return store.get("dingtalk", account_id)
