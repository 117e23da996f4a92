"""DingTalk Stream-mode robot channel."""

from dingclaw.channels.dingtalk.accounts import (
    DEFAULT_ACCOUNT_ID,
    ResolvedDingTalkAccount,
    list_account_ids,
    resolve_account,
)
from dingclaw.channels.dingtalk.channel import DingTalkChannel, normalize_target
from dingclaw.channels.dingtalk.client import DingTalkClient
from dingclaw.channels.dingtalk.monitor import SessionMonitor
from dingclaw.channels.dingtalk.runtime import RUNTIME_STATE, get_dingtalk_runtime_state

__all__ = [
    "DEFAULT_ACCOUNT_ID",
    "DingTalkChannel",
    "DingTalkClient",
    "RUNTIME_STATE",
    "ResolvedDingTalkAccount",
    "SessionMonitor",
    "get_dingtalk_runtime_state",
    "list_account_ids",
    "normalize_target",
    "resolve_account",
]
