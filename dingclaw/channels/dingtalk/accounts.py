"""
DingTalk account resolution.

A config holds one default robot (top-level credentials) and any number of
named robots under ``accounts``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional

from dingclaw.config.schema import Config, DingTalkConfig

DEFAULT_ACCOUNT_ID = "default"


@dataclass(frozen=True, slots=True)
class ResolvedDingTalkAccount:
    """Credentials and settings of one robot after config resolution."""

    account_id: str
    enabled: bool
    client_id: str
    client_secret: str
    token_source: Literal["config", "none"]
    name: Optional[str] = None
    allow_from: list[str] = field(default_factory=list)

    @property
    def robot_code(self) -> str:
        # Stream robots use the app key as robotCode.
        return self.client_id

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id.strip() and self.client_secret.strip())


def normalize_account_id(account_id: Optional[str] = None) -> str:
    normalized = (account_id or "").strip().lower()
    if not normalized or normalized == DEFAULT_ACCOUNT_ID:
        return DEFAULT_ACCOUNT_ID
    return normalized


def _dingtalk(cfg: Config | DingTalkConfig) -> DingTalkConfig:
    return cfg.channels.dingtalk if isinstance(cfg, Config) else cfg


def list_account_ids(cfg: Config | DingTalkConfig) -> list[str]:
    """Default account first (when configured), then named accounts."""
    dingtalk = _dingtalk(cfg)
    ids: list[str] = []

    if dingtalk.client_id.strip():
        ids.append(DEFAULT_ACCOUNT_ID)

    for raw_id in dingtalk.accounts:
        account_id = normalize_account_id(raw_id)
        if account_id not in ids:
            ids.append(account_id)

    return ids


def resolve_default_account_id(cfg: Config | DingTalkConfig) -> str:
    ids = list_account_ids(cfg)
    return ids[0] if ids else DEFAULT_ACCOUNT_ID


def resolve_account(
    cfg: Config | DingTalkConfig,
    account_id: Optional[str] = None,
) -> ResolvedDingTalkAccount:
    """
    Resolve one account's credentials.

    Unknown accounts resolve to a disabled, unconfigured record rather than
    raising, so status reporting can still describe them.
    """
    dingtalk = _dingtalk(cfg)
    normalized = normalize_account_id(account_id)

    if normalized == DEFAULT_ACCOUNT_ID:
        client_id = dingtalk.client_id.strip()
        return ResolvedDingTalkAccount(
            account_id=normalized,
            name=dingtalk.name,
            enabled=dingtalk.enabled,
            client_id=client_id,
            client_secret=dingtalk.client_secret.strip(),
            token_source="config" if client_id else "none",
            allow_from=list(dingtalk.allow_from),
        )

    section = next(
        (acc for key, acc in dingtalk.accounts.items() if normalize_account_id(key) == normalized),
        None,
    )
    if section is None:
        return ResolvedDingTalkAccount(
            account_id=normalized,
            enabled=False,
            client_id="",
            client_secret="",
            token_source="none",
        )

    client_id = section.client_id.strip()
    return ResolvedDingTalkAccount(
        account_id=normalized,
        name=section.name,
        enabled=dingtalk.enabled if section.enabled is None else section.enabled,
        client_id=client_id,
        client_secret=section.client_secret.strip(),
        token_source="config" if client_id else "none",
        allow_from=list(section.allow_from or dingtalk.allow_from),
    )
