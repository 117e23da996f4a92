"""
Access-token cache for DingTalk robot identities.

One entry per client id. Entries are served until five minutes before
expiry and then replaced; concurrent refreshes for the same identity are
allowed to race (the exchange is idempotent).
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Final, Optional, Protocol

from loguru import logger

from dingclaw.channels.dingtalk.errors import CredentialError

SAFETY_MARGIN_SECONDS: Final[float] = 5 * 60
DEFAULT_EXPIRE_IN: Final[int] = 7200


class Credentials(Protocol):
    client_id: str
    client_secret: str


# (app_key, app_secret) -> (access_token, expire_in_seconds)
TokenExchange = Callable[[str, str], Awaitable[tuple[str, int]]]


@dataclass(slots=True)
class TokenEntry:
    token: str
    expires_at: float

    def is_fresh(self, now: float, margin: float = SAFETY_MARGIN_SECONDS) -> bool:
        return now < self.expires_at - margin


class TokenCache:
    """
    Identity-keyed bearer token store.

    ``clock`` returns seconds; tests inject a fake one.
    """

    def __init__(
        self,
        exchange: TokenExchange,
        clock: Callable[[], float] = time.time,
        safety_margin: float = SAFETY_MARGIN_SECONDS,
    ):
        self._exchange = exchange
        self._clock = clock
        self._margin = safety_margin
        self._entries: dict[str, TokenEntry] = {}

    def get(self, identity: str) -> Optional[TokenEntry]:
        return self._entries.get(identity)

    def set(self, identity: str, token: str, expire_in: int) -> TokenEntry:
        entry = TokenEntry(token=token, expires_at=self._clock() + expire_in)
        self._entries[identity] = entry
        return entry

    async def get_token(self, account: Credentials) -> str:
        """
        Return a usable token for ``account``, refreshing when needed.

        Raises:
            CredentialError: the exchange returned no token.
        """
        identity = account.client_id
        cached = self._entries.get(identity)

        if cached and cached.is_fresh(self._clock(), self._margin):
            return cached.token

        token, expire_in = await self._exchange(account.client_id, account.client_secret)
        if not token:
            raise CredentialError(f"access token exchange returned no token for {identity}")

        entry = self.set(identity, token, expire_in or DEFAULT_EXPIRE_IN)
        logger.debug(
            "DingTalk access token refreshed | client_id={} expires_in={}s",
            identity,
            int(entry.expires_at - self._clock()),
        )
        return token

    def __len__(self) -> int:
        return len(self._entries)
