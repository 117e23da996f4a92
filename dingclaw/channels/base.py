"""Channel contract between a robot connection and the message bus."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable

from loguru import logger

from dingclaw.bus.events import InboundMessage, OutboundMessage
from dingclaw.bus.queue import MessageBus

WILDCARD = "*"


class BaseChannel(ABC):
    """
    A running robot as seen by the ChannelManager.

    Subclasses own the platform connection and implement start/stop/send.
    This class gates inbound traffic on ``allow_from`` and forwards it to
    the bus.
    """

    #: Bus routing key
    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running: bool = False

    # =============================
    # Lifecycle
    # =============================

    @abstractmethod
    async def start(self) -> None:
        """Connect and block until stop() is called."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Close the platform connection; repeated calls are no-ops."""
        ...

    @property
    def is_running(self) -> bool:
        return self._running

    # =============================
    # Outbound
    # =============================

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """
        Deliver an agent reply.

        Delivery failures are logged per message, not raised.
        """
        ...

    # =============================
    # Inbound
    # =============================

    async def publish(self, msg: InboundMessage) -> bool:
        """Forward to the bus. False when ``allow_from`` rejects the sender."""
        if not self.is_allowed(msg.sender_id):
            logger.warning(
                "Access denied | channel={} sender={} chat={} | add the sender to allow_from",
                self.name,
                msg.sender_id,
                msg.chat_id,
            )
            return False

        await self.bus.publish_inbound(msg)
        return True

    # =============================
    # Allow list
    # =============================

    @property
    def allow_list(self) -> Iterable[str]:
        return getattr(self.config, "allow_from", None) or []

    def normalize_allow_entry(self, entry: str) -> str:
        return entry.strip()

    def is_allowed(self, sender_id: str) -> bool:
        """
        Empty list or ``*`` admits everyone. Composite ids ("a|b") match on
        any part.
        """
        entries = {self.normalize_allow_entry(str(e)) for e in self.allow_list}
        entries.discard("")

        if not entries or WILDCARD in entries:
            return True

        return any(part in entries for part in str(sender_id).split("|") if part)
