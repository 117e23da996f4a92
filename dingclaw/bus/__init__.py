"""Message bus module for decoupled channel-agent communication."""

from dingclaw.bus.events import InboundMessage, OutboundMessage
from dingclaw.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
