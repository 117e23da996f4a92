"""
Queues between DingTalk channels and the agent runtime.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from dingclaw.bus.events import InboundMessage, OutboundMessage


class MessageBus:
    """
    Two FIFO queues.

        channel.publish() -> inbound -> agent -> outbound -> ChannelManager -> channel.send()

    The bus never inspects messages; routing back to the right robot is
    done by ``OutboundMessage.channel``.
    """

    def __init__(self, inbound_size: int = 0, outbound_size: int = 0):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=inbound_size)
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=outbound_size)

    async def publish_inbound(self, msg: InboundMessage) -> None:
        logger.debug("bus <- {} {} | {}", msg.channel, msg.message_id, msg.content[:60])
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        logger.debug("bus -> {} {} | {}", msg.channel, msg.chat_id, msg.content[:60])
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        return await self.outbound.get()

    async def reply(
        self,
        to: InboundMessage,
        content: str,
        markdown: Optional[bool] = None,
        media: Optional[list[str]] = None,
    ) -> OutboundMessage:
        """Publish an answer addressed to the chat and message of ``to``."""
        msg = OutboundMessage(
            channel=to.channel,
            chat_id=to.chat_id,
            content=content,
            reply_to=to.message_id,
            markdown=markdown,
            media=list(media or []),
        )
        await self.publish_outbound(msg)
        return msg

    @property
    def inbound_size(self) -> int:
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        return self.outbound.qsize()
