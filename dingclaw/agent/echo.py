"""
Echo agent
----------
Stand-in agent runtime for the gateway: answers every inbound message by
echoing its body, which is enough to exercise the full channel round trip.
"""

import asyncio

from loguru import logger

from dingclaw.bus.queue import MessageBus


class EchoAgent:
    """Consume inbound messages and publish one reply for each."""

    def __init__(self, bus: MessageBus, prefix: str = ""):
        self.bus = bus
        self.prefix = prefix
        self._running = False

    async def run(self) -> None:
        self._running = True
        logger.info("Echo agent started")

        while self._running:
            try:
                msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            logger.info("Incoming message [{}] {}: {}", msg.channel, msg.sender_id, msg.content)

            if msg.content:
                await self.bus.reply(msg, f"{self.prefix}{msg.content}")

        logger.info("Echo agent stopped")

    def stop(self) -> None:
        self._running = False
