"""Runs every configured DingTalk robot and routes agent replies to them."""

from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

from loguru import logger

from dingclaw.bus.events import OutboundMessage
from dingclaw.bus.queue import MessageBus
from dingclaw.channels.base import BaseChannel
from dingclaw.channels.dingtalk.accounts import list_account_ids, resolve_account
from dingclaw.channels.dingtalk.channel import DingTalkChannel
from dingclaw.channels.dingtalk.runtime import RUNTIME_STATE, RuntimeStateStore
from dingclaw.config.schema import Config

ChannelFactory = Callable[..., BaseChannel]


class ChannelManager:
    """
    Owns the channels and the outbound dispatcher.

    Channels are keyed by bus name ("dingtalk", "dingtalk-<account>"); an
    OutboundMessage is handed to the channel named in its ``channel`` field.
    """

    def __init__(
        self,
        config: Config,
        bus: MessageBus,
        state_store: RuntimeStateStore = RUNTIME_STATE,
        channel_factory: ChannelFactory = DingTalkChannel,
    ):
        self.config = config
        self.bus = bus
        self.state_store = state_store
        self.channels: Dict[str, BaseChannel] = {}

        self._factory = channel_factory
        self._tasks: Dict[str, asyncio.Task] = {}
        self._dispatcher: Optional[asyncio.Task] = None

        self._build_channels()

    # ==========================================================
    # Setup
    # ==========================================================

    def _build_channels(self) -> None:
        dingtalk = self.config.channels.dingtalk

        for account_id in list_account_ids(dingtalk):
            account = resolve_account(dingtalk, account_id)

            if not account.enabled:
                logger.debug("DingTalk account {} disabled", account_id)
                continue
            if not account.is_configured:
                logger.warning("DingTalk account {} has no clientId/clientSecret, skipped", account_id)
                continue

            channel = self._factory(dingtalk, self.bus, account, state_store=self.state_store)
            self.channels[channel.name] = channel
            logger.info("Channel enabled: {} (robotCode={})", channel.name, account.robot_code)

        if not self.channels:
            logger.warning("No DingTalk account is enabled and configured")

    # ==========================================================
    # Lifecycle
    # ==========================================================

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None

    async def start(self) -> None:
        """Spawn every channel plus the dispatcher; returns immediately."""
        if self.is_running or not self.channels:
            return

        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="channel-dispatcher")

        for name, channel in self.channels.items():
            task = asyncio.create_task(channel.start(), name=f"channel-{name}")
            task.add_done_callback(lambda t, name=name: self._on_channel_exit(name, t))
            self._tasks[name] = task

        logger.success("ChannelManager started: {}", ", ".join(self.channels))

    async def stop(self) -> None:
        if not self.is_running:
            return

        dispatcher, self._dispatcher = self._dispatcher, None
        dispatcher.cancel()
        await asyncio.gather(dispatcher, return_exceptions=True)

        for name, channel in self.channels.items():
            try:
                await channel.stop()
            except Exception as e:
                logger.error("Channel stop failed | channel={} err={}", name, e)

        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("ChannelManager stopped")

    def _on_channel_exit(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.opt(exception=error).error("Channel crashed | channel={}", name)

    # ==========================================================
    # Outbound
    # ==========================================================

    async def _dispatch_loop(self) -> None:
        while True:
            msg = await self.bus.consume_outbound()
            await self.dispatch(msg)

    async def dispatch(self, msg: OutboundMessage) -> None:
        channel = self.channels.get(msg.channel)
        if channel is None:
            logger.warning("Outbound message for unknown channel dropped | channel={}", msg.channel)
            return

        try:
            await channel.send(msg)
        except Exception:
            logger.exception("Send failed | channel={} chat={}", msg.channel, msg.chat_id)

    # ==========================================================
    # Query
    # ==========================================================

    def get_channel(self, name: str) -> Optional[BaseChannel]:
        return self.channels.get(name)

    @property
    def enabled_channels(self) -> list[str]:
        return list(self.channels)

    def get_status(self) -> Dict[str, Any]:
        """Per-channel running flag plus the account's runtime-state record."""
        status: Dict[str, Any] = {}

        for name, channel in self.channels.items():
            account = getattr(channel, "account", None)
            account_id = account.account_id if account else None
            runtime = self.state_store.get("dingtalk", account_id) if account_id else None

            status[name] = {
                "account_id": account_id,
                "running": channel.is_running,
                "runtime": asdict(runtime) if runtime else None,
            }

        return status
