from __future__ import annotations

import asyncio

from dingclaw.agent.echo import EchoAgent
from dingclaw.bus.events import InboundMessage, OutboundMessage
from dingclaw.bus.queue import MessageBus
from dingclaw.channels.base import BaseChannel
from dingclaw.channels.manager import ChannelManager
from dingclaw.config.schema import Config, DingTalkAccountConfig, DingTalkConfig


class StubChannel(BaseChannel):
    def __init__(self, config, bus, account, state_store=None) -> None:
        super().__init__(config, bus)
        self.account = account
        self.name = "dingtalk" if account.account_id == "default" else f"dingtalk-{account.account_id}"
        self.sent: list[OutboundMessage] = []
        self.stopped = asyncio.Event()

    async def start(self) -> None:
        self._running = True
        await self.stopped.wait()
        self._running = False

    async def stop(self) -> None:
        self.stopped.set()

    async def send(self, msg: OutboundMessage) -> None:
        self.sent.append(msg)


def _config() -> Config:
    config = Config()
    config.channels.dingtalk = DingTalkConfig(
        enabled=True,
        client_id="k1",
        client_secret="s1",
        accounts={
            "sales": DingTalkAccountConfig(client_id="k2", client_secret="s2"),
            "off": DingTalkAccountConfig(enabled=False, client_id="k3", client_secret="s3"),
            "blank": DingTalkAccountConfig(),
        },
    )
    return config


def test_one_channel_per_enabled_configured_account(store) -> None:
    manager = ChannelManager(_config(), MessageBus(), state_store=store, channel_factory=StubChannel)
    assert manager.enabled_channels == ["dingtalk", "dingtalk-sales"]


def test_dispatch_routes_outbound_and_status_reports_runtime(store) -> None:
    async def run() -> None:
        bus = MessageBus()
        manager = ChannelManager(_config(), bus, state_store=store, channel_factory=StubChannel)
        store.record("dingtalk", "sales", last_error="socket reset")

        await manager.start()
        await bus.publish_outbound(OutboundMessage(channel="dingtalk-sales", chat_id="u1", content="hi"))
        await bus.publish_outbound(OutboundMessage(channel="nowhere", chat_id="u1", content="lost"))

        for _ in range(100):
            if manager.get_channel("dingtalk-sales").sent:
                break
            await asyncio.sleep(0.01)

        status = manager.get_status()
        assert status["dingtalk-sales"]["running"] is True
        assert status["dingtalk-sales"]["runtime"]["last_error"] == "socket reset"
        assert status["dingtalk"]["runtime"] is None

        await manager.stop()

        assert [m.content for m in manager.get_channel("dingtalk-sales").sent] == ["hi"]
        assert manager.get_channel("dingtalk").is_running is False

    asyncio.run(run())


def test_echo_agent_replies_to_the_inbound_message() -> None:
    async def run() -> None:
        bus = MessageBus()
        agent = EchoAgent(bus, prefix="echo: ")
        task = asyncio.create_task(agent.run())

        await bus.publish_inbound(
            InboundMessage(channel="dingtalk", sender_id="s1", chat_id="s1", content="hello", message_id="m1")
        )
        reply = await asyncio.wait_for(bus.consume_outbound(), timeout=1.0)

        agent.stop()
        await task

        assert reply.content == "echo: hello"
        assert reply.reply_to == "m1"
        assert reply.chat_id == "s1"

    asyncio.run(run())
