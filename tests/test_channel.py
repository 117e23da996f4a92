from __future__ import annotations

import asyncio
import json
from dataclasses import replace

import httpx
import pytest

from dingclaw.bus.events import OutboundMessage
from dingclaw.bus.queue import MessageBus
from dingclaw.channels.dingtalk.channel import DingTalkChannel, channel_name, normalize_target
from dingclaw.channels.dingtalk.errors import ValidationError
from dingclaw.config.schema import DingTalkConfig

from conftest import FakeConnection, FakeDownloader, Recorder

BATCH_SEND_URL = "https://api.dingtalk.com/v1.0/robot/oToMessages/batchSend"
GROUP_SEND_URL = "https://api.dingtalk.com/v1.0/robot/groupMessages/send"
UPLOAD_URL = "https://oapi.dingtalk.com/media/upload"


async def _started(channel: DingTalkChannel, connection: FakeConnection) -> asyncio.Task:
    task = asyncio.create_task(channel.start())
    while not connection.listeners:
        await asyncio.sleep(0)
    return task


def _channel(account, store, client, connection, tmp_path, bus=None) -> DingTalkChannel:
    return DingTalkChannel(
        DingTalkConfig(enabled=True, media_dir=str(tmp_path)),
        bus or MessageBus(),
        account,
        client=client,
        connection=connection,
        downloader=FakeDownloader(),
        state_store=store,
    )


def test_normalize_target() -> None:
    assert normalize_target("dingtalk:user:staff1") == "staff1"
    assert normalize_target("dingtalk:group:cid1") == "cid1"
    assert normalize_target(" DingTalk:abc$+-_9 ") == "abc$+-_9"

    with pytest.raises(ValidationError):
        normalize_target("dingtalk:")
    with pytest.raises(ValidationError):
        normalize_target("two words")


def test_channel_names() -> None:
    assert channel_name("default") == "dingtalk"
    assert channel_name("sales") == "dingtalk-sales"


def test_inbound_reaches_bus_and_reply_uses_webhook(account, store, make_client, tmp_path) -> None:
    async def run() -> None:
        recorder = Recorder({"https://x/": {"errcode": 0}})
        connection = FakeConnection()
        bus = MessageBus()
        channel = _channel(account, store, make_client(recorder), connection, tmp_path, bus)
        task = await _started(channel, connection)

        connection.push(
            {
                "msgtype": "text",
                "text": {"content": "hello"},
                "msgId": "m1",
                "senderStaffId": "staff1",
                "sessionWebhook": "https://x",
            }
        )
        await channel.monitor.wait_idle()

        inbound = bus.inbound.get_nowait()
        assert inbound.channel == "dingtalk"
        assert inbound.content == "hello"
        assert inbound.chat_id == "staff1"

        await channel.send(
            OutboundMessage(channel="dingtalk", chat_id="staff1", content="hi there", reply_to="m1")
        )
        assert recorder.bodies("https://x/") == [{"msgtype": "text", "text": {"content": "hi there"}}]

        await channel.stop()
        await task
        assert channel.is_running is False

    asyncio.run(run())


def test_sender_outside_allow_list_is_dropped(account, store, make_client, tmp_path) -> None:
    async def run() -> None:
        connection = FakeConnection()
        bus = MessageBus()
        restricted = replace(account, allow_from=["boss"])
        channel = _channel(restricted, store, make_client(Recorder({})), connection, tmp_path, bus)
        task = await _started(channel, connection)

        connection.push({"msgtype": "text", "text": {"content": "hi"}, "msgId": "m1", "senderStaffId": "intern"})
        await channel.monitor.wait_idle()

        assert bus.inbound_size == 0
        assert channel.dispatcher_for(OutboundMessage(channel="dingtalk", chat_id="intern", content="x")) is None

        await channel.stop()
        await task

    asyncio.run(run())


def test_send_without_inbound_uses_active_send(account, store, make_client, token_route, tmp_path) -> None:
    async def run() -> None:
        recorder = Recorder({**token_route, BATCH_SEND_URL: {"processQueryKey": "q1"}, GROUP_SEND_URL: {}})
        channel = _channel(account, store, make_client(recorder), FakeConnection(), tmp_path)

        await channel.send(OutboundMessage(channel="dingtalk", chat_id="dingtalk:user:staff9", content="ping"))
        await channel.send(OutboundMessage(channel="dingtalk", chat_id="cidGroup1", content="pong"))

        direct = recorder.bodies(BATCH_SEND_URL)[0]
        assert direct["userIds"] == ["staff9"]
        assert json.loads(direct["msgParam"]) == {"content": "ping"}

        group = recorder.bodies(GROUP_SEND_URL)[0]
        assert group["openConversationId"] == "cidGroup1"
        assert store.get("dingtalk", "default").last_outbound_at is not None

    asyncio.run(run())


def test_send_failure_is_isolated(account, store, make_client, tmp_path) -> None:
    async def run() -> None:
        channel = _channel(account, store, make_client(Recorder({})), FakeConnection(), tmp_path)
        # token endpoint answers 404, so the active send fails and is only logged
        await channel.send(OutboundMessage(channel="dingtalk", chat_id="staff1", content="ping"))

    asyncio.run(run())


def test_media_paths_are_uploaded_as_images(account, store, make_client, token_route, tmp_path) -> None:
    async def run() -> None:
        image = tmp_path / "chart.png"
        image.write_bytes(b"\x89PNG")
        recorder = Recorder(
            {
                **token_route,
                UPLOAD_URL: {"errcode": 0, "media_id": "@m1"},
                GROUP_SEND_URL: {"processQueryKey": "q2"},
            }
        )
        channel = _channel(account, store, make_client(recorder), FakeConnection(), tmp_path)

        await channel.send(OutboundMessage(channel="dingtalk", chat_id="cid1", content="", media=[str(image)]))

        body = recorder.bodies(GROUP_SEND_URL)[0]
        assert body["msgKey"] == "sampleImageMsg"
        assert "media_id=@m1" in json.loads(body["msgParam"])["photoURL"]

    asyncio.run(run())


def test_send_image_rejects_non_images(account, store, make_client, tmp_path) -> None:
    async def run() -> None:
        doc = tmp_path / "notes.txt"
        doc.write_text("x")
        channel = _channel(account, store, make_client(Recorder({})), FakeConnection(), tmp_path)

        with pytest.raises(ValidationError):
            await channel.send_image("staff1", str(doc))

    asyncio.run(run())


def test_allow_list_accepts_prefixed_entries_and_wildcard(account, store, make_client, tmp_path) -> None:
    prefixed = _channel(
        replace(account, allow_from=["dingtalk:user:boss", " "]),
        store,
        make_client(Recorder({})),
        FakeConnection(),
        tmp_path,
    )
    assert prefixed.is_allowed("boss") is True
    assert prefixed.is_allowed("intern|boss") is True
    assert prefixed.is_allowed("intern") is False

    wildcard = _channel(replace(account, allow_from=["*"]), store, make_client(Recorder({})), FakeConnection(), tmp_path)
    assert wildcard.is_allowed("anyone") is True


def test_reply_without_webhook_is_dropped(account, store, make_client, tmp_path) -> None:
    async def run() -> None:
        recorder = Recorder({})
        connection = FakeConnection()
        bus = MessageBus()
        channel = _channel(account, store, make_client(recorder), connection, tmp_path, bus)
        task = await _started(channel, connection)

        connection.push({"msgtype": "text", "text": {"content": "hello"}, "msgId": "m1", "senderStaffId": "staff1"})
        await channel.monitor.wait_idle()

        reply = await bus.reply(bus.inbound.get_nowait(), "hi there")
        await channel.send(reply)

        assert recorder.requests == []
        assert store.get("dingtalk", "default").last_outbound_at is None

        await channel.stop()
        await task

    asyncio.run(run())


def test_reply_after_webhook_expiry_still_uses_webhook(account, store, make_client, token_route, tmp_path) -> None:
    async def run() -> None:
        recorder = Recorder({**token_route, "https://x/": {"errcode": 0}, BATCH_SEND_URL: {}})
        connection = FakeConnection()
        bus = MessageBus()
        channel = _channel(account, store, make_client(recorder), connection, tmp_path, bus)
        task = await _started(channel, connection)

        connection.push(
            {
                "msgtype": "text",
                "text": {"content": "hello"},
                "msgId": "m1",
                "senderStaffId": "staff1",
                "sessionWebhook": "https://x",
                "sessionWebhookExpiredTime": 1,
            }
        )
        await channel.monitor.wait_idle()

        await channel.send(await bus.reply(bus.inbound.get_nowait(), "late"))

        assert recorder.bodies("https://x/") == [{"msgtype": "text", "text": {"content": "late"}}]
        assert recorder.bodies(BATCH_SEND_URL) == []

        await channel.stop()
        await task

    asyncio.run(run())


def test_media_url_is_fetched_and_uploaded(account, store, make_client, token_route, tmp_path) -> None:
    async def run() -> None:
        recorder = Recorder(
            {
                **token_route,
                "https://img.example.com/charts/q3.png": httpx.Response(200, content=b"\x89PNG"),
                UPLOAD_URL: {"errcode": 0, "media_id": "@m2"},
                BATCH_SEND_URL: {"processQueryKey": "q3"},
            }
        )
        channel = _channel(account, store, make_client(recorder), FakeConnection(), tmp_path)

        result = await channel.send_media("staff1", "https://img.example.com/charts/q3.png")

        assert result.message_id == "q3"
        upload = next(r for r in recorder.requests if Recorder.key(r) == UPLOAD_URL)
        assert b'filename="q3.png"' in upload.content
        assert b"\x89PNG" in upload.content
        assert json.loads(recorder.bodies(BATCH_SEND_URL)[0]["msgParam"])["photoURL"].endswith("media_id=@m2")

    asyncio.run(run())


def test_failed_image_falls_back_to_link(account, store, make_client, token_route, tmp_path) -> None:
    async def run() -> None:
        recorder = Recorder({**token_route, GROUP_SEND_URL: {"processQueryKey": "q4"}})
        channel = _channel(account, store, make_client(recorder), FakeConnection(), tmp_path)
        url = "https://img.example.com/missing.png"

        await channel.send(OutboundMessage(channel="dingtalk", chat_id="cid1", content="", media=[url]))
        result = await channel.send_media("cid1", url, text="Q3 chart")

        assert result.message_id == "q4"
        params = [json.loads(body["msgParam"])["content"] for body in recorder.bodies(GROUP_SEND_URL)]
        assert params == [f"📎 图片: {url}", f"Q3 chart\n\n📎 图片: {url}"]

    asyncio.run(run())
