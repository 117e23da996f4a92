"""
Reply delivery through a message's session webhook.
"""

from __future__ import annotations

from typing import Optional

from loguru import logger

from dingclaw.channels.dingtalk.client import DingTalkClient, build_reply_body
from dingclaw.channels.dingtalk.errors import ReplyRejected
from dingclaw.channels.dingtalk.models import ChatbotMessage
from dingclaw.channels.dingtalk.runtime import RuntimeStateStore


class ReplyDispatcher:
    """
    Sends replies for one inbound message.

    Group replies @-mention the sender. Without a reply address the reply is
    logged and dropped: there is no channel left to tell the user.
    """

    def __init__(
        self,
        message: ChatbotMessage,
        client: DingTalkClient,
        state: RuntimeStateStore,
        account_id: str,
        markdown: bool = False,
        channel: str = "dingtalk",
    ):
        self.message = message
        self.client = client
        self.state = state
        self.account_id = account_id
        self.markdown = markdown
        self.channel = channel

    @property
    def reply_address(self) -> Optional[str]:
        return self.message.session_webhook or None

    async def deliver(self, reply_text: str, markdown: Optional[bool] = None) -> bool:
        """
        Returns True when the platform accepted the reply.

        Raises:
            ReplyTransportError: the POST itself failed.
            ReplyRejected: the webhook answered with a non-zero errcode.
        """
        if not reply_text:
            return False

        webhook = self.reply_address
        if not webhook:
            logger.warning(
                "DingTalk reply dropped, no session webhook | msg_id={} chat={}",
                self.message.msg_id,
                self.message.chat_id,
            )
            return False

        at_user_ids = [self.message.sender] if self.message.is_group and self.message.sender else None
        body = build_reply_body(
            reply_text,
            markdown=self.markdown if markdown is None else markdown,
            at_user_ids=at_user_ids,
        )

        result = await self.client.reply_via_webhook(webhook, body)
        errcode = result.get("errcode", 0)
        if errcode != 0:
            raise ReplyRejected(errcode, result.get("errmsg"))

        self.state.record(self.channel, self.account_id, last_outbound_at=self.state.now())
        logger.debug("DingTalk reply delivered | msg_id={}", self.message.msg_id)
        return True
