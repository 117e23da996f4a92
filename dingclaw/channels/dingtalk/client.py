"""
HTTP client for the DingTalk open APIs used by the robot channel.

Endpoints:
    api.dingtalk.com   - OAuth token, robot file download, robot active send
    oapi.dingtalk.com  - legacy media upload
    sessionWebhook     - per-message reply address (no auth)
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Final, Optional

import httpx
from loguru import logger

from dingclaw.channels.dingtalk.accounts import ResolvedDingTalkAccount
from dingclaw.channels.dingtalk.errors import (
    ActiveSendError,
    CredentialError,
    DownloadLinkError,
    MediaUploadError,
    ReplyTransportError,
    TransferError,
)
from dingclaw.channels.dingtalk.token import TokenCache
from dingclaw.utils.helpers import mask_secret

API_BASE: Final[str] = "https://api.dingtalk.com"
OAPI_BASE: Final[str] = "https://oapi.dingtalk.com"

TOKEN_HEADER: Final[str] = "x-acs-dingtalk-access-token"

MSG_KEY_TEXT: Final[str] = "sampleText"
MSG_KEY_MARKDOWN: Final[str] = "sampleMarkdown"
MSG_KEY_IMAGE: Final[str] = "sampleImageMsg"

DEFAULT_TIMEOUT: Final[float] = 30.0


@dataclass(slots=True)
class SendResult:
    message_id: str
    chat_id: str


@dataclass(slots=True)
class UploadMediaResult:
    media_id: str
    url: str


@dataclass(slots=True)
class ProbeResult:
    ok: bool
    bot: Optional[dict[str, Any]] = None
    error: Optional[str] = None


def build_reply_body(
    content: str,
    *,
    markdown: bool = False,
    title: Optional[str] = None,
    at_user_ids: Optional[list[str]] = None,
    is_at_all: bool = False,
) -> dict[str, Any]:
    """Webhook reply payload; ``at`` is only attached when someone is mentioned."""
    if markdown:
        body: dict[str, Any] = {
            "msgtype": "markdown",
            "markdown": {"title": title or content[:20], "text": content},
        }
    else:
        body = {"msgtype": "text", "text": {"content": content}}

    if at_user_ids or is_at_all:
        body["at"] = {"atUserIds": list(at_user_ids or []), "isAtAll": is_at_all}
    return body


class DingTalkClient:
    """
    Async DingTalk API client.

    A fresh ``httpx.AsyncClient`` is opened per call; ``transport`` lets
    tests plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        token_cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._transport = transport
        self._timeout = timeout
        self.tokens = token_cache or TokenCache(self.exchange_token)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    # ---------------------------------------------------------------------
    # OAuth
    # ---------------------------------------------------------------------

    async def exchange_token(self, app_key: str, app_secret: str) -> tuple[str, int]:
        """
        Exchange app credentials for an access token.

        Raises:
            CredentialError: transport failure or no ``accessToken`` in the response.
        """
        logger.debug(
            "Requesting DingTalk access token | appKey={} appSecret={}",
            app_key,
            mask_secret(app_secret),
        )
        try:
            async with self._http() as client:
                resp = await client.post(
                    f"{API_BASE}/v1.0/oauth2/accessToken",
                    json={"appKey": app_key, "appSecret": app_secret},
                )
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise CredentialError(f"access token request failed: {e}") from e

        token = payload.get("accessToken") if isinstance(payload, dict) else None
        if not token:
            raise CredentialError(f"access token response has no accessToken: {payload}")

        return token, int(payload.get("expireIn") or 7200)

    async def get_access_token(self, account: ResolvedDingTalkAccount) -> str:
        return await self.tokens.get_token(account)

    # ---------------------------------------------------------------------
    # Robot API plumbing
    # ---------------------------------------------------------------------

    async def _robot_post(
        self,
        path: str,
        body: dict[str, Any],
        account: ResolvedDingTalkAccount,
    ) -> httpx.Response:
        token = await self.get_access_token(account)
        async with self._http() as client:
            return await client.post(
                f"{API_BASE}{path}",
                json=body,
                headers={TOKEN_HEADER: token},
            )

    # ---------------------------------------------------------------------
    # Inbound media
    # ---------------------------------------------------------------------

    async def get_file_download_url(
        self,
        download_code: str,
        account: ResolvedDingTalkAccount,
    ) -> str:
        """
        Resolve a message download code to a time-boxed URL.

        Raises:
            CredentialError: no token could be obtained.
            DownloadLinkError: the API answered without ``downloadUrl``.
        """
        try:
            resp = await self._robot_post(
                "/v1.0/robot/messageFiles/download",
                {"downloadCode": download_code, "robotCode": account.robot_code},
                account,
            )
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DownloadLinkError(f"download link request failed: {e}") from e

        url = payload.get("downloadUrl") if isinstance(payload, dict) else None
        if not url:
            raise DownloadLinkError(f"download link response has no downloadUrl: {payload}")
        return url

    async def download_from_url(self, url: str) -> bytes:
        """
        Fetch raw bytes from a download URL.

        Raises:
            TransferError: transport failure or non-2xx status.
        """
        try:
            async with self._http() as client:
                resp = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise TransferError(f"download failed: {e}") from e

        if not resp.is_success:
            raise TransferError(
                f"download failed: {resp.status_code} {resp.reason_phrase}",
                status_code=resp.status_code,
            )
        return resp.content

    # ---------------------------------------------------------------------
    # Outbound media
    # ---------------------------------------------------------------------

    async def upload_media(
        self,
        data: bytes,
        file_name: str,
        account: ResolvedDingTalkAccount,
        media_type: str = "image",
        content_type: str = "image/png",
    ) -> UploadMediaResult:
        """
        Upload bytes through the legacy media endpoint.

        Returns the media id plus a URL usable as ``photoURL``.

        Raises:
            MediaUploadError: transport failure, non-zero errcode or no media id.
        """
        token = await self.get_access_token(account)
        try:
            async with self._http() as client:
                resp = await client.post(
                    f"{OAPI_BASE}/media/upload",
                    params={"access_token": token, "type": media_type},
                    files={"media": (file_name, data, content_type)},
                    data={"type": media_type},
                )
            result = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise MediaUploadError(f"media upload failed: {e}") from e

        if not isinstance(result, dict):
            raise MediaUploadError(f"media upload returned unexpected body: {result!r}")

        media_id = result.get("media_id")
        if result.get("errcode") != 0 or not media_id:
            raise MediaUploadError(f"media upload failed: {result.get('errmsg') or json.dumps(result)}")

        url = f"{OAPI_BASE}/media/downloadFile?access_token={token}&media_id={media_id}"
        return UploadMediaResult(media_id=media_id, url=url)

    # ---------------------------------------------------------------------
    # Active send
    # ---------------------------------------------------------------------

    async def _active_send(
        self,
        path: str,
        target: dict[str, Any],
        chat_id: str,
        msg_key: str,
        msg_param: dict[str, Any],
        account: ResolvedDingTalkAccount,
    ) -> SendResult:
        body = {
            "robotCode": account.robot_code,
            **target,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        }
        try:
            resp = await self._robot_post(path, body, account)
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ActiveSendError(f"active send failed: {e}") from e

        if not resp.is_success:
            raise ActiveSendError(f"active send failed: {resp.status_code} {payload}")

        query_key = payload.get("processQueryKey") if isinstance(payload, dict) else None
        return SendResult(
            message_id=query_key or f"dingtalk-{int(time.time() * 1000)}",
            chat_id=chat_id,
        )

    @staticmethod
    def _text_param(content: str, markdown: bool, title: Optional[str]) -> tuple[str, dict[str, Any]]:
        if markdown:
            return MSG_KEY_MARKDOWN, {"title": title or content[:20], "text": content}
        return MSG_KEY_TEXT, {"content": content}

    async def send_text_message(
        self,
        user_id: str,
        content: str,
        account: ResolvedDingTalkAccount,
        markdown: bool = False,
        title: Optional[str] = None,
    ) -> SendResult:
        """Send a direct message to one user outside the reply window."""
        msg_key, param = self._text_param(content, markdown, title)
        return await self._active_send(
            "/v1.0/robot/oToMessages/batchSend",
            {"userIds": [user_id]},
            user_id,
            msg_key,
            param,
            account,
        )

    async def send_group_message(
        self,
        conversation_id: str,
        content: str,
        account: ResolvedDingTalkAccount,
        markdown: bool = False,
        title: Optional[str] = None,
    ) -> SendResult:
        """Send a message into a group conversation."""
        msg_key, param = self._text_param(content, markdown, title)
        return await self._active_send(
            "/v1.0/robot/groupMessages/send",
            {"openConversationId": conversation_id},
            conversation_id,
            msg_key,
            param,
            account,
        )

    async def send_image_message(
        self,
        target: str,
        photo_url: str,
        account: ResolvedDingTalkAccount,
        group: bool = False,
    ) -> SendResult:
        if group:
            path, target_body = "/v1.0/robot/groupMessages/send", {"openConversationId": target}
        else:
            path, target_body = "/v1.0/robot/oToMessages/batchSend", {"userIds": [target]}
        return await self._active_send(
            path,
            target_body,
            target,
            MSG_KEY_IMAGE,
            {"photoURL": photo_url},
            account,
        )

    # ---------------------------------------------------------------------
    # Session webhook
    # ---------------------------------------------------------------------

    async def reply_via_webhook(self, webhook: str, body: dict[str, Any]) -> dict[str, Any]:
        """
        POST a reply body to a session webhook and return its JSON answer.

        Raises:
            ReplyTransportError: transport failure, non-2xx status or non-JSON answer.
        """
        try:
            async with self._http() as client:
                resp = await client.post(webhook, json=body)
            resp.raise_for_status()
            result = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ReplyTransportError(f"webhook reply failed: {e}") from e

        if not isinstance(result, dict):
            raise ReplyTransportError(f"webhook reply returned unexpected body: {result!r}")
        return result

    # ---------------------------------------------------------------------
    # Probe
    # ---------------------------------------------------------------------

    async def probe(self, account: ResolvedDingTalkAccount) -> ProbeResult:
        """Check credentials by fetching a token."""
        try:
            await self.get_access_token(account)
        except CredentialError as e:
            return ProbeResult(ok=False, error=str(e))

        return ProbeResult(
            ok=True,
            bot={"robotCode": account.robot_code, "name": account.name},
        )
