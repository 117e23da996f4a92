"""
Inbound media download and local storage.

Two-step protocol per attachment:
    1. download code + access token -> time-boxed URL
    2. GET URL -> bytes
Bytes are written under the media directory and described by a MediaItem.
"""

from __future__ import annotations

import mimetypes
import time
import uuid
from pathlib import Path
from typing import Final, Optional

from loguru import logger

from dingclaw.channels.dingtalk.accounts import ResolvedDingTalkAccount
from dingclaw.channels.dingtalk.client import DingTalkClient
from dingclaw.channels.dingtalk.models import MediaItem
from dingclaw.utils.helpers import ensure_dir, safe_filename

# Defaults when the platform omits an extension.
DEFAULT_EXTENSIONS: Final[dict[str, str]] = {
    "picture": "png",
    "audio": "amr",
    "video": "mp4",
    "file": "bin",
}

_EXTRA_TYPES: Final[dict[str, str]] = {
    ".amr": "audio/amr",
}


def guess_content_type(file_name: str, kind: str) -> str:
    suffix = Path(file_name).suffix.lower()
    if suffix in _EXTRA_TYPES:
        return _EXTRA_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(file_name)
    if guessed:
        return guessed
    return "image/png" if kind == "picture" else "application/octet-stream"


class MediaStore:
    """Writes downloaded bytes to disk under unique names."""

    def __init__(self, root: Path):
        self.root = root

    def save(
        self,
        data: bytes,
        kind: str,
        extension: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> MediaItem:
        ensure_dir(self.root)

        stamp = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        if file_name:
            stored = f"{stamp}_{safe_filename(file_name)}"
        else:
            ext = (extension or DEFAULT_EXTENSIONS.get(kind, "bin")).lstrip(".")
            stored = f"{kind}_{stamp}.{ext}"

        path = self.root / stored
        path.write_bytes(data)

        return MediaItem(
            kind=kind,
            path=str(path),
            content_type=guess_content_type(stored, kind),
            file_name=file_name,
            file_size=len(data),
        )


class MediaDownloader:
    """
    Resolve download codes and fetch attachment bytes.

    No caching: download codes are single-use and time-boxed.
    """

    def __init__(self, client: DingTalkClient, store: MediaStore):
        self.client = client
        self.store = store

    async def fetch_media(self, download_code: str, account: ResolvedDingTalkAccount) -> bytes:
        """
        Raises:
            CredentialError: token refresh failed.
            DownloadLinkError: no URL for the download code.
            TransferError: the URL answered with a non-success status.
        """
        url = await self.client.get_file_download_url(download_code, account)
        logger.debug("DingTalk download link resolved | account={}", account.account_id)

        data = await self.client.download_from_url(url)
        logger.debug("DingTalk media fetched | size={:.2f}KB", len(data) / 1024)
        return data

    async def download(
        self,
        download_code: str,
        account: ResolvedDingTalkAccount,
        kind: str,
        extension: Optional[str] = None,
        file_name: Optional[str] = None,
        duration: Optional[int] = None,
    ) -> MediaItem:
        """Fetch and store one attachment."""
        data = await self.fetch_media(download_code, account)
        item = self.store.save(data, kind, extension=extension, file_name=file_name)
        item.duration = duration

        logger.info("DingTalk media saved | kind={} path={} size={}", kind, item.path, item.file_size)
        return item
