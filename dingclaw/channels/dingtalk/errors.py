"""
Exception hierarchy for the DingTalk channel.
"""

from __future__ import annotations


class DingTalkError(Exception):
    """Base class for every DingTalk channel error."""


class DecodeError(DingTalkError):
    """Inbound event body is not a decodable robot message."""


class ValidationError(DingTalkError):
    """Message is well-formed but cannot be processed (e.g. missing download code)."""


class CredentialError(DingTalkError):
    """Access token exchange did not yield a token."""


class DownloadLinkError(DingTalkError):
    """Download code could not be resolved to a download URL."""


class TransferError(DingTalkError):
    """Fetching media bytes from the download URL failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MediaUploadError(DingTalkError):
    """Legacy media upload returned a non-zero errcode or no media id."""


class ActiveSendError(DingTalkError):
    """Robot active-send API call failed."""


class ReplyTransportError(DingTalkError):
    """Reply POST to the session webhook failed at the HTTP level."""


class ReplyRejected(DingTalkError):
    """Session webhook answered with a non-zero errcode."""

    def __init__(self, errcode: int, errmsg: str | None = None):
        super().__init__(f"reply rejected: errcode={errcode} errmsg={errmsg or ''}")
        self.errcode = errcode
        self.errmsg = errmsg


class StreamConnectionError(DingTalkError):
    """Stream gateway could not be opened or the socket broke."""
