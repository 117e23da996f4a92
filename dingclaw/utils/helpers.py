"""
Small shared helpers: runtime paths, clock, log-safe strings.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Final


# ===========================
# Paths
# ===========================

@dataclass(frozen=True, slots=True)
class RuntimePaths:
    """
    On-disk layout:

        ~/.dingclaw/config.json
        ~/.dingclaw/media/<account>/
    """

    root: Path

    @classmethod
    def default(cls) -> "RuntimePaths":
        return cls(root=Path.home() / ".dingclaw")

    @property
    def config_file(self) -> Path:
        return self.root / "config.json"

    @property
    def media(self) -> Path:
        return self.root / "media"

    def ensure(self) -> "RuntimePaths":
        ensure_dir(self.media)
        return self


RUNTIME_PATHS: Final[RuntimePaths] = RuntimePaths.default()


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


# ===========================
# Clock
# ===========================

def now_ms() -> int:
    """Unix time in milliseconds, the unit DingTalk uses everywhere."""
    return int(time.time() * 1000)


# ===========================
# Strings
# ===========================

_WHITESPACE = re.compile(r"\s+")
_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_MAX_FILENAME = 120


def truncate(s: str, max_len: int = 120, suffix: str = "...") -> str:
    """Single-line preview: whitespace runs collapse to one space, then cut."""
    s = _WHITESPACE.sub(" ", s or "").strip()
    if len(s) <= max_len:
        return s
    return s[: max_len - len(suffix)] + suffix


def safe_filename(name: str) -> str:
    """
    Make a user-supplied file name safe to join under a media directory.

    Path separators and control characters become ``_``; leading dots are
    dropped so the result is never hidden or relative.
    """
    cleaned = _UNSAFE_FILENAME.sub("_", name).strip().lstrip(".")
    if len(cleaned) > _MAX_FILENAME:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and len(ext) <= 10:
            cleaned = stem[: _MAX_FILENAME - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:_MAX_FILENAME]
    return cleaned or "file"


def mask_secret(secret: str, keep: int = 4) -> str:
    """Keep a short prefix of a credential for logs."""
    if not secret:
        return ""
    return secret[:keep] + "****"
