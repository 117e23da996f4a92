"""
Read and write ``config.json``.

The file is camelCase; models are snake_case. Keys under
``channels.dingtalk.accounts`` are account ids and are left as written.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError
from pydantic.alias_generators import to_camel, to_snake

from dingclaw.config.schema import Config
from dingclaw.utils.helpers import RUNTIME_PATHS

# Parents whose child keys are user data, not field names.
_VERBATIM_KEYS = frozenset({"accounts"})

# Pre-clientId configs used the app key / secret names.
_LEGACY_CREDENTIALS = {"appKey": "clientId", "appSecret": "clientSecret"}


def get_config_path() -> Path:
    return RUNTIME_PATHS.config_file


def load_config(config_path: Path | None = None) -> Config:
    """
    Load the config file, or defaults when it is missing or unusable.

    Environment variables still apply on top of whatever is loaded.
    """
    path = config_path or get_config_path()

    if not path.exists():
        logger.warning("Config file not found, using defaults | path={}", path)
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"top level must be an object, got {type(raw).__name__}")

        config = Config(**rename_keys(migrate_legacy(raw), to_snake))
    except ValidationError as e:
        logger.error("Config failed validation, using defaults | path={} errors={}", path, e.error_count())
        return Config()
    except (ValueError, OSError) as e:
        # JSONDecodeError is a ValueError
        logger.error("Config unreadable, using defaults | path={} err={}", path, e)
        return Config()

    logger.success("Config loaded | path={}", path)
    return config


def save_config(config: Config, config_path: Path | None = None) -> None:
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = rename_keys(config.model_dump(), to_camel)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")

    logger.success("Config saved | path={}", path)


def migrate_legacy(data: dict[str, Any]) -> dict[str, Any]:
    """Rename ``appKey``/``appSecret`` at the top of dingtalk and in every account."""
    dingtalk = (data.get("channels") or {}).get("dingtalk")
    if not isinstance(dingtalk, dict):
        return data

    sections = [dingtalk, *(dingtalk.get("accounts") or {}).values()]
    for section in sections:
        if not isinstance(section, dict):
            continue
        for old, new in _LEGACY_CREDENTIALS.items():
            if old in section and new not in section:
                section[new] = section.pop(old)
                logger.info("Migrated legacy config key dingtalk.{} -> {}", old, new)

    return data


def rename_keys(data: Any, rename: Callable[[str], str], verbatim: bool = False) -> Any:
    """Apply ``rename`` to every mapping key, except directly under ``accounts``."""
    if isinstance(data, dict):
        out = {}
        for key, value in data.items():
            new_key = key if verbatim else rename(key)
            out[new_key] = rename_keys(value, rename, verbatim=new_key in _VERBATIM_KEYS and not verbatim)
        return out
    if isinstance(data, list):
        return [rename_keys(item, rename) for item in data]
    return data
