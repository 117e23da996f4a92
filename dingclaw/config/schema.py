"""
Configuration schema.

On disk (``~/.dingclaw/config.json``, camelCase):

    {
      "channels": {
        "dingtalk": {
          "enabled": true,
          "clientId": "...", "clientSecret": "...",
          "accounts": {"sales": {"clientId": "...", "clientSecret": "..."}}
        }
      }
    }

Environment variables override the file, e.g.
``DINGCLAW_CHANNELS__DINGTALK__CLIENT_SECRET``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class ChannelBaseConfig(BaseModel):
    enabled: bool = False
    allow_from: list[str] = Field(default_factory=list)


class DingTalkAccountConfig(BaseModel):
    """A named robot under ``accounts``; unset fields inherit from the top level."""
    enabled: Optional[bool] = None
    name: Optional[str] = None
    client_id: str = ""
    client_secret: str = ""
    allow_from: list[str] = Field(default_factory=list)


class DingTalkConfig(ChannelBaseConfig):
    """
    DingTalk Stream-mode robots.

    Top-level credentials form the ``default`` account.
    """
    name: Optional[str] = None
    client_id: str = ""
    client_secret: str = ""
    markdown_replies: bool = False
    reconnect_interval: float = Field(default=10.0, gt=0)
    media_dir: str = "~/.dingclaw/media"
    accounts: Dict[str, DingTalkAccountConfig] = Field(default_factory=dict)

    @property
    def media_path(self) -> Path:
        return Path(self.media_dir).expanduser()


class ChannelsConfig(BaseModel):
    dingtalk: DingTalkConfig = Field(default_factory=DingTalkConfig)


class Config(BaseSettings):
    """Root settings: env > config file > defaults."""

    model_config = SettingsConfigDict(
        env_prefix="DINGCLAW_",
        env_nested_delimiter="__",
    )

    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # File values arrive as init kwargs; env must win over them.
        return env_settings, init_settings, file_secret_settings

    @property
    def dingtalk(self) -> DingTalkConfig:
        return self.channels.dingtalk
