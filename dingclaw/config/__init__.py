"""Configuration module for dingclaw."""

from dingclaw.config.loader import get_config_path, load_config, save_config
from dingclaw.config.schema import Config, DingTalkConfig

__all__ = ["Config", "DingTalkConfig", "load_config", "save_config", "get_config_path"]
