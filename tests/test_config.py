from __future__ import annotations

import json

from dingclaw.channels.dingtalk.accounts import (
    list_account_ids,
    normalize_account_id,
    resolve_account,
    resolve_default_account_id,
)
from dingclaw.config.loader import load_config, save_config
from dingclaw.config.schema import Config, DingTalkAccountConfig, DingTalkConfig


def test_legacy_credentials_are_migrated(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "channels": {
                    "dingtalk": {
                        "enabled": True,
                        "appKey": "k1",
                        "appSecret": "s1",
                        "allowFrom": ["staff1"],
                        "markdownReplies": True,
                        "accounts": {"Sales": {"appKey": "k2", "appSecret": "s2"}},
                    }
                }
            }
        ),
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.dingtalk.client_id == "k1"
    assert config.dingtalk.client_secret == "s1"
    assert config.dingtalk.allow_from == ["staff1"]
    assert config.dingtalk.markdown_replies is True
    assert config.dingtalk.accounts["Sales"].client_id == "k2"


def test_save_writes_camel_case_and_keeps_account_ids(tmp_path) -> None:
    path = tmp_path / "config.json"
    config = Config()
    config.channels.dingtalk = DingTalkConfig(
        client_id="k1",
        client_secret="s1",
        accounts={"Sales_Team": DingTalkAccountConfig(client_id="k2", client_secret="s2")},
    )

    save_config(config, path)
    data = json.loads(path.read_text(encoding="utf-8"))["channels"]["dingtalk"]

    assert data["clientId"] == "k1"
    assert data["reconnectInterval"] == 10.0
    assert "Sales_Team" in data["accounts"]
    assert data["accounts"]["Sales_Team"]["clientSecret"] == "s2"

    assert load_config(path).dingtalk.accounts["Sales_Team"].client_id == "k2"


def test_invalid_json_falls_back_to_defaults(tmp_path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{broken", encoding="utf-8")

    config = load_config(path)

    assert config.dingtalk.client_id == ""
    assert config.dingtalk.enabled is False


def test_env_override(monkeypatch) -> None:
    monkeypatch.setenv("DINGCLAW_CHANNELS__DINGTALK__CLIENT_ID", "env-key")
    assert Config().dingtalk.client_id == "env-key"


def test_account_resolution() -> None:
    cfg = DingTalkConfig(
        enabled=True,
        client_id=" k1 ",
        client_secret="s1",
        allow_from=["a"],
        accounts={
            "Sales": DingTalkAccountConfig(client_id="k2", client_secret="s2"),
            "ops": DingTalkAccountConfig(enabled=False, client_id="k3", client_secret="s3", allow_from=["b"]),
        },
    )

    assert normalize_account_id(None) == "default"
    assert normalize_account_id(" DEFAULT ") == "default"
    assert list_account_ids(cfg) == ["default", "sales", "ops"]
    assert resolve_default_account_id(cfg) == "default"

    default = resolve_account(cfg)
    assert default.client_id == "k1"
    assert default.robot_code == "k1"
    assert default.is_configured is True

    sales = resolve_account(cfg, "SALES")
    assert sales.enabled is True
    assert sales.allow_from == ["a"]
    assert sales.token_source == "config"

    ops = resolve_account(cfg, "ops")
    assert ops.enabled is False
    assert ops.allow_from == ["b"]


def test_unknown_account_is_unconfigured() -> None:
    missing = resolve_account(DingTalkConfig(), "ghost")
    assert missing.enabled is False
    assert missing.is_configured is False
    assert missing.token_source == "none"
    assert resolve_default_account_id(DingTalkConfig()) == "default"
