from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
import yaml

from gatehouse.engine.config import GatehouseConfig
from gatehouse.engine.errors import ConfigError
from gatehouse.engine.yaml_config import load_yaml_config


def test_defaults() -> None:
    cfg = GatehouseConfig()
    assert cfg.agent_command == "claude"
    assert cfg.permission_timeout_seconds == 60.0
    assert cfg.heartbeat_interval_seconds == 30.0
    assert cfg.stop_grace_seconds == 5.0
    assert cfg.wait_for_init is True
    assert cfg.init_timeout_seconds == 15.0
    assert cfg.server_url == "http://127.0.0.1:3001"
    assert cfg.approval_tool_name == "mcp__gatehouse-permissions__approval_prompt"


def test_server_url_prefers_public_url_and_maps_wildcard_host() -> None:
    assert GatehouseConfig(host="0.0.0.0", port=9000).server_url == "http://127.0.0.1:9000"
    assert GatehouseConfig(public_url="http://gh.local:80/").server_url == "http://gh.local:80"


def test_from_env_overrides() -> None:
    keys = ["GATEHOUSE_PERMISSION_TIMEOUT", "GATEHOUSE_PORT", "GATEHOUSE_AGENT_COMMAND"]
    old = {k: os.environ.get(k) for k in keys}
    os.environ["GATEHOUSE_PERMISSION_TIMEOUT"] = "12.5"
    os.environ["GATEHOUSE_PORT"] = "4040"
    os.environ["GATEHOUSE_AGENT_COMMAND"] = "/opt/bin/claude"
    try:
        cfg = GatehouseConfig.from_env()
        assert cfg.permission_timeout_seconds == 12.5
        assert cfg.port == 4040
        assert cfg.agent_command == "/opt/bin/claude"
    finally:
        for key, value in old.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


def test_yaml_config_overrides_base() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "gatehouse.yaml"
        config_path.write_text(
            "server:\n"
            "  port: 5050\n"
            "agent:\n"
            "  command: my-agent\n"
            "  wait_for_init: false\n"
            "  init_timeout_seconds: 3\n"
            "  env:\n"
            "    DEBUG: 1\n"
            "permissions:\n"
            "  timeout_seconds: 15\n"
            "streams:\n"
            "  heartbeat_seconds: 10\n"
            "  unknown_key: ignored\n"
            "extras:\n"
            "  anything: true\n"
        )
        cfg = load_yaml_config(config_path, base=GatehouseConfig())
    assert cfg.port == 5050
    assert cfg.agent_command == "my-agent"
    assert cfg.wait_for_init is False
    assert cfg.init_timeout_seconds == 3.0
    assert cfg.agent_env == {"DEBUG": "1"}
    assert cfg.permission_timeout_seconds == 15.0
    assert cfg.heartbeat_interval_seconds == 10.0
    assert cfg.observer_queue_size == GatehouseConfig().observer_queue_size


def test_yaml_config_empty_file_keeps_base() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "gatehouse.yaml"
        config_path.write_text("")
        base = GatehouseConfig(port=1234)
        assert load_yaml_config(config_path, base=base) == base


@pytest.mark.parametrize("text", [
    "- just\n- a list\n",
    "server: 5\n",
    "server:\n  port: not-a-number\n",
    "agent:\n  env: [a, b]\n",
    "logging:\n  requests: maybe\n",
])
def test_yaml_config_shape_errors(text: str) -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "gatehouse.yaml"
        config_path.write_text(text)
        with pytest.raises(ConfigError):
            load_yaml_config(config_path, base=GatehouseConfig())


def test_yaml_config_missing_and_invalid_files() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(FileNotFoundError):
            load_yaml_config(Path(tmpdir) / "missing.yaml")
        broken = Path(tmpdir) / "broken.yaml"
        broken.write_text("server: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_yaml_config(broken, base=GatehouseConfig())
