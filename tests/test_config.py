from __future__ import annotations

from pathlib import Path

import pytest

from openstuder.core.config import GatewayConfig, default_config_path, load_config
from openstuder.core.errors import ConfigError


def _write_config(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_missing_default_file_yields_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("OPENSTUDER_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))

    assert default_config_path() == tmp_path / "cfg" / "openstuder" / "config.yaml"
    assert load_config() == GatewayConfig()


def test_xdg_config_is_loaded(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("OPENSTUDER_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    _write_config(
        tmp_path / "cfg" / "openstuder" / "config.yaml",
        """
gateway:
  host: ws://192.168.1.20
  user: installer
  password: secret
bluetooth:
  address: "AA:BB:CC:DD:EE:FF"
  scan_timeout_s: 4
""",
    )

    config = load_config()
    assert config.host == "ws://192.168.1.20"
    assert config.port == 1987
    assert config.user == "installer"
    assert config.bluetooth_address == "AA:BB:CC:DD:EE:FF"
    assert config.scan_timeout_s == 4.0
    assert config.max_fragment_size == 508


def test_env_override_path(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = _write_config(tmp_path / "custom.yaml", "gateway:\n  port: 8080\n")
    monkeypatch.setenv("OPENSTUDER_CONFIG", str(path))

    assert load_config().port == 8080


def test_empty_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(_write_config(tmp_path / "empty.yaml", "")) == GatewayConfig()


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")


def test_duplicate_keys_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "dup.yaml", "gateway:\n  port: 1\n  port: 2\n")
    with pytest.raises(ConfigError, match="Duplicate key 'port'"):
        load_config(path)


def test_schema_violation_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "bad.yaml", "gateway:\n  port: not-a-port\n")
    with pytest.raises(ConfigError, match=r"gateway\.port"):
        load_config(path)


def test_unknown_section_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "bad.yaml", "mqtt:\n  host: broker\n")
    with pytest.raises(ConfigError, match="Schema validation failed"):
        load_config(path)


def test_invalid_yaml_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "broken.yaml", "gateway: [unclosed\n")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path)
