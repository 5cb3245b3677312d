"""Loading and validation of the YAML client configuration."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from openstuder.core.errors import ConfigError

LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class GatewayConfig:
    """Connection defaults; command line options override them."""

    host: str = "ws://localhost"
    port: int = 1987
    user: str | None = None
    password: str | None = None
    timeout_ms: int = 5000
    bluetooth_address: str | None = None
    max_fragment_size: int = 508
    scan_timeout_s: float = 10.0


def _load_schema_validator() -> Any:
    schema_text = resources.files("openstuder.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def default_config_path() -> Path:
    override = os.environ.get("OPENSTUDER_CONFIG")
    if override:
        return Path(override)
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "openstuder/config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at root")
    return loaded


def load_config(path: Path | None = None) -> GatewayConfig:
    """Load the configuration at ``path`` (or the default location).

    A missing file yields the defaults; an explicitly given path must exist.
    """
    explicit = path is not None
    config_path = path if path is not None else default_config_path()
    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file {config_path} does not exist")
        LOGGER.debug("No config file at %s, using defaults", config_path)
        return GatewayConfig()

    doc = _read_yaml(config_path)
    try:
        _load_schema_validator().validate(doc)
    except ValidationError as exc:
        where = ".".join(str(p) for p in exc.path)
        where = f" ({where})" if where else ""
        raise ConfigError(f"Schema validation failed for {config_path}{where}: {exc.message}") from exc

    gateway = doc.get("gateway", {})
    bluetooth = doc.get("bluetooth", {})
    defaults = GatewayConfig()
    LOGGER.debug("Loaded config from %s", config_path)
    return GatewayConfig(
        host=gateway.get("host", defaults.host),
        port=gateway.get("port", defaults.port),
        user=gateway.get("user", defaults.user),
        password=gateway.get("password", defaults.password),
        timeout_ms=gateway.get("timeout_ms", defaults.timeout_ms),
        bluetooth_address=bluetooth.get("address", defaults.bluetooth_address),
        max_fragment_size=bluetooth.get("max_fragment_size", defaults.max_fragment_size),
        scan_timeout_s=float(bluetooth.get("scan_timeout_s", defaults.scan_timeout_s)),
    )
