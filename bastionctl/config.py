"""TOML-based watcher configuration.

Loads ~/.bastionctl/defaults.toml (global) and bastionctl.toml (project),
merges them, applies command-line overrides and validates the result into
a WatchConfig.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from bastionctl.exceptions import ConfigurationError
from bastionctl.observability.logging import LogConfig
from bastionctl.server.protocol import DEFAULT_PORT
from bastionctl.synth.dhcp import DhcpSettings

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".bastionctl" / "defaults.toml"
PROJECT_CONFIG_NAME = "bastionctl.toml"
API_KEY_ENV = "IBMCLOUD_API_KEY"

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_CYCLE_TIMEOUT = 24 * 60 * 60.0

_REQUIRED_WATCH = ("cloud", "domain_name", "metadata_root", "bastion_username", "installer_key")
_REQUIRED_DHCP = ("interface", "subnet", "netmask", "router", "dns_servers", "server_id")


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    config_file: Path | None = None,
) -> RawConfig:
    """Merged raw configuration; an explicit ``config_file`` replaces the project file."""
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    if config_file is not None:
        if not config_file.is_file():
            raise ConfigurationError(f"Config file {config_file} does not exist")
        project_cfg = _read_toml(config_file)
    else:
        project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)

    merged = _deep_merge(global_cfg, project_cfg)
    for section in ("watch", "dhcp", "server", "logging"):
        merged.setdefault(section, {})
    return merged


@dataclass(frozen=True, slots=True)
class DhcpConfig:
    settings: DhcpSettings
    host: str = ""


@dataclass(frozen=True, slots=True)
class WatchConfig:
    cloud: str
    domain_name: str
    metadata_root: Path
    bastion_username: str
    installer_key: str
    api_key: str = field(default="", repr=False)
    dhcp: DhcpConfig | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    cycle_timeout: float = DEFAULT_CYCLE_TIMEOUT
    scratch_dir: Path = Path("/tmp")
    server_host: str = "0.0.0.0"
    server_port: int = DEFAULT_PORT
    logging: LogConfig = LogConfig()


def _require(section: RawConfig, keys: tuple[str, ...], name: str) -> None:
    missing = [k for k in keys if section.get(k) in (None, "")]
    if missing:
        raise ConfigurationError(f"[{name}] is missing required keys: {', '.join(missing)}")


def _positive(section: RawConfig, key: str, default: float) -> float:
    value = section.get(key, default)
    if not isinstance(value, int | float) or isinstance(value, bool) or value <= 0:
        raise ConfigurationError(f"{key} must be a positive number, got {value!r}")
    return float(value)


def _dhcp(raw: RawConfig) -> DhcpConfig | None:
    if not raw.get("enabled", False):
        return None
    _require(raw, _REQUIRED_DHCP, "dhcp")
    return DhcpConfig(
        settings=DhcpSettings(**{k: str(raw[k]) for k in _REQUIRED_DHCP}),
        host=str(raw.get("host", "")),
    )


def resolve_log_config(raw: RawConfig, debug: bool = False) -> LogConfig:
    level = "DEBUG" if debug else str(raw.get("level", "INFO")).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "TRACE"):
        raise ConfigurationError(f"Unknown log level {level!r}")
    return LogConfig(
        level=level,  # type: ignore[arg-type]
        file=str(raw.get("file", "")),
        console=bool(raw.get("console", True)),
    )


def resolve_watch_config(
    raw: RawConfig,
    *,
    overrides: RawConfig | None = None,
    env: dict[str, str] | None = None,
    debug: bool = False,
) -> WatchConfig:
    """Validate merged configuration into a WatchConfig.

    ``overrides`` is a partial config of the same shape (typically from CLI
    flags) whose non-None values win.

    Raises:
        ConfigurationError: A required value is missing or malformed.
    """
    cleaned = {
        section: {k: v for k, v in values.items() if v is not None}
        for section, values in (overrides or {}).items()
    }
    cfg = _deep_merge(raw, cleaned)
    watch: RawConfig = cfg.get("watch", {})
    server: RawConfig = cfg.get("server", {})
    _require(watch, _REQUIRED_WATCH, "watch")

    environ = os.environ if env is None else env
    port = server.get("port", DEFAULT_PORT)
    if not isinstance(port, int) or not 0 <= port <= 65535:
        raise ConfigurationError(f"server.port must be a TCP port, got {port!r}")

    return WatchConfig(
        cloud=str(watch["cloud"]),
        domain_name=str(watch["domain_name"]),
        metadata_root=Path(str(watch["metadata_root"])).expanduser(),
        bastion_username=str(watch["bastion_username"]),
        installer_key=str(Path(str(watch["installer_key"])).expanduser()),
        api_key=environ.get(API_KEY_ENV, ""),
        dhcp=_dhcp(cfg.get("dhcp", {})),
        poll_interval=_positive(watch, "poll_interval", DEFAULT_POLL_INTERVAL),
        cycle_timeout=_positive(watch, "cycle_timeout", DEFAULT_CYCLE_TIMEOUT),
        scratch_dir=Path(str(watch.get("scratch_dir", "/tmp"))).expanduser(),
        server_host=str(server.get("host", "0.0.0.0")),
        server_port=port,
        logging=resolve_log_config(cfg.get("logging", {}), debug),
    )
