"""clouds.yaml profile lookup."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from bastionctl.exceptions import ConfigurationError

CLOUDS_FILE_ENV = "OS_CLIENT_CONFIG_FILE"
SEARCH_PATHS = (
    Path("clouds.yaml"),
    Path("~/.config/openstack/clouds.yaml").expanduser(),
    Path("/etc/openstack/clouds.yaml"),
)


@dataclass(frozen=True, slots=True)
class CloudProfile:
    name: str
    auth_url: str
    username: str
    password: str
    project_name: str = ""
    project_id: str = ""
    user_domain_name: str = "Default"
    project_domain_name: str = "Default"
    region_name: str = ""
    interface: str = "public"
    verify: bool = True
    cacert: str = ""


def _candidates() -> list[Path]:
    override = os.environ.get(CLOUDS_FILE_ENV)
    return [Path(override), *SEARCH_PATHS] if override else list(SEARCH_PATHS)


def _parse(name: str, raw: dict[str, Any]) -> CloudProfile:
    auth = raw.get("auth") or {}
    missing = [k for k in ("auth_url", "username", "password") if not auth.get(k)]
    if missing:
        raise ConfigurationError(f"Cloud {name!r} is missing auth keys: {', '.join(missing)}")
    if not auth.get("project_name") and not auth.get("project_id"):
        raise ConfigurationError(f"Cloud {name!r} needs auth.project_name or auth.project_id")

    return CloudProfile(
        name=name,
        auth_url=str(auth["auth_url"]),
        username=str(auth["username"]),
        password=str(auth["password"]),
        project_name=str(auth.get("project_name", "")),
        project_id=str(auth.get("project_id", "")),
        user_domain_name=str(auth.get("user_domain_name", "Default")),
        project_domain_name=str(auth.get("project_domain_name", "Default")),
        region_name=str(raw.get("region_name", "")),
        interface=str(raw.get("interface", "public")),
        verify=bool(raw.get("verify", True)),
        cacert=str(raw.get("cacert", "")),
    )


def load_cloud(name: str, paths: list[Path] | None = None) -> CloudProfile:
    """Return the named profile from the first clouds.yaml that defines it."""
    for path in paths if paths is not None else _candidates():
        if not path.is_file():
            continue
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        clouds = data.get("clouds") or {}
        if name in clouds:
            return _parse(name, clouds[name])
    raise ConfigurationError(f"Cloud {name!r} not found in any clouds.yaml")
