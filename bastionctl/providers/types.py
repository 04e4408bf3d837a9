"""Typed views of provider resources.

The directory hands back raw JSON objects; everything the reconciliation
core touches goes through the decoders below first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

from bastionctl.exceptions import NotFoundError, TypeMismatchError

MAC_KEY = "OS-EXT-IPS-MAC:mac_addr"
ADDR_KEY = "addr"
POWER_STATE_KEY = "OS-EXT-STS:power_state"

POWER_RUNNING = 1
STATUS_ACTIVE = "ACTIVE"

log = logger.bind(component="provider")


@dataclass(frozen=True, slots=True)
class Machine:
    id: str
    name: str
    mac_address: str = ""
    ip_address: str = ""
    status: str = ""
    power_state: int = 0

    @property
    def has_address(self) -> bool:
        return bool(self.mac_address and self.ip_address)

    @property
    def is_running(self) -> bool:
        return self.status == STATUS_ACTIVE and self.power_state == POWER_RUNNING


@dataclass(frozen=True, slots=True)
class Flavor:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class Image:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class Network:
    id: str
    name: str


@dataclass(frozen=True, slots=True)
class Keypair:
    name: str
    fingerprint: str = ""


type Resource = Machine | Flavor | Image | Network | Keypair


def extract_addresses(addresses: Any) -> tuple[str, str]:
    """Return the first ``(mac, ip)`` pair of a server's address map.

    The map is shaped ``{network: [{mac_key: .., "addr": ..}, ...]}``.
    A missing or empty map yields ``("", "")``.

    Raises:
        TypeMismatchError: The map, a network entry list or an entry has the wrong type.
        NotFoundError: An entry lacks the MAC or address key.
    """
    if not addresses:
        return "", ""
    if not isinstance(addresses, dict):
        raise TypeMismatchError("addresses", "object", addresses)

    for network, entries in addresses.items():
        if not isinstance(entries, list):
            raise TypeMismatchError(f"addresses.{network}", "array", entries)
        for i, entry in enumerate(entries):
            path = f"addresses.{network}[{i}]"
            if not isinstance(entry, dict):
                raise TypeMismatchError(path, "object", entry)
            if MAC_KEY not in entry:
                raise NotFoundError("address field", f"{path}.{MAC_KEY}")
            if ADDR_KEY not in entry:
                raise NotFoundError("address field", f"{path}.{ADDR_KEY}")
            mac, ip = entry[MAC_KEY], entry[ADDR_KEY]
            if not isinstance(mac, str):
                raise TypeMismatchError(f"{path}.{MAC_KEY}", "string", mac)
            if not isinstance(ip, str):
                raise TypeMismatchError(f"{path}.{ADDR_KEY}", "string", ip)
            return mac, ip

    return "", ""


def _require_str(raw: dict[str, Any], key: str, kind: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        raise TypeMismatchError(f"{kind}.{key}", "string", value)
    return value


def decode_machine(raw: dict[str, Any]) -> Machine:
    name = _require_str(raw, "name", "server")
    try:
        mac, ip = extract_addresses(raw.get("addresses"))
    except (TypeMismatchError, NotFoundError) as e:
        log.warning("Ignoring addresses of {name}: {error}", name=name, error=e)
        mac, ip = "", ""

    power_state = raw.get(POWER_STATE_KEY) or 0
    return Machine(
        id=_require_str(raw, "id", "server"),
        name=name,
        mac_address=mac,
        ip_address=ip,
        status=str(raw.get("status", "")),
        power_state=power_state if isinstance(power_state, int) else 0,
    )


def decode_flavor(raw: dict[str, Any]) -> Flavor:
    return Flavor(id=_require_str(raw, "id", "flavor"), name=_require_str(raw, "name", "flavor"))


def decode_image(raw: dict[str, Any]) -> Image:
    return Image(id=_require_str(raw, "id", "image"), name=str(raw.get("name") or ""))


def decode_network(raw: dict[str, Any]) -> Network:
    return Network(id=_require_str(raw, "id", "network"), name=str(raw.get("name") or ""))


def decode_keypair(raw: dict[str, Any]) -> Keypair:
    inner = raw.get("keypair", raw)
    if not isinstance(inner, dict):
        raise TypeMismatchError("keypair", "object", inner)
    return Keypair(
        name=_require_str(inner, "name", "keypair"),
        fingerprint=str(inner.get("fingerprint") or ""),
    )
