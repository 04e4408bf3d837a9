"""HAProxy configuration rendering for one bastion."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from bastionctl.bastion import BastionRecord
from bastionctl.providers.types import Machine

_PREAMBLE = """\
#
global
daemon

defaults
log global
timeout connect 5s
timeout client 50s
timeout server 50s

listen stats # Define a listen section called "stats"
  bind :9000 # Listen on localhost:9000
  mode http
  stats enable  # Enable stats page
  stats hide-version  # Hide HAProxy version
  stats realm Haproxy\\ Statistics  # Title text for popup window
  stats uri /haproxy_stats  # Stats URI
  stats auth Username:Password  # Authentication credentials

"""


@dataclass(frozen=True, slots=True)
class ListenBlock:
    name: str
    port: int
    selects: Callable[[str, str], bool]


def _is_worker(name: str, infra_id: str) -> bool:
    return name.startswith(f"{infra_id}-worker-")


def _is_control_plane(name: str, infra_id: str) -> bool:
    return name.startswith(infra_id) and ("bootstrap" in name or "master" in name)


LISTEN_BLOCKS = (
    ListenBlock("ingress-http", 80, _is_worker),
    ListenBlock("ingress-https", 443, _is_worker),
    ListenBlock("api", 6443, _is_control_plane),
    ListenBlock("machine-config-server", 22623, _is_control_plane),
)


def _render_block(block: ListenBlock, machines: list[Machine], infra_id: str) -> str:
    lines = [f"listen {block.name}", f"bind *:{block.port}", "mode tcp"]
    lines.extend(
        f"server {m.name} {m.ip_address}:{block.port} check"
        for m in machines
        if m.has_address and block.selects(m.name.lower(), infra_id)
    )
    return "\n".join(lines) + "\n\n"


def render_haproxy_cfg(machines: Iterable[Machine], record: BastionRecord) -> str:
    """Backends keep provider listing order, so equal input renders equal text."""
    listed = list(machines)
    infra_id = record.infra_id.lower()
    return _PREAMBLE + "".join(_render_block(b, listed, infra_id) for b in LISTEN_BLOCKS)
