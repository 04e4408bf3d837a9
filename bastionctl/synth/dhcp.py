"""ISC dhcpd configuration rendering."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from bastionctl.providers.types import Machine

LEASE_TIME = 2678400
HOST_LEASE_TIME = 84600

_HEADER = """\
#
# DHCP Server Configuration file.
#   see /usr/share/doc/dhcp-server/dhcpd.conf.example
#   see dhcpd.conf(5) man page
#

# Persist interface configuration when dhcpcd exits.
persistent;

default-lease-time {lease};
max-lease-time {lease};

subnet {subnet} netmask {netmask} {{
   interface {interface};
   option routers {router};
   option subnet-mask {subnet};
   option domain-name-servers {dns_servers};
   option domain-name "{domain}";
   option dhcp-server-identifier {server_id};
   ignore unknown-clients;
#  update-static-leases true;
}}

"""

_HOST = """\
host {name} {{
    hardware ethernet    {mac};
    fixed-address        {ip};
    max-lease-time       {lease};
    option host-name     "{name}";
    ddns-hostname        {name};
}}

"""


@dataclass(frozen=True, slots=True)
class DhcpSettings:
    interface: str
    subnet: str
    netmask: str
    router: str
    dns_servers: str
    server_id: str


def render_dhcpd_conf(
    machines: Iterable[Machine], settings: DhcpSettings, domain_name: str,
) -> str:
    """One fixed-address host block per machine that has both MAC and IP."""
    parts = [
        _HEADER.format(
            lease=LEASE_TIME,
            subnet=settings.subnet,
            netmask=settings.netmask,
            interface=settings.interface,
            router=settings.router,
            dns_servers=settings.dns_servers,
            domain=domain_name,
            server_id=settings.server_id,
        )
    ]
    parts.extend(
        _HOST.format(name=m.name, mac=m.mac_address, ip=m.ip_address, lease=HOST_LEASE_TIME)
        for m in machines
        if m.has_address
    )
    return "".join(parts)
