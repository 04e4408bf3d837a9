from bastionctl.synth.dhcp import DhcpSettings, render_dhcpd_conf
from bastionctl.synth.haproxy import render_haproxy_cfg
from bastionctl.synth.push import ConfigPusher, DhcpTarget

__all__ = [
    "ConfigPusher",
    "DhcpSettings",
    "DhcpTarget",
    "render_dhcpd_conf",
    "render_haproxy_cfg",
]
