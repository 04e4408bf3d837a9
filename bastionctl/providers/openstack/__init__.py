from bastionctl.providers.openstack.client import OpenStackDirectory
from bastionctl.providers.openstack.clouds import CloudProfile, load_cloud

__all__ = ["CloudProfile", "OpenStackDirectory", "load_cloud"]
