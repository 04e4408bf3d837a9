"""bastionctl - bastion and load-balancer reconciliation for OpenShift on PowerVC.

Example:

    bastionctl watch --cloud powervc --domain-name example.com \
        --metadata-root /srv/metadata --bastion-username cloud-user \
        --installer-key ~/.ssh/id_installer_rsa

    bastionctl send-metadata --create metadata.json --server-ip 10.0.0.2
"""

from loguru import logger

logger.disable("bastionctl")

__version__ = "0.1.0"

__all__ = ["__version__"]
