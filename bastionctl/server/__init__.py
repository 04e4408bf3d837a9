from bastionctl.server.client import CommandClient
from bastionctl.server.server import BastionSetup, CommandServer, MetadataStore

__all__ = ["BastionSetup", "CommandClient", "CommandServer", "MetadataStore"]
