from bastionctl.providers.adapter import ProviderQueryAdapter
from bastionctl.providers.types import Machine, extract_addresses

__all__ = ["Machine", "ProviderQueryAdapter", "extract_addresses"]
