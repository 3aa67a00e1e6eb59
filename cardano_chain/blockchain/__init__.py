"""Transport clients for chain backends."""

from .koios_client import KoiosClient
from .ogmios_client import OgmiosClient

__all__ = ["KoiosClient", "OgmiosClient"]
