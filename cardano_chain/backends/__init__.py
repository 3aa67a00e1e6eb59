"""Chain context implementations, one per data provider."""

from .blockfrost import BlockFrostChainContext
from .cardano_cli import CardanoCliChainContext
from .koios import KoiosChainContext
from .ogmios import OgmiosChainContext

__all__ = [
    "BlockFrostChainContext",
    "CardanoCliChainContext",
    "KoiosChainContext",
    "OgmiosChainContext",
]
