"""Cardano networks and their command line selectors."""

from dataclasses import dataclass
from typing import List, Optional

from pycardano import Network as NetworkId

from .errors import UnsupportedNetworkError


@dataclass(frozen=True)
class Network:
    """
    A Cardano network.

    Mainnet has no testnet magic. Every other network is addressed by its
    magic number, either one of the well-known testnets or a custom value.
    """
    name: str
    testnet_magic: Optional[int] = None

    @classmethod
    def custom(cls, magic: int) -> "Network":
        return cls(name=f"custom({magic})", testnet_magic=int(magic))

    @classmethod
    def from_name(cls, name: str) -> "Network":
        """Look up a well-known network by name (case-insensitive)."""
        network = _KNOWN.get(name.strip().lower())
        if network is None:
            raise UnsupportedNetworkError(f"Unsupported network: {name}")
        return network

    @property
    def is_mainnet(self) -> bool:
        return self.testnet_magic is None

    @property
    def network_id(self) -> NetworkId:
        return NetworkId.MAINNET if self.is_mainnet else NetworkId.TESTNET

    @property
    def arguments(self) -> List[str]:
        """Network selector flags for cardano-cli."""
        if self.is_mainnet:
            return ["--mainnet"]
        return ["--testnet-magic", str(self.testnet_magic)]

    def __str__(self) -> str:
        return self.name


MAINNET = Network("mainnet")
PREPROD = Network("preprod", 1)
PREVIEW = Network("preview", 2)
GUILDNET = Network("guildnet", 141)
SANCHONET = Network("sanchonet", 4)

_KNOWN = {n.name: n for n in (MAINNET, PREPROD, PREVIEW, GUILDNET, SANCHONET)}
