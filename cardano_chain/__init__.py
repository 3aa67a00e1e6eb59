"""
Backend-agnostic Cardano chain context.

Structure:
    cardano_chain/
    ├── context.py        # ChainContext interface
    ├── types.py          # ChainTip, ProtocolParameters, GenesisParameters, ...
    ├── network.py        # Network (mainnet, preprod, preview, ...)
    ├── errors.py         # CardanoChainError hierarchy
    ├── utils.py          # Retry executor, asset units, ratios, scripts
    ├── blockchain/       # Ogmios and Koios transport clients
    └── backends/         # Blockfrost, Koios, Ogmios, cardano-cli contexts

Usage:
    from cardano_chain import ChainContext, PREPROD
    from cardano_chain.backends import OgmiosChainContext

    context = OgmiosChainContext("ws://localhost:1337", network=PREPROD)
    utxos = await context.utxos(address)
"""

from .context import ChainContext
from .errors import (
    BlockfrostError,
    CardanoChainError,
    CardanoCliError,
    ChainValueError,
    InvalidArgumentError,
    KoiosError,
    OgmiosError,
    OperationError,
    TransactionFailedError,
    UnsupportedNetworkError,
)
from .network import GUILDNET, MAINNET, PREPROD, PREVIEW, SANCHONET, Network
from .types import (
    ChainTip,
    Era,
    GenesisParameters,
    KESPeriodInfo,
    OperationalCertificate,
    PoolParams,
    ProtocolParameters,
    StakeAddressInfo,
)

__all__ = [
    # Interface
    "ChainContext",
    # Networks
    "Network",
    "MAINNET",
    "PREPROD",
    "PREVIEW",
    "GUILDNET",
    "SANCHONET",
    # Types
    "ChainTip",
    "Era",
    "GenesisParameters",
    "KESPeriodInfo",
    "OperationalCertificate",
    "PoolParams",
    "ProtocolParameters",
    "StakeAddressInfo",
    # Errors
    "CardanoChainError",
    "OperationError",
    "BlockfrostError",
    "KoiosError",
    "OgmiosError",
    "CardanoCliError",
    "InvalidArgumentError",
    "TransactionFailedError",
    "ChainValueError",
    "UnsupportedNetworkError",
]
