"""Backend-agnostic chain context interface."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Union

from pycardano import ExecutionUnits, Network as NetworkId, Transaction, TransactionId, UTxO

from .errors import InvalidArgumentError
from .network import Network
from .types import ChainTip, Era, GenesisParameters, ProtocolParameters, StakeAddressInfo

logger = logging.getLogger(__name__)


class ChainContext(ABC):
    """
    Interface for querying and submitting to Cardano.

    Implementations own their transport and caches. Callers choose a backend
    at construction and use only these operations afterwards.
    """

    network: Network

    @property
    def network_id(self) -> NetworkId:
        return self.network.network_id

    @property
    def name(self) -> str:
        return type(self).__name__

    # ===================
    # Primitive operations
    # ===================

    @abstractmethod
    async def utxos(self, address: str) -> List[UTxO]:
        """Unspent outputs held by `address`."""

    @abstractmethod
    async def submit_tx_cbor(self, cbor: bytes) -> TransactionId:
        """Submit a serialised transaction; raises TransactionFailedError on rejection."""

    @abstractmethod
    async def evaluate_tx_cbor(self, cbor: bytes) -> Dict[str, ExecutionUnits]:
        """Execution units per redeemer key ("purpose:index")."""

    @abstractmethod
    async def stake_address_info(self, address: str) -> List[StakeAddressInfo]:
        ...

    @abstractmethod
    async def protocol_parameters(self) -> ProtocolParameters:
        ...

    @abstractmethod
    async def genesis_parameters(self) -> GenesisParameters:
        ...

    @abstractmethod
    async def epoch(self) -> int:
        ...

    @abstractmethod
    async def last_block_slot(self) -> int:
        ...

    @abstractmethod
    async def era(self) -> Era:
        ...

    @abstractmethod
    async def query_chain_tip(self) -> ChainTip:
        ...

    # ===================
    # Derived operations
    # ===================

    async def submit_tx(self, tx: Union[Transaction, bytes, str]) -> TransactionId:
        """Submit a transaction given as a Transaction, raw CBOR bytes or a hex string."""
        if isinstance(tx, Transaction):
            cbor = tx.to_cbor()
        elif isinstance(tx, (bytes, bytearray)):
            cbor = bytes(tx)
        elif isinstance(tx, str):
            try:
                cbor = bytes.fromhex(tx)
            except ValueError as e:
                raise InvalidArgumentError(f"Transaction is not valid hex: {e}") from e
        else:
            raise InvalidArgumentError(f"Unsupported transaction type: {type(tx).__name__}")
        return await self.submit_tx_cbor(cbor)

    async def evaluate_tx(self, tx: Transaction) -> Dict[str, ExecutionUnits]:
        return await self.evaluate_tx_cbor(tx.to_cbor())

    def __repr__(self) -> str:
        return f"{self.name}(network={self.network})"
