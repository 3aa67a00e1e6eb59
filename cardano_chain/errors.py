"""Exceptions raised by chain contexts and their transports."""

from typing import Optional


class CardanoChainError(Exception):
    """Base exception for chain context errors."""

    default_message = "Chain context error."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class OperationError(CardanoChainError):
    """An operation failed and no more specific cause is known."""

    default_message = "Operation failed."


class BlockfrostError(OperationError):
    default_message = "Failed to retrieve data from Blockfrost."


class KoiosError(OperationError):
    default_message = "Failed to retrieve data from Koios."


class OgmiosError(OperationError):
    """Base exception for Ogmios errors."""

    default_message = "Failed to retrieve data from Ogmios."


class OgmiosConnectionError(OgmiosError):
    """Connection-related errors."""


class OgmiosQueryError(OgmiosError):
    """Query-related errors."""


class CardanoCliError(OperationError):
    default_message = "Failed to execute Cardano CLI command."


class InvalidArgumentError(CardanoChainError):
    default_message = "Invalid argument error occurred."


class TransactionFailedError(CardanoChainError):
    default_message = "Transaction failed error occurred."


class ChainValueError(CardanoChainError, ValueError):
    """A backend returned a value that could not be decoded."""

    default_message = "The value is invalid."


class UnsupportedNetworkError(CardanoChainError):
    default_message = "The network is not supported."
