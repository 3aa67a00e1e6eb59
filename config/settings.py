"""
Configuration settings - defaults come from the environment, read once at import
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name) or default


@dataclass
class Settings:
    """Chain context settings - override fields or set the environment variables"""

    # ===================
    # Network
    # ===================
    network: str = field(default_factory=lambda: _env("CARDANO_NETWORK", "mainnet"))

    # ===================
    # Ogmios
    # ===================
    ogmios_url: str = field(default_factory=lambda: _env("OGMIOS_URL", "ws://localhost:1337"))
    ogmios_username: Optional[str] = field(default_factory=lambda: _env("OGMIOS_USERNAME"))
    ogmios_password: Optional[str] = field(default_factory=lambda: _env("OGMIOS_PASSWORD"))

    # ===================
    # Hosted APIs
    # ===================
    blockfrost_project_id: Optional[str] = field(default_factory=lambda: _env("BLOCKFROST_PROJECT_ID"))
    koios_api_key: Optional[str] = field(default_factory=lambda: _env("KOIOS_API_KEY"))

    # ===================
    # Local node
    # ===================
    cardano_cli_path: str = field(default_factory=lambda: _env("CARDANO_CLI_PATH", "cardano-cli"))
    cardano_node_socket_path: Optional[str] = field(default_factory=lambda: _env("CARDANO_NODE_SOCKET_PATH"))
    cardano_node_config: Optional[str] = field(default_factory=lambda: _env("CARDANO_NODE_CONFIG"))

    # ===================
    # Retry and caching
    # ===================
    retry_max_attempts: int = 5
    retry_base_delay: float = 0.2          # seconds
    refetch_chain_tip_interval: float = 1000.0  # seconds
    cache_ttl: float = 1.0                 # seconds, latest slot and UTxO sets
    utxo_cache_size: int = 10000


# Global settings instance - import this
settings = Settings()
