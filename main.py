#!/usr/bin/env python3
"""
Cardano Chain Context - Backend Check

Queries a chain backend end to end: tip, epoch, protocol and genesis parameters.

Usage:
    python main.py [ogmios|koios|blockfrost|cli]
"""

import asyncio
import logging
import sys

from cardano_chain import CardanoChainError, ChainContext, Network
from cardano_chain.backends import (
    BlockFrostChainContext,
    CardanoCliChainContext,
    KoiosChainContext,
    OgmiosChainContext,
)
from config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_context(backend: str) -> ChainContext:
    network = Network.from_name(settings.network)
    retry = {"max_attempts": settings.retry_max_attempts, "base_delay": settings.retry_base_delay}
    if backend == "ogmios":
        return OgmiosChainContext(
            settings.ogmios_url,
            network=network,
            username=settings.ogmios_username,
            password=settings.ogmios_password,
            refetch_chain_tip_interval=settings.refetch_chain_tip_interval,
            cache_ttl=settings.cache_ttl,
            utxo_cache_size=settings.utxo_cache_size,
            **retry,
        )
    if backend == "koios":
        return KoiosChainContext(network=network, api_key=settings.koios_api_key, **retry)
    if backend == "blockfrost":
        return BlockFrostChainContext(settings.blockfrost_project_id, network=network, **retry)
    if backend == "cli":
        return CardanoCliChainContext(
            binary=settings.cardano_cli_path,
            socket=settings.cardano_node_socket_path,
            config_file=settings.cardano_node_config,
            network=network,
            refetch_chain_tip_interval=settings.refetch_chain_tip_interval,
            cache_ttl=settings.cache_ttl,
            utxo_cache_size=settings.utxo_cache_size,
            **retry,
        )
    raise ValueError(f"Unknown backend: {backend}")


async def check_backend(backend: str) -> bool:
    """
    Check a backend:
    1. Query chain tip
    2. Query epoch and protocol parameters
    3. Query genesis parameters
    """
    print("=" * 60)
    print(f"Cardano Chain Context - {backend} check")
    print("=" * 60)
    print()
    print(f"Network: {settings.network}")
    print()

    context = build_context(backend)
    try:
        print("[1/3] Querying chain tip...")
        tip = await context.query_chain_tip()
        print(f"✅ Slot: {tip.slot:,}  Epoch: {tip.epoch}")
        if tip.block:
            print(f"   Block height: {tip.block:,}")

        print()
        print("[2/3] Querying protocol parameters...")
        params = await context.protocol_parameters()
        print(f"✅ Epoch {await context.epoch()}, protocol "
              f"{params.protocol_version.major}.{params.protocol_version.minor}, "
              f"fee {params.tx_fee_per_byte}/byte + {params.tx_fee_fixed}")

        print()
        print("[3/3] Querying genesis parameters...")
        genesis = await context.genesis_parameters()
        print(f"✅ Network magic {genesis.network_magic}, system start {genesis.system_start:%Y-%m-%d}")

        print()
        print("=" * 60)
        print("✅ Backend check passed!")
        print("=" * 60)
        return True

    except CardanoChainError as e:
        print(f"❌ Error during check: {e}")
        logger.exception("Check failed with exception")
        return False

    finally:
        close = getattr(context, "close", None)
        if close is not None:
            await close()


async def main():
    """Main entry point"""
    backend = sys.argv[1] if len(sys.argv) > 1 else "ogmios"
    try:
        success = await check_backend(backend)
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)
    except (CardanoChainError, ValueError) as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
