"""Chain context backed by the Koios aggregator API."""

import logging
import os
import time
from datetime import datetime, timezone
from fractions import Fraction
from typing import Any, Dict, List, Optional

from pycardano import Address, ExecutionUnits, NativeScript, TransactionId, UTxO

from ..blockchain.koios_client import BASE_URLS, KoiosClient
from ..context import ChainContext
from ..errors import (
    ChainValueError,
    InvalidArgumentError,
    KoiosError,
    TransactionFailedError,
    UnsupportedNetworkError,
)
from ..network import MAINNET, Network
from ..types import (
    ChainTip,
    Era,
    GenesisParameters,
    KESPeriodInfo,
    MultiHostName,
    OperationalCertificate,
    PoolMetadata,
    PoolParams,
    ProtocolParameters,
    SingleHostAddr,
    SingleHostName,
    StakeAddressInfo,
)
from ..utils import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    Script,
    build_value,
    make_utxo,
    parse_float,
    parse_int,
    plutus_script_from_type,
    verify_script,
    with_retry,
)

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000
MARGIN_DENOMINATOR = 100_000_000


class KoiosChainContext(ChainContext):
    """
    Koios REST API wrapper.

    `api_key` falls back to KOIOS_API_KEY; Koios also serves anonymous
    requests at a lower rate limit.
    """

    def __init__(
        self,
        network: Network = MAINNET,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[KoiosClient] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
    ):
        if network not in BASE_URLS:
            raise UnsupportedNetworkError(f"Koios does not serve network {network}")
        self.network = network
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        if client is None:
            api_key = api_key or os.environ.get("KOIOS_API_KEY")
            client = KoiosClient(base_url or BASE_URLS[network], api_key=api_key)
        self.client = client

        self._epoch_info: Optional[Dict[str, Any]] = None
        self._genesis_param: Optional[GenesisParameters] = None
        self._protocol_param: Optional[ProtocolParameters] = None

    async def close(self):
        await self.client.close()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await with_retry(lambda: self.client.get(path, params), self.max_attempts, self.base_delay)

    async def _post(self, path: str, body: Any) -> Any:
        return await with_retry(lambda: self.client.post(path, body), self.max_attempts, self.base_delay)

    @staticmethod
    def _first(rows: Any, what: str) -> Dict[str, Any]:
        if not isinstance(rows, list) or not rows:
            raise KoiosError(f"Koios {what} response was empty")
        return rows[0]

    # ===================
    # Tip and epoch
    # ===================

    async def query_chain_tip(self) -> ChainTip:
        tip = self._first(await self._get("tip"), "tip")
        block = tip.get("block_height", tip.get("block_no"))
        return ChainTip(
            slot=parse_int(tip.get("abs_slot"), "abs_slot"),
            epoch=parse_int(tip.get("epoch_no"), "epoch_no"),
            block=int(block) if block is not None else None,
            hash=tip.get("hash"),
            slot_in_epoch=int(tip["epoch_slot"]) if tip.get("epoch_slot") is not None else None,
        )

    async def _check_epoch_and_update(self) -> bool:
        if self._epoch_info is not None and time.time() < float(self._epoch_info.get("end_time") or 0):
            return False
        tip = await self.query_chain_tip()
        rows = await self._get("epoch_info", {"_epoch_no": tip.epoch})
        self._epoch_info = self._first(rows, "epoch_info")
        logger.debug(f"Koios epoch info refreshed: epoch {self._epoch_info.get('epoch_no')}")
        return True

    async def epoch(self) -> int:
        await self._check_epoch_and_update()
        return parse_int(self._epoch_info.get("epoch_no"), "epoch_no")

    async def last_block_slot(self) -> int:
        return (await self.query_chain_tip()).slot

    async def era(self) -> Era:
        params = await self.protocol_parameters()
        return Era.from_protocol_version(params.protocol_version.major)

    # ===================
    # Parameters
    # ===================

    async def genesis_parameters(self) -> GenesisParameters:
        if self._genesis_param is None:
            genesis = self._first(await self._get("genesis"), "genesis")
            self._genesis_param = GenesisParameters(
                active_slots_coefficient=parse_float(genesis.get("activeslotcoeff"), "activeslotcoeff"),
                epoch_length=parse_int(genesis.get("epochlength"), "epochlength"),
                max_kes_evolutions=parse_int(genesis.get("maxkesrevolutions"), "maxkesrevolutions"),
                max_lovelace_supply=parse_int(genesis.get("maxlovelacesupply"), "maxlovelacesupply"),
                network_id=str(self.network),
                network_magic=parse_int(genesis.get("networkmagic"), "networkmagic"),
                security_param=parse_int(genesis.get("securityparam"), "securityparam"),
                slot_length=parse_int(genesis.get("slotlength"), "slotlength"),
                slots_per_kes_period=parse_int(genesis.get("slotsperkesperiod"), "slotsperkesperiod"),
                system_start=datetime.fromtimestamp(
                    parse_int(genesis.get("systemstart"), "systemstart"), tz=timezone.utc
                ),
                update_quorum=parse_int(genesis.get("updatequorum"), "updatequorum"),
            )
        return self._genesis_param

    async def protocol_parameters(self) -> ProtocolParameters:
        if await self._check_epoch_and_update() or self._protocol_param is None:
            params = await self._get("cli_protocol_params")
            if not isinstance(params, dict):
                raise ChainValueError("Koios cli_protocol_params is not an object")
            self._protocol_param = ProtocolParameters.from_json(params)
        return self._protocol_param

    # ===================
    # UTxOs
    # ===================

    def _get_script(self, ref: Dict[str, Any]) -> Script:
        script_type = ref.get("type")
        if not script_type:
            raise ChainValueError("Reference script has no type")
        if script_type in ("timelock", "multisig"):
            if not ref.get("value"):
                raise ChainValueError("Native reference script has no value")
            script = NativeScript.from_dict(ref["value"])
        else:
            if not ref.get("bytes"):
                raise ChainValueError("Plutus reference script has no bytes")
            script = plutus_script_from_type(script_type, bytes.fromhex(ref["bytes"]))
        if ref.get("hash"):
            script = verify_script(script, ref["hash"])
        return script

    def _parse_utxo(self, row: Dict[str, Any]) -> UTxO:
        assets: Dict[str, Dict[str, int]] = {}
        for item in row.get("asset_list") or []:
            names = assets.setdefault(item["policy_id"], {})
            names[item.get("asset_name") or ""] = int(item["quantity"])

        inline = row.get("inline_datum")
        if isinstance(inline, dict):
            inline = inline.get("bytes")

        script = None
        if row.get("reference_script"):
            script = self._get_script(row["reference_script"])

        return make_utxo(
            row["tx_hash"],
            row["tx_index"],
            row["address"],
            build_value(int(row.get("value") or 0), assets),
            datum_hash=row.get("datum_hash"),
            inline_datum=inline,
            script=script,
        )

    async def utxos(self, address: str) -> List[UTxO]:
        body = {"_addresses": [address], "_extended": True}
        rows = await with_retry(
            lambda: self.client.paginate("address_utxos", body, page_size=PAGE_SIZE),
            self.max_attempts,
            self.base_delay,
        )
        try:
            utxos = [self._parse_utxo(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid Koios UTxO for {address}: {e}") from e
        logger.debug(f"Fetched {len(utxos)} UTxOs for {address}")
        return utxos

    # ===================
    # Transactions
    # ===================

    async def submit_tx_cbor(self, cbor: bytes) -> TransactionId:
        try:
            tx_id = await self.client.post_cbor("submittx", cbor)
        except KoiosError as e:
            raise TransactionFailedError(f"Koios rejected transaction: {e.message}") from e
        logger.info(f"Submitted transaction {tx_id}")
        return TransactionId.from_primitive(tx_id)

    async def evaluate_tx_cbor(self, cbor: bytes) -> Dict[str, ExecutionUnits]:
        body = {
            "jsonrpc": "2.0",
            "method": "evaluateTransaction",
            "params": {"transaction": {"cbor": cbor.hex()}},
        }
        response = await self._post("ogmios", body)
        if isinstance(response, dict) and "error" in response:
            raise KoiosError(f"Transaction evaluation failed: {response['error']}")
        units = {}
        try:
            for item in response.get("result") or []:
                purpose = item["validator"]["purpose"]
                if purpose == "withdraw":
                    purpose = "withdrawal"
                budget = item["budget"]
                units[f"{purpose}:{item['validator']['index']}"] = ExecutionUnits(
                    int(budget["memory"]), int(budget["cpu"])
                )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid evaluation result: {e}") from e
        return units

    # ===================
    # Stake and pools
    # ===================

    async def stake_address_info(self, address: str) -> List[StakeAddressInfo]:
        rows = await self._post("account_info", {"_stake_addresses": [address]})
        infos = []
        for row in rows or []:
            infos.append(StakeAddressInfo(
                address=row.get("stake_address") or address,
                reward_account_balance=int(row.get("rewards_available") or 0),
                active=row.get("status") == "registered",
                delegation_deposit=int(row.get("deposit") or 0),
                stake_delegation=row.get("delegated_pool"),
                vote_delegation=row.get("delegated_drep"),
            ))
        return infos

    async def stake_pools(self) -> List[str]:
        rows = await with_retry(
            lambda: self.client.paginate("pool_list", params={"select": "pool_id_bech32"}, page_size=PAGE_SIZE),
            self.max_attempts,
            self.base_delay,
        )
        return [row["pool_id_bech32"] for row in rows if row.get("pool_id_bech32")]

    async def pool_info(self, pool_ids: List[str]) -> List[Dict[str, Any]]:
        """Raw Koios `pool_info` rows for the given bech32 pool ids."""
        if not pool_ids or not all(pool_ids):
            raise InvalidArgumentError("Pool id must be provided")
        rows = await self._post("pool_info", {"_pool_bech32_ids": list(pool_ids)})
        if not isinstance(rows, list):
            raise KoiosError("Koios pool_info returned a non-list response")
        return rows

    async def _pool_info(self, pool_id: str) -> Dict[str, Any]:
        rows = await self.pool_info([pool_id])
        if not rows:
            raise KoiosError(f"Pool not found: {pool_id}")
        return rows[0]

    async def asset_addresses(self, policy_id: str, asset_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Addresses holding an asset, as Koios rows with `payment_address`,
        `stake_address` and `quantity`. `asset_name` is hex; without it every
        asset under the policy is matched.
        """
        if not policy_id:
            raise InvalidArgumentError("Asset policy id must be provided")
        params = {"_asset_policy": policy_id}
        if asset_name is not None:
            params["_asset_name"] = asset_name
        return await with_retry(
            lambda: self.client.paginate("asset_addresses", params=params, page_size=PAGE_SIZE),
            self.max_attempts,
            self.base_delay,
        )

    async def stake_pool_info(self, pool_id: str) -> PoolParams:
        pool = await self._pool_info(pool_id)
        try:
            relays = []
            for relay in pool.get("relays") or []:
                port = int(relay["port"]) if relay.get("port") is not None else None
                if relay.get("ipv4") or relay.get("ipv6"):
                    relays.append(SingleHostAddr(port=port, ipv4=relay.get("ipv4"), ipv6=relay.get("ipv6")))
                elif relay.get("dns"):
                    relays.append(SingleHostName(dns_name=relay["dns"], port=port))
                elif relay.get("srv"):
                    relays.append(MultiHostName(dns_name=relay["srv"]))

            owners = []
            for owner in pool.get("owners") or []:
                owner_address = Address.from_primitive(owner)
                part = owner_address.staking_part or owner_address.payment_part
                owners.append(part.payload.hex())

            metadata = None
            if pool.get("meta_url") and pool.get("meta_hash"):
                metadata = PoolMetadata(url=pool["meta_url"], hash=pool["meta_hash"])

            margin = float(pool.get("margin") or 0)
            return PoolParams(
                operator=pool.get("pool_id_hex") or "",
                vrf_key_hash=pool.get("vrf_key_hash") or "",
                pledge=int(pool.get("pledge") or 0),
                cost=int(pool.get("fixed_cost") or 0),
                margin=Fraction(round(margin * MARGIN_DENOMINATOR), MARGIN_DENOMINATOR),
                reward_account=pool.get("reward_addr") or "",
                owners=frozenset(owners),
                relays=tuple(relays),
                metadata=metadata,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid Koios pool info for {pool_id}: {e}") from e

    async def kes_period_info(
        self, pool_id: str, op_cert: Optional[OperationalCertificate] = None
    ) -> KESPeriodInfo:
        pool = await self._pool_info(pool_id)
        counter = pool.get("op_cert_counter")
        if counter is None:
            raise KoiosError(f"Pool {pool_id} has no operational certificate counter")
        return KESPeriodInfo.from_counter(int(counter), op_cert)
