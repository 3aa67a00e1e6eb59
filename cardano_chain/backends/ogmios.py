"""Chain context backed by an Ogmios v6 server."""

import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional

from cachetools import TTLCache
from pycardano import Address, ExecutionUnits, NativeScript, TransactionId, UTxO
from pycardano.address import PointerAddress
from pycardano.exception import DecodingException

from ..blockchain.ogmios_client import OgmiosClient
from ..context import ChainContext
from ..errors import (
    ChainValueError,
    InvalidArgumentError,
    OgmiosError,
    OgmiosQueryError,
    TransactionFailedError,
)
from ..network import MAINNET, Network
from ..types import (
    ChainTip,
    DRepVotingThresholds,
    Era,
    ExecutionUnitPrices,
    ExecutionUnitsLimit,
    GenesisParameters,
    KESPeriodInfo,
    MultiHostName,
    OperationalCertificate,
    PoolMetadata,
    PoolParams,
    PoolVotingThresholds,
    ProtocolParameters,
    ProtocolVersion,
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
    parse_iso8601,
    parse_ratio,
    plutus_script_from_type,
    pool_id_to_bech32,
    pool_id_to_hex,
    with_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_REFETCH_CHAIN_TIP_INTERVAL = 1000.0
DEFAULT_CACHE_TTL = 1.0
DEFAULT_UTXO_CACHE_SIZE = 10000

_LANGUAGES = {"plutus:v1": "PlutusV1", "plutus:v2": "PlutusV2", "plutus:v3": "PlutusV3"}


def _lovelace(value: Optional[Dict[str, Any]]) -> int:
    """Ogmios wraps amounts as {"ada": {"lovelace": n}}."""
    if not value:
        return 0
    return int(value["ada"]["lovelace"])


def _bytes(value: Optional[Dict[str, Any]]) -> int:
    return int(value["bytes"]) if value else 0


def _ratio(value: Any) -> float:
    return float(parse_ratio(value)) if value is not None else 0.0


class OgmiosChainContext(ChainContext):
    """
    Ogmios chain context.

    Protocol parameters are cached per epoch; the epoch is re-read at most
    once per `refetch_chain_tip_interval` seconds. The latest slot and UTxO
    sets keyed by (slot, address) live for `cache_ttl` seconds.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        network: Network = MAINNET,
        client: Optional[OgmiosClient] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        refetch_chain_tip_interval: float = DEFAULT_REFETCH_CHAIN_TIP_INTERVAL,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        utxo_cache_size: int = DEFAULT_UTXO_CACHE_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.network = network
        if client is None:
            url = url or os.environ.get("OGMIOS_URL") or "ws://localhost:1337"
            client = OgmiosClient(
                url,
                username=username,
                password=password,
                use_http=url.startswith(("http://", "https://")),
            )
        self.client = client
        self.refetch_chain_tip_interval = refetch_chain_tip_interval
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._timer = timer

        self._epoch: Optional[int] = None
        self._last_chain_tip_fetch: Optional[float] = None
        self._genesis_param: Optional[GenesisParameters] = None
        self._protocol_param: Optional[ProtocolParameters] = None
        self._protocol_param_epoch: Optional[int] = None
        self._tip_cache: TTLCache = TTLCache(maxsize=1, ttl=cache_ttl, timer=timer)
        self._utxo_cache: TTLCache = TTLCache(maxsize=utxo_cache_size, ttl=cache_ttl, timer=timer)

    async def close(self):
        await self.client.disconnect()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _query(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await with_retry(
            lambda: self.client.request(method, params), self.max_attempts, self.base_delay
        )

    # ===================
    # Tip and epoch
    # ===================

    async def _check_epoch_and_update(self) -> bool:
        """Re-read the epoch once the refetch interval has passed. Returns True if it advanced."""
        now = self._timer()
        if (
            self._epoch is not None
            and self._last_chain_tip_fetch is not None
            and now - self._last_chain_tip_fetch < self.refetch_chain_tip_interval
        ):
            return False
        epoch = int(await self._query("queryLedgerState/epoch"))
        self._last_chain_tip_fetch = now
        advanced = epoch != self._epoch
        if advanced:
            logger.debug(f"Ogmios epoch is now {epoch}")
        self._epoch = epoch
        return advanced

    async def epoch(self) -> int:
        await self._check_epoch_and_update()
        return self._epoch

    async def last_block_slot(self) -> int:
        if "lastBlockSlot" in self._tip_cache:
            return self._tip_cache["lastBlockSlot"]
        tip = await self._query("queryLedgerState/tip")
        slot = 0 if tip == "origin" else int(tip["slot"])
        self._tip_cache["lastBlockSlot"] = slot
        return slot

    async def query_chain_tip(self) -> ChainTip:
        tip = await self._query("queryLedgerState/tip")
        if tip == "origin":
            return ChainTip(slot=0, epoch=0, block=0)
        height = await self._query("queryNetwork/blockHeight")
        epoch = await self.epoch()
        return ChainTip(
            slot=int(tip["slot"]),
            epoch=epoch,
            block=None if height == "origin" else int(height),
            hash=tip.get("id"),
            era=await self.era(),
        )

    async def era(self) -> Era:
        if self.network.is_mainnet:
            return Era.from_epoch(await self.epoch())
        params = await self.protocol_parameters()
        return Era.from_protocol_version(params.protocol_version.major)

    # ===================
    # Parameters
    # ===================

    async def genesis_parameters(self) -> GenesisParameters:
        if self._genesis_param is None:
            genesis = await self._query("queryNetwork/genesisConfiguration", {"era": "shelley"})
            try:
                self._genesis_param = GenesisParameters(
                    active_slots_coefficient=float(parse_ratio(genesis["activeSlotsCoefficient"])),
                    epoch_length=int(genesis["epochLength"]),
                    max_kes_evolutions=int(genesis["maxKesEvolutions"]),
                    max_lovelace_supply=int(genesis["maxLovelaceSupply"]),
                    network_id=str(self.network),
                    network_magic=int(genesis["networkMagic"]),
                    security_param=int(genesis["securityParameter"]),
                    slot_length=int(genesis["slotLength"]["milliseconds"]) // 1000,
                    slots_per_kes_period=int(genesis["slotsPerKesPeriod"]),
                    system_start=parse_iso8601(genesis["startTime"]),
                    update_quorum=int(genesis["updateQuorum"]),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ChainValueError(f"Invalid Ogmios genesis configuration: {e}") from e
        return self._genesis_param

    async def protocol_parameters(self) -> ProtocolParameters:
        await self._check_epoch_and_update()
        if self._protocol_param is None or self._protocol_param_epoch != self._epoch:
            params = await self._query("queryLedgerState/protocolParameters")
            try:
                self._protocol_param = self._parse_protocol_parameters(params)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise ChainValueError(f"Invalid Ogmios protocol parameters: {e}") from e
            self._protocol_param_epoch = self._epoch
            logger.debug(f"Protocol parameters refreshed for epoch {self._epoch}")
        return self._protocol_param

    @staticmethod
    def _parse_protocol_parameters(p: Dict[str, Any]) -> ProtocolParameters:
        prices = p.get("scriptExecutionPrices") or {}
        tx_units = p.get("maxExecutionUnitsPerTransaction") or {}
        block_units = p.get("maxExecutionUnitsPerBlock") or {}
        version = p.get("version") or {}
        pvt = p.get("stakePoolVotingThresholds") or {}
        pvt_committee = pvt.get("constitutionalCommittee") or {}
        dvt = p.get("delegateRepresentativeVotingThresholds") or {}
        dvt_committee = dvt.get("constitutionalCommittee") or {}
        dvt_update = dvt.get("protocolParametersUpdate") or {}
        ref_scripts = p.get("minFeeReferenceScripts")
        return ProtocolParameters(
            tx_fee_per_byte=int(p.get("minFeeCoefficient", 0)),
            tx_fee_fixed=_lovelace(p.get("minFeeConstant")),
            max_block_body_size=_bytes(p.get("maxBlockBodySize")),
            max_tx_size=_bytes(p.get("maxTransactionSize")),
            max_block_header_size=_bytes(p.get("maxBlockHeaderSize")),
            stake_address_deposit=_lovelace(p.get("stakeCredentialDeposit")),
            stake_pool_deposit=_lovelace(p.get("stakePoolDeposit")),
            pool_retire_max_epoch=int(p.get("stakePoolRetirementEpochBound", 0)),
            stake_pool_target_num=int(p.get("desiredNumberOfStakePools", 0)),
            pool_pledge_influence=_ratio(p.get("stakePoolPledgeInfluence")),
            monetary_expansion=_ratio(p.get("monetaryExpansion")),
            treasury_cut=_ratio(p.get("treasuryExpansion")),
            protocol_version=ProtocolVersion(
                major=int(version.get("major", 0)),
                minor=int(version.get("minor", 0)),
            ),
            min_pool_cost=_lovelace(p.get("minStakePoolCost")),
            utxo_cost_per_byte=int(p.get("minUtxoDepositCoefficient", 0)),
            cost_models={
                _LANGUAGES.get(language, language): [int(v) for v in costs]
                for language, costs in (p.get("plutusCostModels") or {}).items()
            },
            execution_unit_prices=ExecutionUnitPrices(
                price_memory=_ratio(prices.get("memory")),
                price_steps=_ratio(prices.get("cpu")),
            ),
            max_tx_execution_units=ExecutionUnitsLimit(
                memory=int(tx_units.get("memory", 0)),
                steps=int(tx_units.get("cpu", 0)),
            ),
            max_block_execution_units=ExecutionUnitsLimit(
                memory=int(block_units.get("memory", 0)),
                steps=int(block_units.get("cpu", 0)),
            ),
            max_value_size=_bytes(p.get("maxValueSize")),
            collateral_percentage=int(p.get("collateralPercentage", 0)),
            max_collateral_inputs=int(p.get("maxCollateralInputs", 0)),
            pool_voting_thresholds=PoolVotingThresholds(
                committee_no_confidence=_ratio(pvt_committee.get("stateOfNoConfidence")),
                committee_normal=_ratio(pvt_committee.get("default")),
                hard_fork_initiation=_ratio(pvt.get("hardForkInitiation")),
                motion_no_confidence=_ratio(pvt.get("noConfidence")),
                pp_security_group=_ratio((pvt.get("protocolParametersUpdate") or {}).get("security")),
            ),
            drep_voting_thresholds=DRepVotingThresholds(
                committee_no_confidence=_ratio(dvt_committee.get("stateOfNoConfidence")),
                committee_normal=_ratio(dvt_committee.get("default")),
                hard_fork_initiation=_ratio(dvt.get("hardForkInitiation")),
                motion_no_confidence=_ratio(dvt.get("noConfidence")),
                pp_economic_group=_ratio(dvt_update.get("economic")),
                pp_gov_group=_ratio(dvt_update.get("governance")),
                pp_network_group=_ratio(dvt_update.get("network")),
                pp_technical_group=_ratio(dvt_update.get("technical")),
                treasury_withdrawal=_ratio(dvt.get("treasuryWithdrawals")),
                update_to_constitution=_ratio(dvt.get("constitution")),
            ),
            committee_min_size=int(p.get("constitutionalCommitteeMinSize", 0)),
            committee_max_term_length=int(p.get("constitutionalCommitteeMaxTermLength", 0)),
            gov_action_lifetime=int(p.get("governanceActionLifetime", 0)),
            gov_action_deposit=_lovelace(p.get("governanceActionDeposit")),
            drep_deposit=_lovelace(p.get("delegateRepresentativeDeposit")),
            drep_activity=int(p.get("delegateRepresentativeMaxIdleTime", 0)),
            min_fee_ref_script_cost_per_byte=(
                float(ref_scripts["base"]) if ref_scripts else None
            ),
        )

    # ===================
    # UTxOs
    # ===================

    @staticmethod
    def _parse_script(script: Dict[str, Any]) -> Script:
        language = script.get("language")
        if language == "native":
            if not script.get("cbor"):
                raise ChainValueError("Native script has no CBOR")
            return NativeScript.from_cbor(bytes.fromhex(script["cbor"]))
        if language not in _LANGUAGES:
            raise ChainValueError(f"Unknown script language: {language}")
        return plutus_script_from_type(_LANGUAGES[language], bytes.fromhex(script["cbor"]))

    def _parse_utxo(self, entry: Dict[str, Any]) -> UTxO:
        value = entry["value"]
        assets = {policy: names for policy, names in value.items() if policy != "ada"}
        script = self._parse_script(entry["script"]) if entry.get("script") else None
        return make_utxo(
            entry["transaction"]["id"],
            entry["index"],
            entry["address"],
            build_value(_lovelace(value), assets),
            datum_hash=entry.get("datumHash"),
            inline_datum=entry.get("datum"),
            script=script,
        )

    async def utxos(self, address: str) -> List[UTxO]:
        key = f"{await self.last_block_slot()}:{address}"
        if key in self._utxo_cache:
            logger.debug(f"UTxO cache hit for {key}")
            return list(self._utxo_cache[key])

        entries = await self._query("queryLedgerState/utxo", {"addresses": [address]})
        try:
            utxos = [self._parse_utxo(entry) for entry in entries]
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid Ogmios UTxO for {address}: {e}") from e
        self._utxo_cache[key] = utxos
        return list(utxos)

    # ===================
    # Transactions
    # ===================

    async def submit_tx_cbor(self, cbor: bytes) -> TransactionId:
        try:
            result = await self.client.request("submitTransaction", {"transaction": {"cbor": cbor.hex()}})
        except OgmiosError as e:
            raise TransactionFailedError(f"Ogmios rejected transaction: {e.message}") from e
        tx_id = result["transaction"]["id"]
        logger.info(f"Submitted transaction {tx_id}")
        return TransactionId.from_primitive(tx_id)

    async def evaluate_tx_cbor(self, cbor: bytes) -> Dict[str, ExecutionUnits]:
        result = await self._query("evaluateTransaction", {"transaction": {"cbor": cbor.hex()}})
        units = {}
        try:
            for item in result:
                validator = item["validator"]
                if isinstance(validator, dict):
                    key = f"{validator['purpose']}:{validator['index']}"
                else:
                    key = str(validator)
                budget = item["budget"]
                units[key] = ExecutionUnits(int(budget["memory"]), int(budget["cpu"]))
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid evaluation result: {e}") from e
        return units

    # ===================
    # Stake and pools
    # ===================

    @staticmethod
    def _vote_delegation(drep: Optional[Dict[str, Any]]) -> Optional[str]:
        if not drep:
            return None
        kind = drep.get("type")
        if kind == "noConfidence":
            return "drep_always_no_confidence"
        if kind == "abstain":
            return "drep_always_abstain"
        return drep.get("id")

    async def stake_address_info(self, address: str) -> List[StakeAddressInfo]:
        try:
            staking_part = Address.from_primitive(address).staking_part
        except (DecodingException, TypeError, ValueError) as e:
            raise InvalidArgumentError(f"Invalid address {address}: {e}") from e
        if staking_part is None or isinstance(staking_part, PointerAddress):
            raise InvalidArgumentError(f"Address has no staking credential: {address}")

        credential = staking_part.payload.hex()
        result = await self._query("queryLedgerState/rewardAccountSummaries", {"keys": [credential]})
        summaries = list(result.values()) if isinstance(result, dict) else list(result or [])

        infos = []
        for summary in summaries:
            pool = summary.get("stakePool") or summary.get("delegate") or {}
            infos.append(StakeAddressInfo(
                address=address,
                reward_account_balance=_lovelace(summary.get("rewards")),
                active=True,
                delegation_deposit=_lovelace(summary.get("deposit")),
                stake_delegation=pool.get("id"),
                vote_delegation=self._vote_delegation(summary.get("delegateRepresentative")),
            ))
        return infos

    async def stake_pools(self) -> List[str]:
        pools = await self._query("queryLedgerState/stakePools")
        return list(pools.keys())

    async def stake_pool_info(self, pool_id: str) -> PoolParams:
        if not pool_id:
            raise InvalidArgumentError("Pool id must be provided")
        bech32_id = pool_id_to_bech32(pool_id_to_hex(pool_id))
        pools = await self._query("queryLedgerState/stakePools", {"stakePools": [{"id": bech32_id}]})
        pool = pools.get(bech32_id)
        if pool is None:
            raise OgmiosQueryError(f"Pool not found: {pool_id}")

        try:
            relays = []
            for relay in pool.get("relays") or []:
                port = relay.get("port")
                if relay.get("type") == "ipAddress":
                    relays.append(SingleHostAddr(port=port, ipv4=relay.get("ipv4"), ipv6=relay.get("ipv6")))
                elif port is not None:
                    relays.append(SingleHostName(dns_name=relay["hostname"], port=port))
                else:
                    relays.append(MultiHostName(dns_name=relay["hostname"]))

            metadata = None
            if pool.get("metadata"):
                metadata = PoolMetadata(url=pool["metadata"]["url"], hash=pool["metadata"]["hash"])

            return PoolParams(
                operator=pool_id_to_hex(bech32_id),
                vrf_key_hash=pool["vrfVerificationKeyHash"],
                pledge=_lovelace(pool.get("pledge")),
                cost=_lovelace(pool.get("cost")),
                margin=parse_ratio(pool.get("margin", "0/1")),
                reward_account=pool.get("rewardAccount", ""),
                owners=frozenset(pool.get("owners") or []),
                relays=tuple(relays),
                metadata=metadata,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid Ogmios pool parameters for {pool_id}: {e}") from e

    async def kes_period_info(
        self, pool_id: str, op_cert: Optional[OperationalCertificate] = None
    ) -> KESPeriodInfo:
        if not pool_id:
            raise InvalidArgumentError("Pool id must be provided")
        bech32_id = pool_id_to_bech32(pool_id_to_hex(pool_id))
        counters = await self._query("queryLedgerState/operationalCertificates")
        if bech32_id not in counters:
            raise InvalidArgumentError(f"Operational certificate not found for pool {bech32_id}")
        return KESPeriodInfo.from_counter(int(counters[bech32_id]), op_cert)
