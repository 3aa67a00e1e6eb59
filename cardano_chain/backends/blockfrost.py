"""Chain context backed by the Blockfrost hosted API."""

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from blockfrost import ApiError, ApiUrls, BlockFrostApi
from pycardano import ExecutionUnits, NativeScript, TransactionId, UTxO

from ..context import ChainContext
from ..errors import (
    BlockfrostError,
    ChainValueError,
    InvalidArgumentError,
    TransactionFailedError,
    UnsupportedNetworkError,
)
from ..network import MAINNET, PREPROD, PREVIEW, Network
from ..types import (
    ChainTip,
    DRepVotingThresholds,
    Era,
    ExecutionUnitPrices,
    ExecutionUnitsLimit,
    GenesisParameters,
    PoolVotingThresholds,
    ProtocolParameters,
    ProtocolVersion,
    StakeAddressInfo,
)
from ..utils import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    Script,
    build_value,
    group_units,
    make_utxo,
    plutus_script_from_type,
    verify_script,
    with_retry,
)

logger = logging.getLogger(__name__)

_API_URLS = {
    MAINNET: ApiUrls.mainnet.value,
    PREPROD: ApiUrls.preprod.value,
    PREVIEW: ApiUrls.preview.value,
}


def _num(data: Dict[str, Any], *keys: str, cast=int, default=0):
    """First present key, cast; absent protocol fields default."""
    for key in keys:
        value = data.get(key)
        if value is not None:
            return cast(value)
    return default


class BlockFrostChainContext(ChainContext):
    """
    Blockfrost API wrapper.

    `project_id` falls back to BLOCKFROST_PROJECT_ID. Pass `api` to supply a
    preconfigured BlockFrostApi (or a compatible object).
    """

    def __init__(
        self,
        project_id: Optional[str] = None,
        network: Network = MAINNET,
        base_url: Optional[str] = None,
        api: Optional[Any] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
    ):
        if network not in _API_URLS:
            raise UnsupportedNetworkError(f"Blockfrost does not serve network {network}")
        self.network = network
        self.max_attempts = max_attempts
        self.base_delay = base_delay

        if api is None:
            project_id = project_id or os.environ.get("BLOCKFROST_PROJECT_ID")
            if not project_id:
                raise InvalidArgumentError("Blockfrost project id is required")
            api = BlockFrostApi(project_id=project_id, base_url=base_url or _API_URLS[network])
        self.api = api

        self._epoch_info: Optional[Dict[str, Any]] = None
        self._epoch: Optional[int] = None
        self._genesis_param: Optional[GenesisParameters] = None
        self._protocol_param: Optional[ProtocolParameters] = None

    async def _call(self, method: str, *args, not_found=..., **kwargs) -> Any:
        """Run a blocking SDK call in a thread, retried. Returns `not_found` on 404 when given."""
        fn = getattr(self.api, method)

        async def attempt():
            try:
                return await asyncio.to_thread(fn, *args, return_type="json", **kwargs)
            except ApiError as e:
                if e.status_code == 404 and not_found is not ...:
                    return not_found
                raise BlockfrostError(f"Blockfrost {method} failed ({e.status_code}): {e.message}") from e

        return await with_retry(attempt, self.max_attempts, self.base_delay)

    # ===================
    # Epoch tracking
    # ===================

    async def _check_epoch_and_update(self) -> bool:
        """Refresh epoch info once the cached epoch has ended. Returns True if refreshed."""
        if self._epoch_info is not None and time.time() < self._epoch_info.get("end_time", 0):
            return False
        self._epoch_info = await self._call("epoch_latest")
        self._epoch = int(self._epoch_info["epoch"])
        logger.debug(f"Blockfrost epoch info refreshed: epoch {self._epoch}")
        return True

    async def epoch(self) -> int:
        await self._check_epoch_and_update()
        return self._epoch

    async def last_block_slot(self) -> int:
        block = await self._call("block_latest")
        return int(block["slot"])

    async def query_chain_tip(self) -> ChainTip:
        block = await self._call("block_latest")
        params = await self.protocol_parameters()
        try:
            return ChainTip(
                slot=int(block["slot"]),
                epoch=int(block["epoch"]),
                block=block.get("height"),
                hash=block.get("hash"),
                era=Era.from_protocol_version(params.protocol_version.major),
                slot_in_epoch=block.get("epoch_slot"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid Blockfrost block: {e}") from e

    async def era(self) -> Era:
        params = await self.protocol_parameters()
        return Era.from_protocol_version(params.protocol_version.major)

    # ===================
    # Parameters
    # ===================

    async def genesis_parameters(self) -> GenesisParameters:
        if self._genesis_param is None:
            genesis = await self._call("genesis")
            try:
                self._genesis_param = GenesisParameters(
                    active_slots_coefficient=float(genesis["active_slots_coefficient"]),
                    epoch_length=int(genesis["epoch_length"]),
                    max_kes_evolutions=int(genesis["max_kes_evolutions"]),
                    max_lovelace_supply=int(genesis["max_lovelace_supply"]),
                    network_id=str(self.network),
                    network_magic=int(genesis["network_magic"]),
                    security_param=int(genesis["security_param"]),
                    slot_length=int(genesis["slot_length"]),
                    slots_per_kes_period=int(genesis["slots_per_kes_period"]),
                    system_start=datetime.fromtimestamp(int(genesis["system_start"]), tz=timezone.utc),
                    update_quorum=int(genesis["update_quorum"]),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ChainValueError(f"Invalid Blockfrost genesis: {e}") from e
        return self._genesis_param

    async def protocol_parameters(self) -> ProtocolParameters:
        if await self._check_epoch_and_update() or self._protocol_param is None:
            params = await self._call("epoch_latest_parameters")
            try:
                self._protocol_param = self._parse_protocol_parameters(params)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise ChainValueError(f"Invalid Blockfrost protocol parameters: {e}") from e
            logger.debug(f"Protocol parameters refreshed for epoch {self._epoch}")
        return self._protocol_param

    @staticmethod
    def _parse_protocol_parameters(p: Dict[str, Any]) -> ProtocolParameters:
        raw_models = p.get("cost_models_raw") or p.get("cost_models") or {}
        cost_models = {
            language: [int(v) for v in (costs.values() if isinstance(costs, dict) else costs)]
            for language, costs in raw_models.items()
        }
        return ProtocolParameters(
            tx_fee_per_byte=_num(p, "min_fee_a"),
            tx_fee_fixed=_num(p, "min_fee_b"),
            max_block_body_size=_num(p, "max_block_size"),
            max_tx_size=_num(p, "max_tx_size"),
            max_block_header_size=_num(p, "max_block_header_size"),
            stake_address_deposit=_num(p, "key_deposit"),
            stake_pool_deposit=_num(p, "pool_deposit"),
            pool_retire_max_epoch=_num(p, "e_max"),
            stake_pool_target_num=_num(p, "n_opt"),
            pool_pledge_influence=_num(p, "a0", cast=float, default=0.0),
            monetary_expansion=_num(p, "rho", cast=float, default=0.0),
            treasury_cut=_num(p, "tau", cast=float, default=0.0),
            protocol_version=ProtocolVersion(
                major=_num(p, "protocol_major_ver"),
                minor=_num(p, "protocol_minor_ver"),
            ),
            min_pool_cost=_num(p, "min_pool_cost"),
            utxo_cost_per_byte=_num(p, "coins_per_utxo_size"),
            cost_models=cost_models,
            execution_unit_prices=ExecutionUnitPrices(
                price_memory=_num(p, "price_mem", cast=float, default=0.0),
                price_steps=_num(p, "price_step", cast=float, default=0.0),
            ),
            max_tx_execution_units=ExecutionUnitsLimit(
                memory=_num(p, "max_tx_ex_mem"),
                steps=_num(p, "max_tx_ex_steps"),
            ),
            max_block_execution_units=ExecutionUnitsLimit(
                memory=_num(p, "max_block_ex_mem"),
                steps=_num(p, "max_block_ex_steps"),
            ),
            max_value_size=_num(p, "max_val_size"),
            collateral_percentage=_num(p, "collateral_percent"),
            max_collateral_inputs=_num(p, "max_collateral_inputs"),
            pool_voting_thresholds=PoolVotingThresholds(
                committee_no_confidence=_num(p, "pvt_committee_no_confidence", cast=float, default=0.0),
                committee_normal=_num(p, "pvt_committee_normal", cast=float, default=0.0),
                hard_fork_initiation=_num(p, "pvt_hard_fork_initiation", cast=float, default=0.0),
                motion_no_confidence=_num(p, "pvt_motion_no_confidence", cast=float, default=0.0),
                pp_security_group=_num(
                    p, "pvt_p_p_security_group", "pvtpp_security_group", cast=float, default=0.0
                ),
            ),
            drep_voting_thresholds=DRepVotingThresholds(
                committee_no_confidence=_num(p, "dvt_committee_no_confidence", cast=float, default=0.0),
                committee_normal=_num(p, "dvt_committee_normal", cast=float, default=0.0),
                hard_fork_initiation=_num(p, "dvt_hard_fork_initiation", cast=float, default=0.0),
                motion_no_confidence=_num(p, "dvt_motion_no_confidence", cast=float, default=0.0),
                pp_economic_group=_num(p, "dvt_p_p_economic_group", cast=float, default=0.0),
                pp_gov_group=_num(p, "dvt_p_p_gov_group", cast=float, default=0.0),
                pp_network_group=_num(p, "dvt_p_p_network_group", cast=float, default=0.0),
                pp_technical_group=_num(p, "dvt_p_p_technical_group", cast=float, default=0.0),
                treasury_withdrawal=_num(p, "dvt_treasury_withdrawal", cast=float, default=0.0),
                update_to_constitution=_num(p, "dvt_update_to_constitution", cast=float, default=0.0),
            ),
            committee_min_size=_num(p, "committee_min_size"),
            committee_max_term_length=_num(p, "committee_max_term_length"),
            gov_action_lifetime=_num(p, "gov_action_lifetime"),
            gov_action_deposit=_num(p, "gov_action_deposit"),
            drep_deposit=_num(p, "drep_deposit"),
            drep_activity=_num(p, "drep_activity"),
            min_fee_ref_script_cost_per_byte=_num(
                p, "min_fee_ref_script_cost_per_byte", cast=float, default=None
            ),
        )

    # ===================
    # UTxOs and scripts
    # ===================

    async def _get_script(self, script_hash: str) -> Script:
        info = await self._call("script", script_hash)
        script_type = info.get("type")
        if script_type == "timelock":
            body = await self._call("script_json", script_hash)
            try:
                script = NativeScript.from_dict(body["json"])
            except (KeyError, TypeError, ValueError) as e:
                raise ChainValueError(f"Invalid native script {script_hash}: {e}") from e
        else:
            body = await self._call("script_cbor", script_hash)
            if not body.get("cbor"):
                raise ChainValueError(f"No CBOR for script {script_hash}")
            script = plutus_script_from_type(script_type, bytes.fromhex(body["cbor"]))
        return verify_script(script, script_hash)

    async def utxos(self, address: str) -> List[UTxO]:
        results = await self._call("address_utxos", address, gather_pages=True, not_found=[])
        utxos = []
        for result in results:
            try:
                coin, assets = group_units((a["unit"], a["quantity"]) for a in result["amount"])
                script = None
                if result.get("reference_script_hash"):
                    script = await self._get_script(result["reference_script_hash"])
                utxos.append(make_utxo(
                    result["tx_hash"],
                    result["output_index"],
                    result["address"],
                    build_value(coin, assets),
                    datum_hash=result.get("data_hash"),
                    inline_datum=result.get("inline_datum"),
                    script=script,
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise ChainValueError(f"Invalid Blockfrost UTxO for {address}: {e}") from e
        logger.debug(f"Fetched {len(utxos)} UTxOs for {address}")
        return utxos

    # ===================
    # Transactions
    # ===================

    async def submit_tx_cbor(self, cbor: bytes) -> TransactionId:
        try:
            result = await asyncio.to_thread(
                self.api.transaction_submit_cbor, cbor, return_type="json"
            )
        except ApiError as e:
            raise TransactionFailedError(f"Blockfrost rejected transaction: {e.message}") from e
        tx_id = result if isinstance(result, str) else result.get("result", result)
        logger.info(f"Submitted transaction {tx_id}")
        return TransactionId.from_primitive(tx_id)

    async def evaluate_tx_cbor(self, cbor: bytes) -> Dict[str, ExecutionUnits]:
        response = await self._call("transaction_evaluate_cbor", cbor)
        result = response.get("result", response) if isinstance(response, dict) else {}
        if "EvaluationFailure" in result:
            raise BlockfrostError(f"Transaction evaluation failed: {result['EvaluationFailure']}")
        units = {}
        for key, value in (result.get("EvaluationResult") or {}).items():
            units[key] = ExecutionUnits(int(value["memory"]), int(value["steps"]))
        return units

    async def stake_address_info(self, address: str) -> List[StakeAddressInfo]:
        account = await self._call("accounts", address, not_found=None)
        if account is None:
            return []
        try:
            return [StakeAddressInfo(
                address=account["stake_address"],
                reward_account_balance=int(account["withdrawable_amount"]),
                active=account.get("active"),
                stake_delegation=account.get("pool_id"),
                vote_delegation=account.get("drep_id"),
            )]
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid Blockfrost account: {e}") from e
