"""
Canonical ledger-state types shared by every backend.

Ledger values (UTxO, Value, scripts, datums) come from pycardano. The records
here describe chain state that pycardano does not model: tip, genesis and
protocol parameters, stake and pool information.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import cbor2

from .errors import ChainValueError


class Era(Enum):
    BYRON = "byron"
    SHELLEY = "shelley"
    ALLEGRA = "allegra"
    MARY = "mary"
    ALONZO = "alonzo"
    BABBAGE = "babbage"
    CONWAY = "conway"

    @classmethod
    def from_epoch(cls, epoch: int) -> "Era":
        """Era active at `epoch` on the mainnet hard-fork schedule."""
        for start, era in reversed(_MAINNET_ERA_STARTS):
            if epoch >= start:
                return era
        return cls.BYRON

    @classmethod
    def from_protocol_version(cls, major: int) -> "Era":
        """Era implied by a protocol major version; valid on every network."""
        for first_major, era in reversed(_PROTOCOL_MAJOR_STARTS):
            if major >= first_major:
                return era
        return cls.BYRON

    @classmethod
    def from_name(cls, name: str) -> "Era":
        """Parse an era name such as "Conway" or "ConwayEra"."""
        key = name.strip().lower()
        if key.endswith("era"):
            key = key[:-3]
        try:
            return cls(key)
        except ValueError:
            raise ChainValueError(f"Unknown era: {name}")

    @property
    def tag(self) -> str:
        """Capitalised name used in cardano-cli envelopes."""
        return self.value.capitalize()


_MAINNET_ERA_STARTS = [
    (0, Era.BYRON),
    (208, Era.SHELLEY),
    (236, Era.ALLEGRA),
    (251, Era.MARY),
    (290, Era.ALONZO),
    (365, Era.BABBAGE),
    (507, Era.CONWAY),
]

_PROTOCOL_MAJOR_STARTS = [
    (0, Era.BYRON),
    (2, Era.SHELLEY),
    (3, Era.ALLEGRA),
    (4, Era.MARY),
    (5, Era.ALONZO),
    (7, Era.BABBAGE),
    (9, Era.CONWAY),
]


@dataclass(frozen=True)
class ChainTip:
    slot: int
    epoch: int
    block: Optional[int] = None
    hash: Optional[str] = None
    era: Optional[Era] = None
    slot_in_epoch: Optional[int] = None
    slots_to_epoch_end: Optional[int] = None
    sync_progress: Optional[float] = None


@dataclass(frozen=True)
class GenesisParameters:
    active_slots_coefficient: float
    epoch_length: int
    max_kes_evolutions: int
    max_lovelace_supply: int
    network_id: str
    network_magic: int
    security_param: int
    slot_length: int
    slots_per_kes_period: int
    system_start: datetime
    update_quorum: int


@dataclass(frozen=True)
class ExecutionUnitPrices:
    price_memory: float = 0.0
    price_steps: float = 0.0


@dataclass(frozen=True)
class ExecutionUnitsLimit:
    memory: int = 0
    steps: int = 0


@dataclass(frozen=True)
class ProtocolVersion:
    major: int = 0
    minor: int = 0


@dataclass(frozen=True)
class PoolVotingThresholds:
    committee_no_confidence: float = 0.0
    committee_normal: float = 0.0
    hard_fork_initiation: float = 0.0
    motion_no_confidence: float = 0.0
    pp_security_group: float = 0.0


@dataclass(frozen=True)
class DRepVotingThresholds:
    committee_no_confidence: float = 0.0
    committee_normal: float = 0.0
    hard_fork_initiation: float = 0.0
    motion_no_confidence: float = 0.0
    pp_economic_group: float = 0.0
    pp_gov_group: float = 0.0
    pp_network_group: float = 0.0
    pp_technical_group: float = 0.0
    treasury_withdrawal: float = 0.0
    update_to_constitution: float = 0.0


@dataclass(frozen=True)
class ProtocolParameters:
    """
    Protocol parameters for one epoch.

    Ratio-valued fields are floats. Cost models map a language name
    (PlutusV1, PlutusV2, PlutusV3) to its ordered cost list.
    """
    tx_fee_per_byte: int = 0
    tx_fee_fixed: int = 0
    max_block_body_size: int = 0
    max_tx_size: int = 0
    max_block_header_size: int = 0
    stake_address_deposit: int = 0
    stake_pool_deposit: int = 0
    pool_retire_max_epoch: int = 0
    stake_pool_target_num: int = 0
    pool_pledge_influence: float = 0.0
    monetary_expansion: float = 0.0
    treasury_cut: float = 0.0
    protocol_version: ProtocolVersion = field(default_factory=ProtocolVersion)
    min_pool_cost: int = 0
    utxo_cost_per_byte: int = 0
    cost_models: Dict[str, List[int]] = field(default_factory=dict)
    execution_unit_prices: ExecutionUnitPrices = field(default_factory=ExecutionUnitPrices)
    max_tx_execution_units: ExecutionUnitsLimit = field(default_factory=ExecutionUnitsLimit)
    max_block_execution_units: ExecutionUnitsLimit = field(default_factory=ExecutionUnitsLimit)
    max_value_size: int = 0
    collateral_percentage: int = 0
    max_collateral_inputs: int = 0
    pool_voting_thresholds: PoolVotingThresholds = field(default_factory=PoolVotingThresholds)
    drep_voting_thresholds: DRepVotingThresholds = field(default_factory=DRepVotingThresholds)
    committee_min_size: int = 0
    committee_max_term_length: int = 0
    gov_action_lifetime: int = 0
    gov_action_deposit: int = 0
    drep_deposit: int = 0
    drep_activity: int = 0
    min_fee_ref_script_cost_per_byte: Optional[float] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "ProtocolParameters":
        """Decode the cardano-cli `query protocol-parameters` JSON shape."""
        try:
            prices = data.get("executionUnitPrices") or {}
            tx_units = data.get("maxTxExecutionUnits") or {}
            block_units = data.get("maxBlockExecutionUnits") or {}
            version = data.get("protocolVersion") or {}
            pvt = data.get("poolVotingThresholds") or {}
            dvt = data.get("dRepVotingThresholds") or {}
            return cls(
                tx_fee_per_byte=int(data.get("txFeePerByte", 0)),
                tx_fee_fixed=int(data.get("txFeeFixed", 0)),
                max_block_body_size=int(data.get("maxBlockBodySize", 0)),
                max_tx_size=int(data.get("maxTxSize", 0)),
                max_block_header_size=int(data.get("maxBlockHeaderSize", 0)),
                stake_address_deposit=int(data.get("stakeAddressDeposit", 0)),
                stake_pool_deposit=int(data.get("stakePoolDeposit", 0)),
                pool_retire_max_epoch=int(data.get("poolRetireMaxEpoch", 0)),
                stake_pool_target_num=int(data.get("stakePoolTargetNum", 0)),
                pool_pledge_influence=float(data.get("poolPledgeInfluence", 0)),
                monetary_expansion=float(data.get("monetaryExpansion", 0)),
                treasury_cut=float(data.get("treasuryCut", 0)),
                protocol_version=ProtocolVersion(
                    major=int(version.get("major", 0)),
                    minor=int(version.get("minor", 0)),
                ),
                min_pool_cost=int(data.get("minPoolCost", 0)),
                utxo_cost_per_byte=int(data.get("utxoCostPerByte") or 0),
                cost_models=_cost_models(data.get("costModels") or {}),
                execution_unit_prices=ExecutionUnitPrices(
                    price_memory=float(prices.get("priceMemory", 0)),
                    price_steps=float(prices.get("priceSteps", 0)),
                ),
                max_tx_execution_units=ExecutionUnitsLimit(
                    memory=int(tx_units.get("memory", 0)),
                    steps=int(tx_units.get("steps", 0)),
                ),
                max_block_execution_units=ExecutionUnitsLimit(
                    memory=int(block_units.get("memory", 0)),
                    steps=int(block_units.get("steps", 0)),
                ),
                max_value_size=int(data.get("maxValueSize") or 0),
                collateral_percentage=int(data.get("collateralPercentage") or 0),
                max_collateral_inputs=int(data.get("maxCollateralInputs") or 0),
                pool_voting_thresholds=PoolVotingThresholds(
                    committee_no_confidence=float(pvt.get("committeeNoConfidence", 0)),
                    committee_normal=float(pvt.get("committeeNormal", 0)),
                    hard_fork_initiation=float(pvt.get("hardForkInitiation", 0)),
                    motion_no_confidence=float(pvt.get("motionNoConfidence", 0)),
                    pp_security_group=float(pvt.get("ppSecurityGroup", 0)),
                ),
                drep_voting_thresholds=DRepVotingThresholds(
                    committee_no_confidence=float(dvt.get("committeeNoConfidence", 0)),
                    committee_normal=float(dvt.get("committeeNormal", 0)),
                    hard_fork_initiation=float(dvt.get("hardForkInitiation", 0)),
                    motion_no_confidence=float(dvt.get("motionNoConfidence", 0)),
                    pp_economic_group=float(dvt.get("ppEconomicGroup", 0)),
                    pp_gov_group=float(dvt.get("ppGovGroup", 0)),
                    pp_network_group=float(dvt.get("ppNetworkGroup", 0)),
                    pp_technical_group=float(dvt.get("ppTechnicalGroup", 0)),
                    treasury_withdrawal=float(dvt.get("treasuryWithdrawal", 0)),
                    update_to_constitution=float(dvt.get("updateToConstitution", 0)),
                ),
                committee_min_size=int(data.get("committeeMinSize") or 0),
                committee_max_term_length=int(data.get("committeeMaxTermLength") or 0),
                gov_action_lifetime=int(data.get("govActionLifetime") or 0),
                gov_action_deposit=int(data.get("govActionDeposit") or 0),
                drep_deposit=int(data.get("dRepDeposit") or 0),
                drep_activity=int(data.get("dRepActivity") or 0),
                min_fee_ref_script_cost_per_byte=(
                    float(data["minFeeRefScriptCostPerByte"])
                    if data.get("minFeeRefScriptCostPerByte") is not None else None
                ),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid protocol parameters: {e}") from e


def _cost_models(raw: Dict[str, Any]) -> Dict[str, List[int]]:
    """Cost models keep their wire order; dict-shaped models use value order."""
    models = {}
    for language, costs in raw.items():
        values = costs.values() if isinstance(costs, dict) else costs
        models[language] = [int(v) for v in values]
    return models


@dataclass(frozen=True)
class StakeAddressInfo:
    address: str
    reward_account_balance: int
    active: Optional[bool] = None
    delegation_deposit: int = 0
    stake_delegation: Optional[str] = None
    vote_delegation: Optional[str] = None


# Pool relays
@dataclass(frozen=True)
class SingleHostAddr:
    port: Optional[int] = None
    ipv4: Optional[str] = None
    ipv6: Optional[str] = None

@dataclass(frozen=True)
class SingleHostName:
    dns_name: str
    port: Optional[int] = None

@dataclass(frozen=True)
class MultiHostName:
    dns_name: str


Relay = Union[SingleHostAddr, SingleHostName, MultiHostName]


@dataclass(frozen=True)
class PoolMetadata:
    url: str
    hash: str


@dataclass(frozen=True)
class PoolParams:
    """Registered parameters of a stake pool. Hashes are hex encoded."""
    operator: str
    vrf_key_hash: str
    pledge: int
    cost: int
    margin: Fraction
    reward_account: str
    owners: frozenset = frozenset()
    relays: Tuple[Relay, ...] = ()
    metadata: Optional[PoolMetadata] = None


@dataclass(frozen=True)
class KESPeriodInfo:
    on_chain_op_cert_count: Optional[int] = None
    on_disk_op_cert_count: Optional[int] = None
    next_chain_op_cert_count: Optional[int] = None
    on_disk_kes_start: Optional[int] = None

    @classmethod
    def from_counter(
        cls,
        on_chain_op_cert_count: int,
        op_cert: Optional["OperationalCertificate"] = None,
    ) -> "KESPeriodInfo":
        """Build from the on-chain counter and an optional on-disk certificate."""
        return cls(
            on_chain_op_cert_count=on_chain_op_cert_count,
            on_disk_op_cert_count=op_cert.sequence_number if op_cert else None,
            next_chain_op_cert_count=on_chain_op_cert_count + 1,
            on_disk_kes_start=op_cert.kes_period if op_cert else None,
        )


@dataclass(frozen=True)
class OperationalCertificate:
    """Stake pool operational certificate (node.cert)."""
    hot_vkey: bytes
    sequence_number: int
    kes_period: int
    sigma: bytes

    @classmethod
    def from_cbor_hex(cls, cbor_hex: str) -> "OperationalCertificate":
        try:
            decoded = cbor2.loads(bytes.fromhex(cbor_hex))
            body = decoded[0]
            return cls(
                hot_vkey=bytes(body[0]),
                sequence_number=int(body[1]),
                kes_period=int(body[2]),
                sigma=bytes(body[3]),
            )
        except (cbor2.CBORDecodeError, IndexError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid operational certificate: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path]) -> "OperationalCertificate":
        """Load from a cardano-cli text envelope file."""
        envelope = json.loads(Path(path).read_text())
        if "cborHex" not in envelope:
            raise ChainValueError(f"No cborHex in operational certificate file: {path}")
        return cls.from_cbor_hex(envelope["cborHex"])
