"""Chain context that drives a local cardano-cli against a node socket."""

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import cbor2
from cachetools import TTLCache
from pycardano import ExecutionUnits, NativeScript, RawPlutusData, TransactionId, UTxO

from ..context import ChainContext
from ..errors import (
    CardanoCliError,
    ChainValueError,
    InvalidArgumentError,
    TransactionFailedError,
)
from ..network import MAINNET, Network
from ..types import ChainTip, Era, GenesisParameters, ProtocolParameters, StakeAddressInfo
from ..utils import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    Script,
    build_value,
    make_utxo,
    parse_iso8601,
    plutus_script_from_type,
    with_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_REFETCH_CHAIN_TIP_INTERVAL = 1000.0
DEFAULT_CACHE_TTL = 1.0
DEFAULT_UTXO_CACHE_SIZE = 10000

_CLI_SCRIPT_TYPES = {
    "PlutusScriptV1": "plutusV1",
    "PlutusScriptV2": "plutusV2",
    "PlutusScriptV3": "plutusV3",
}


class CardanoCliChainContext(ChainContext):
    """
    Chain context backed by the cardano-cli binary.

    Every call spawns one cardano-cli process with CARDANO_NODE_SOCKET_PATH
    set for that process only. Genesis parameters are read from the node
    configuration's Shelley genesis file.

    Pass `refetch_chain_tip_interval=None` to derive it from genesis as
    slot length / active slot coefficient (the expected block interval).
    """

    def __init__(
        self,
        binary: Optional[Union[str, Path]] = None,
        socket: Optional[Union[str, Path]] = None,
        config_file: Optional[Union[str, Path]] = None,
        network: Network = MAINNET,
        refetch_chain_tip_interval: Optional[float] = DEFAULT_REFETCH_CHAIN_TIP_INTERVAL,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        utxo_cache_size: int = DEFAULT_UTXO_CACHE_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.network = network
        self.binary = str(binary or os.environ.get("CARDANO_CLI_PATH") or "cardano-cli")

        socket = socket or os.environ.get("CARDANO_NODE_SOCKET_PATH")
        if not socket:
            raise InvalidArgumentError("cardano-node socket path is required")
        self.socket = Path(socket)
        if not self.socket.exists():
            raise InvalidArgumentError(f"cardano-node socket not found: {self.socket}")

        config_file = config_file or os.environ.get("CARDANO_NODE_CONFIG")
        self.config_file = Path(config_file) if config_file else None

        self._env = dict(os.environ, CARDANO_NODE_SOCKET_PATH=str(self.socket))
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

    # ===================
    # Process handling
    # ===================

    async def _run(self, args: List[str]) -> str:
        """Run cardano-cli once and return stdout. The child is killed if the caller is cancelled."""
        logger.debug(f"Running {self.binary} {' '.join(args)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
        except OSError as e:
            raise CardanoCliError(f"Failed to start {self.binary}: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            raise CardanoCliError(f"cardano-cli {' '.join(args[:2])} failed: {message}")
        return stdout.decode().strip()

    async def _query(self, *args: str) -> str:
        cmd = list(args) + self.network.arguments
        return await with_retry(lambda: self._run(cmd), self.max_attempts, self.base_delay)

    async def _query_json(self, *args: str) -> Any:
        output = await self._query(*args)
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise ChainValueError(f"cardano-cli {args[0]} {args[1]} returned invalid JSON: {e}") from e

    async def version(self) -> str:
        return await with_retry(lambda: self._run(["version"]), self.max_attempts, self.base_delay)

    # ===================
    # Tip and epoch
    # ===================

    async def _query_tip(self) -> Dict[str, Any]:
        return await self._query_json("query", "tip")

    async def query_chain_tip(self) -> ChainTip:
        tip = await self._query_tip()
        try:
            return ChainTip(
                slot=int(tip["slot"]),
                epoch=int(tip["epoch"]),
                block=tip.get("block"),
                hash=tip.get("hash"),
                era=Era.from_name(tip["era"]) if tip.get("era") else None,
                slot_in_epoch=tip.get("slotInEpoch"),
                slots_to_epoch_end=tip.get("slotsToEpochEnd"),
                sync_progress=float(tip["syncProgress"]) if tip.get("syncProgress") is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid cardano-cli tip: {e}") from e

    async def _refetch_interval(self) -> float:
        if self.refetch_chain_tip_interval is None:
            genesis = await self.genesis_parameters()
            self.refetch_chain_tip_interval = genesis.slot_length / genesis.active_slots_coefficient
            logger.debug(f"Chain tip refetch interval set to {self.refetch_chain_tip_interval}s")
        return self.refetch_chain_tip_interval

    async def _check_epoch_and_update(self) -> bool:
        now = self._timer()
        interval = await self._refetch_interval()
        if (
            self._epoch is not None
            and self._last_chain_tip_fetch is not None
            and now - self._last_chain_tip_fetch < interval
        ):
            return False
        tip = await self.query_chain_tip()
        self._last_chain_tip_fetch = now
        advanced = tip.epoch != self._epoch
        self._epoch = tip.epoch
        return advanced

    async def epoch(self) -> int:
        await self._check_epoch_and_update()
        return self._epoch

    async def last_block_slot(self) -> int:
        if "lastBlockSlot" in self._tip_cache:
            return self._tip_cache["lastBlockSlot"]
        slot = (await self.query_chain_tip()).slot
        self._tip_cache["lastBlockSlot"] = slot
        return slot

    async def era(self) -> Era:
        tip = await self.query_chain_tip()
        if tip.era is None:
            raise ChainValueError("cardano-cli tip has no era")
        return tip.era

    # ===================
    # Parameters
    # ===================

    async def genesis_parameters(self) -> GenesisParameters:
        if self._genesis_param is None:
            self._genesis_param = self._load_genesis()
        return self._genesis_param

    def _load_genesis(self) -> GenesisParameters:
        if self.config_file is None:
            raise InvalidArgumentError("cardano-node config file is required for genesis parameters")
        try:
            config = json.loads(self.config_file.read_text())
            genesis_path = self.config_file.parent / config["ShelleyGenesisFile"]
            genesis = json.loads(genesis_path.read_text())
            return GenesisParameters(
                active_slots_coefficient=float(genesis["activeSlotsCoeff"]),
                epoch_length=int(genesis["epochLength"]),
                max_kes_evolutions=int(genesis["maxKESEvolutions"]),
                max_lovelace_supply=int(genesis["maxLovelaceSupply"]),
                network_id=str(genesis.get("networkId", self.network)),
                network_magic=int(genesis["networkMagic"]),
                security_param=int(genesis["securityParam"]),
                slot_length=int(genesis["slotLength"]),
                slots_per_kes_period=int(genesis["slotsPerKESPeriod"]),
                system_start=parse_iso8601(genesis["systemStart"]),
                update_quorum=int(genesis["updateQuorum"]),
            )
        except OSError as e:
            raise InvalidArgumentError(f"Cannot read node configuration: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid Shelley genesis: {e}") from e

    async def protocol_parameters(self) -> ProtocolParameters:
        await self._check_epoch_and_update()
        if self._protocol_param is None or self._protocol_param_epoch != self._epoch:
            params = await self._query_json("query", "protocol-parameters")
            self._protocol_param = ProtocolParameters.from_json(params)
            self._protocol_param_epoch = self._epoch
            logger.debug(f"Protocol parameters refreshed for epoch {self._epoch}")
        return self._protocol_param

    # ===================
    # UTxOs
    # ===================

    @staticmethod
    def _get_script(reference_script: Dict[str, Any]) -> Script:
        script = reference_script.get("script") or {}
        script_type = script.get("type")
        if not script.get("cborHex"):
            raise ChainValueError("Reference script has no cborHex")
        raw = bytes.fromhex(script["cborHex"])
        if script_type in _CLI_SCRIPT_TYPES:
            # Text envelopes wrap Plutus scripts in one CBOR byte string
            unwrapped = cbor2.loads(raw)
            return plutus_script_from_type(_CLI_SCRIPT_TYPES[script_type], unwrapped)
        return NativeScript.from_cbor(raw)

    def _parse_utxo(self, key: str, entry: Dict[str, Any]) -> Optional[UTxO]:
        tx_hash, _, index = key.partition("#")
        if not index.isdigit():
            logger.debug(f"Skipping UTxO with unparseable key {key}")
            return None

        value = dict(entry["value"])
        coin = value.pop("lovelace", 0)
        assets = {policy: names for policy, names in value.items() if isinstance(names, dict)}

        inline = entry.get("inlineDatumRaw") or entry.get("datum")
        if inline is None and entry.get("inlineDatum") is not None:
            inline = RawPlutusData.from_dict(entry["inlineDatum"])

        script = None
        if entry.get("referenceScript"):
            script = self._get_script(entry["referenceScript"])

        return make_utxo(
            tx_hash,
            int(index),
            entry["address"],
            build_value(int(coin), assets),
            datum_hash=entry.get("datumhash"),
            inline_datum=inline,
            script=script,
        )

    async def utxos(self, address: str) -> List[UTxO]:
        key = f"{await self.last_block_slot()}:{address}"
        if key in self._utxo_cache:
            logger.debug(f"UTxO cache hit for {key}")
            return list(self._utxo_cache[key])

        result = await self._query_json("query", "utxo", "--address", address, "--out-file", "/dev/stdout")
        try:
            utxos = [u for u in (self._parse_utxo(k, v) for k, v in result.items()) if u is not None]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid cardano-cli UTxO for {address}: {e}") from e
        self._utxo_cache[key] = utxos
        return list(utxos)

    # ===================
    # Transactions
    # ===================

    async def _run_with_latest(self, args: List[str]) -> str:
        """Run a transaction subcommand, falling back to the `latest` command group."""
        try:
            return await self._run(args)
        except CardanoCliError as e:
            logger.debug(f"Legacy command failed ({e.message}); retrying with `latest`")
            return await self._run(["latest"] + args)

    async def submit_tx_cbor(self, cbor: bytes) -> TransactionId:
        era = await self.era()
        envelope = {
            "type": f"Witnessed Tx {era.tag}Era",
            "description": "Generated by cardano-chain-context",
            "cborHex": cbor.hex(),
        }
        fd, path = tempfile.mkstemp(suffix=".signed")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(envelope, f)

            try:
                await self._run_with_latest(
                    ["transaction", "submit", "--tx-file", path] + self.network.arguments
                )
            except CardanoCliError as e:
                raise TransactionFailedError(f"Failed to submit transaction: {e.message}") from e

            try:
                output = await self._run_with_latest(["transaction", "txid", "--tx-file", path])
            except CardanoCliError as e:
                raise ChainValueError(f"Unable to get transaction id for {path}: {e.message}") from e
        finally:
            os.unlink(path)

        # Newer releases print {"txhash": ...}
        if output.startswith("{"):
            output = json.loads(output)["txhash"]
        logger.info(f"Submitted transaction {output}")
        return TransactionId.from_primitive(output)

    async def evaluate_tx_cbor(self, cbor: bytes) -> Dict[str, ExecutionUnits]:
        raise CardanoCliError("Transaction evaluation is not supported by cardano-cli")

    async def stake_address_info(self, address: str) -> List[StakeAddressInfo]:
        result = await self._query_json(
            "query", "stake-address-info", "--address", address, "--out-file", "/dev/stdout"
        )
        try:
            return [
                StakeAddressInfo(
                    address=state.get("address", address),
                    reward_account_balance=int(state.get("rewardAccountBalance") or 0),
                    active=True,
                    delegation_deposit=int(state.get("delegationDeposit") or 0),
                    stake_delegation=state.get("stakeDelegation"),
                    vote_delegation=state.get("voteDelegation"),
                )
                for state in result
            ]
        except (AttributeError, TypeError, ValueError) as e:
            raise ChainValueError(f"Invalid stake address info: {e}") from e
