"""Shared helpers: retry executor, asset units, ratios, bech32 ids, scripts."""

import asyncio
import logging
import random
from datetime import datetime, timezone
from fractions import Fraction
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

import cbor2
from pycardano import (
    Address,
    Asset,
    AssetName,
    DatumHash,
    MultiAsset,
    NativeScript,
    PlutusV1Script,
    PlutusV2Script,
    PlutusV3Script,
    RawCBOR,
    ScriptHash,
    TransactionId,
    TransactionInput,
    TransactionOutput,
    UTxO,
    Value,
    script_hash,
)
from pycardano.crypto import bech32

from .errors import ChainValueError, OperationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY = 0.2

POLICY_ID_HEX_LENGTH = 56

Script = Union[NativeScript, PlutusV1Script, PlutusV2Script, PlutusV3Script]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
) -> T:
    """
    Run `operation` until it succeeds or the attempt budget is spent.

    Every failure is retried. Between attempts the delay grows as
    ``base_delay * 2**attempt`` plus up to half of that again as jitter.
    When all attempts fail the last error is re-raised unchanged.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(max_attempts):
        try:
            return await operation()
        except Exception as e:
            last_error = e
            if attempt == max_attempts - 1:
                break
            delay = base_delay * 2 ** attempt
            delay += random.uniform(0, delay / 2)
            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed: {e!r}; retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    if last_error is not None:
        raise last_error
    raise OperationError("Operation failed without running any attempt.")


# ===================
# Asset names and units
# ===================

def convert_asset_name_ascii_to_hex(name: str) -> str:
    return name.encode("utf-8").hex()


def convert_asset_name_hex_to_ascii(name_hex: str) -> str:
    try:
        return bytes.fromhex(name_hex).decode("utf-8")
    except ValueError as e:
        raise ChainValueError(f"Asset name is not valid hex text: {name_hex}") from e


def split_unit(unit: str) -> Tuple[str, str]:
    """Split an asset unit into (policy id hex, asset name hex)."""
    if len(unit) < POLICY_ID_HEX_LENGTH:
        raise ChainValueError(f"Asset unit too short: {unit}")
    return unit[:POLICY_ID_HEX_LENGTH], unit[POLICY_ID_HEX_LENGTH:]


def build_value(coin: int, assets: Dict[str, Dict[str, int]]) -> Value:
    """
    Build a Value from lovelace and a {policy hex: {name hex: qty}} mapping.

    Policies left with no assets are dropped.
    """
    multi_asset = MultiAsset()
    try:
        for policy_hex, names in assets.items():
            asset = Asset()
            for name_hex, quantity in names.items():
                asset[AssetName(bytes.fromhex(name_hex))] = int(quantity)
            if asset:
                multi_asset[ScriptHash(bytes.fromhex(policy_hex))] = asset
    except (TypeError, ValueError) as e:
        raise ChainValueError(f"Invalid multi-asset entry: {e}") from e
    if not multi_asset:
        return Value(int(coin))
    return Value(int(coin), multi_asset)


def group_units(amounts) -> Tuple[int, Dict[str, Dict[str, int]]]:
    """Fold (unit, quantity) pairs into lovelace and a policy mapping."""
    coin = 0
    assets: Dict[str, Dict[str, int]] = {}
    for unit, quantity in amounts:
        if unit == "lovelace":
            coin += int(quantity)
            continue
        policy_hex, name_hex = split_unit(unit)
        names = assets.setdefault(policy_hex, {})
        names[name_hex] = names.get(name_hex, 0) + int(quantity)
    return coin, assets


# ===================
# Numbers and time
# ===================

def parse_ratio(value: Union[str, int, float]) -> Fraction:
    """Parse "numerator/denominator" (or a plain number) into a Fraction."""
    try:
        if isinstance(value, str) and "/" in value:
            numerator, denominator = value.split("/", 1)
            return Fraction(int(numerator), int(denominator))
        return Fraction(str(value))
    except (ValueError, ZeroDivisionError) as e:
        raise ChainValueError(f"Invalid ratio: {value}") from e


def parse_int(value, field: str) -> int:
    """Strictly parse an integer that may arrive as a string."""
    if value is None:
        raise ChainValueError(f"Missing field: {field}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ChainValueError(f"Field {field} is not an integer: {value!r}") from e


def parse_float(value, field: str) -> float:
    if value is None:
        raise ChainValueError(f"Missing field: {field}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ChainValueError(f"Field {field} is not a number: {value!r}") from e


def parse_iso8601(value: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise ChainValueError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ===================
# Bech32 pool ids
# ===================

def pool_id_to_hex(pool_id: str) -> str:
    """Decode a bech32 pool id (pool1...) to its hex key hash. Hex passes through."""
    if not pool_id.startswith("pool1"):
        try:
            bytes.fromhex(pool_id)
            return pool_id.lower()
        except ValueError:
            raise ChainValueError(f"Invalid pool id: {pool_id}")
    decoded = bech32.decode(pool_id)
    if decoded is None:
        raise ChainValueError(f"Invalid pool id: {pool_id}")
    return bytes(decoded).hex()


def pool_id_to_bech32(pool_hex: str) -> str:
    return bech32.encode("pool", bytes.fromhex(pool_hex))


# ===================
# Scripts
# ===================

def verify_script(script: Script, expected_hash: str) -> Script:
    """
    Return `script` (or an equivalent re-wrapping of its bytes) whose hash
    equals `expected_hash`.

    Providers disagree on how many CBOR byte-string layers wrap a Plutus
    script. The bytes are tried as given, with one layer removed, then with
    one layer added.
    """
    if script_hash(script).payload.hex() == expected_hash:
        return script
    if isinstance(script, NativeScript):
        raise ChainValueError(f"Script hash mismatch for {expected_hash}")

    raw = bytes(script)
    candidates = [cbor2.dumps(raw)]
    try:
        unwrapped = cbor2.loads(raw)
        if isinstance(unwrapped, bytes):
            candidates.insert(0, unwrapped)
    except (cbor2.CBORDecodeError, ValueError):
        pass

    for candidate in candidates:
        variant = type(script)(candidate)
        if script_hash(variant).payload.hex() == expected_hash:
            logger.debug(f"Script {expected_hash} matched after re-wrapping")
            return variant
    raise ChainValueError(f"Script hash mismatch for {expected_hash}")


_PLUTUS_SCRIPT_TYPES = {
    "plutusV1": PlutusV1Script,
    "plutusV2": PlutusV2Script,
    "plutusV3": PlutusV3Script,
}


def plutus_script_from_type(script_type: str, script_bytes: bytes) -> Script:
    """Build a Plutus script from a provider type name such as "plutusV2"."""
    key = script_type.replace("_", "").lower()
    for name, cls in _PLUTUS_SCRIPT_TYPES.items():
        if name.lower() == key:
            return cls(script_bytes)
    raise ChainValueError(f"Unknown script type: {script_type}")


# ===================
# UTxOs
# ===================

def make_utxo(
    tx_hash: str,
    index: int,
    address: str,
    amount: Value,
    datum_hash: Optional[str] = None,
    inline_datum=None,
    script: Optional[Script] = None,
) -> UTxO:
    """
    Assemble a UTxO. An inline datum wins over a datum hash; the hash is only
    kept when no inline datum is present.

    `inline_datum` may be CBOR hex, raw CBOR bytes or a decoded datum object.
    """
    datum = None
    if isinstance(inline_datum, str):
        datum = RawCBOR(bytes.fromhex(inline_datum))
    elif isinstance(inline_datum, (bytes, bytearray)):
        datum = RawCBOR(bytes(inline_datum))
    elif inline_datum is not None:
        datum = inline_datum

    try:
        tx_in = TransactionInput(TransactionId(bytes.fromhex(tx_hash)), int(index))
        tx_out = TransactionOutput(
            Address.from_primitive(address),
            amount,
            datum_hash=DatumHash(bytes.fromhex(datum_hash)) if datum_hash and datum is None else None,
            datum=datum,
            script=script,
        )
    except (TypeError, ValueError) as e:
        raise ChainValueError(f"Invalid UTxO {tx_hash}#{index}: {e}") from e
    return UTxO(tx_in, tx_out)
