"""Blockfrost adapter tests against an in-memory stand-in for BlockFrostApi."""

import time
from types import SimpleNamespace

import pytest
from blockfrost import ApiError, BlockFrostApi
from pycardano import PlutusV2Script, script_hash

from cardano_chain.backends.blockfrost import BlockFrostChainContext
from cardano_chain.errors import (
    BlockfrostError,
    InvalidArgumentError,
    TransactionFailedError,
    UnsupportedNetworkError,
)
from cardano_chain.network import GUILDNET, PREPROD
from cardano_chain.types import Era

TEST_ADDRESS = (
    "addr_test1qp4kux2v7xcg9urqssdffff5p0axz9e3hcc43zz7pcuyle0e20hkwsu2ndpd9dh9anm4jn76ljdz0evj22stzrw9egxqmza5y3"
)
TX_ID = "39a7a284c2a0948189dc45dec670211cd4d72f7b66c5726c08d9b3df11e44d58"
POLICY = "a0" * 28


def api_error(status_code, message="error"):
    response = SimpleNamespace(
        status_code=status_code,
        json=lambda: {"status_code": status_code, "error": "Error", "message": message},
    )
    return ApiError(response)


class FakeBlockfrostApi:
    """Answers SDK method calls from a dict; a callable or exception entry is invoked/raised."""

    def __init__(self, **responses):
        unknown = [name for name in responses if not hasattr(BlockFrostApi, name)]
        assert not unknown, f"BlockFrostApi has no method(s) {unknown}"
        self.responses = responses
        self.calls = []

    def __getattr__(self, method):
        if method not in self.responses:
            raise AttributeError(method)

        def call(*args, **kwargs):
            self.calls.append((method, args, kwargs))
            response = self.responses[method]
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(*args, **kwargs)
            return response

        return call

    def count(self, method):
        return len([c for c in self.calls if c[0] == method])


GENESIS = {
    "active_slots_coefficient": 0.05,
    "update_quorum": 5,
    "max_lovelace_supply": "45000000000000000",
    "network_magic": 1,
    "epoch_length": 432000,
    "system_start": 1654041600,
    "slots_per_kes_period": 129600,
    "slot_length": 1,
    "max_kes_evolutions": 62,
    "security_param": 2160,
}

PARAMS = {
    "epoch": 150,
    "min_fee_a": 44,
    "min_fee_b": 155381,
    "max_block_size": 90112,
    "max_tx_size": 16384,
    "max_block_header_size": 1100,
    "key_deposit": "2000000",
    "pool_deposit": "500000000",
    "e_max": 18,
    "n_opt": 500,
    "a0": 0.3,
    "rho": 0.003,
    "tau": 0.2,
    "protocol_major_ver": 9,
    "protocol_minor_ver": 1,
    "min_pool_cost": "170000000",
    "price_mem": 0.0577,
    "price_step": 0.0000721,
    "max_tx_ex_mem": "14000000",
    "max_tx_ex_steps": "10000000000",
    "max_block_ex_mem": "62000000",
    "max_block_ex_steps": "20000000000",
    "max_val_size": "5000",
    "collateral_percent": 150,
    "max_collateral_inputs": 3,
    "coins_per_utxo_size": "4310",
    "cost_models": {"PlutusV1": {"addInteger-cpu-arguments-intercept": 205665}},
    "cost_models_raw": {"PlutusV1": [205665, 812]},
    "pvtpp_security_group": 0.51,
    "dvt_p_p_gov_group": 0.75,
    "drep_deposit": "500000000",
    "min_fee_ref_script_cost_per_byte": 15,
}


def make_context(**responses):
    defaults = {
        "epoch_latest": {"epoch": 150, "end_time": int(time.time()) + 3600},
        "epoch_latest_parameters": PARAMS,
        "genesis": GENESIS,
    }
    defaults.update(responses)
    api = FakeBlockfrostApi(**defaults)
    return BlockFrostChainContext(network=PREPROD, api=api, max_attempts=2, base_delay=0), api


def test_requires_project_id(monkeypatch):
    monkeypatch.delenv("BLOCKFROST_PROJECT_ID", raising=False)
    with pytest.raises(InvalidArgumentError):
        BlockFrostChainContext(network=PREPROD)


def test_rejects_networks_without_endpoint():
    with pytest.raises(UnsupportedNetworkError):
        BlockFrostChainContext("project", network=GUILDNET)


@pytest.mark.asyncio
async def test_utxos_single_entry():
    context, api = make_context(address_utxos=[{
        "address": TEST_ADDRESS,
        "tx_hash": TX_ID,
        "output_index": 0,
        "amount": [{"unit": "lovelace", "quantity": "1000000"}],
        "block": "b" * 64,
        "data_hash": None,
        "inline_datum": None,
        "reference_script_hash": None,
    }])

    utxos = await context.utxos(TEST_ADDRESS)

    assert len(utxos) == 1
    assert utxos[0].input.transaction_id.payload.hex() == TX_ID
    assert utxos[0].input.index == 0
    assert utxos[0].output.amount.coin == 1000000
    assert not utxos[0].output.amount.multi_asset
    assert api.calls[0][2]["gather_pages"] is True


@pytest.mark.asyncio
async def test_utxos_with_assets_datum_and_reference_script():
    script = PlutusV2Script(b"\x4e\x4d\x01\x00\x00\x33\x22\x22\x00\x05\x12\x00\x12\x00\x11")
    hash_hex = script_hash(script).payload.hex()
    context, _ = make_context(
        address_utxos=[{
            "address": TEST_ADDRESS,
            "tx_hash": TX_ID,
            "output_index": 1,
            "amount": [
                {"unit": "lovelace", "quantity": "2000000"},
                {"unit": POLICY + "68656c6c6f", "quantity": "10"},
            ],
            "data_hash": "11" * 32,
            "inline_datum": "d87980",
            "reference_script_hash": hash_hex,
        }],
        script={"script_hash": hash_hex, "type": "plutusV2"},
        script_cbor={"cbor": bytes(script).hex()},
    )

    [utxo] = await context.utxos(TEST_ADDRESS)

    assert utxo.output.amount.coin == 2000000
    assert len(utxo.output.amount.multi_asset) == 1
    assert utxo.output.datum is not None
    assert utxo.output.datum_hash is None
    assert script_hash(utxo.output.script).payload.hex() == hash_hex


@pytest.mark.asyncio
async def test_utxos_unknown_address_is_empty():
    context, _ = make_context(address_utxos=api_error(404, "The requested component has not been found."))
    assert await context.utxos(TEST_ADDRESS) == []


@pytest.mark.asyncio
async def test_utxos_failure_after_retries():
    context, api = make_context(address_utxos=api_error(500))
    with pytest.raises(BlockfrostError):
        await context.utxos(TEST_ADDRESS)
    assert api.count("address_utxos") == 2


@pytest.mark.asyncio
async def test_protocol_parameters_cached_within_epoch():
    context, api = make_context()

    params = await context.protocol_parameters()
    again = await context.protocol_parameters()

    assert params is again
    assert api.count("epoch_latest_parameters") == 1
    assert params.tx_fee_per_byte == 44
    assert params.stake_address_deposit == 2000000
    assert params.cost_models["PlutusV1"] == [205665, 812]
    assert params.pool_voting_thresholds.pp_security_group == pytest.approx(0.51)
    assert params.protocol_version.major == 9
    assert await context.era() is Era.CONWAY


@pytest.mark.asyncio
async def test_protocol_parameters_refetched_after_epoch_end():
    context, api = make_context(epoch_latest={"epoch": 150, "end_time": 0})
    await context.protocol_parameters()
    await context.protocol_parameters()
    assert api.count("epoch_latest_parameters") == 2


@pytest.mark.asyncio
async def test_genesis_cached_permanently():
    context, api = make_context()
    genesis = await context.genesis_parameters()
    await context.genesis_parameters()
    assert api.count("genesis") == 1
    assert genesis.network_magic == 1
    assert genesis.max_lovelace_supply == 45000000000000000
    assert genesis.system_start.year == 2022


@pytest.mark.asyncio
async def test_chain_tip():
    context, _ = make_context(block_latest={
        "slot": 51234567, "epoch": 150, "height": 2100000, "hash": "c" * 64, "epoch_slot": 12345,
    })
    tip = await context.query_chain_tip()
    assert tip.slot == 51234567
    assert tip.epoch == 150
    assert tip.block == 2100000
    assert tip.era is Era.CONWAY
    assert await context.last_block_slot() == 51234567


@pytest.mark.asyncio
async def test_submit_is_not_retried():
    context, api = make_context(transaction_submit_cbor=api_error(400, "BadInputsUTxO"))
    with pytest.raises(TransactionFailedError, match="BadInputsUTxO"):
        await context.submit_tx_cbor(b"\x84")
    assert api.count("transaction_submit_cbor") == 1


@pytest.mark.asyncio
async def test_submit_returns_transaction_id():
    context, _ = make_context(transaction_submit_cbor=TX_ID)
    tx_id = await context.submit_tx_cbor(b"\x84")
    assert tx_id.payload.hex() == TX_ID


@pytest.mark.asyncio
async def test_evaluate():
    context, _ = make_context(transaction_evaluate_cbor={
        "type": "jsonwsp/response",
        "result": {"EvaluationResult": {"spend:0": {"memory": 1700, "steps": 476468}}},
    })
    units = await context.evaluate_tx_cbor(b"\x84")
    assert units["spend:0"].mem == 1700
    assert units["spend:0"].steps == 476468


@pytest.mark.asyncio
async def test_evaluate_failure():
    context, _ = make_context(transaction_evaluate_cbor={
        "result": {"EvaluationFailure": {"ScriptFailures": {}}},
    })
    with pytest.raises(BlockfrostError):
        await context.evaluate_tx_cbor(b"\x84")


@pytest.mark.asyncio
async def test_stake_address_info():
    context, _ = make_context(accounts={
        "stake_address": "stake_test1uz...",
        "active": True,
        "withdrawable_amount": "5000000",
        "pool_id": "pool1pu5jlj4q9w9jlxeu370a3c9myx47md5j5m2str0naunn2q3lkdy",
        "drep_id": None,
    })
    [info] = await context.stake_address_info("stake_test1uz...")
    assert info.reward_account_balance == 5000000
    assert info.active is True
    assert info.stake_delegation.startswith("pool1")


@pytest.mark.asyncio
async def test_stake_address_info_unregistered():
    context, _ = make_context(accounts=api_error(404))
    assert await context.stake_address_info("stake_test1uz...") == []


@pytest.mark.parametrize("method", [
    "epoch_latest",
    "epoch_latest_parameters",
    "block_latest",
    "genesis",
    "address_utxos",
    "script",
    "script_json",
    "script_cbor",
    "accounts",
    "transaction_submit_cbor",
    "transaction_evaluate_cbor",
])
def test_adapter_uses_sdk_methods(method):
    assert callable(getattr(BlockFrostApi, method))


@pytest.mark.asyncio
async def test_submit_passes_cbor_bytes():
    context, api = make_context(transaction_submit_cbor=TX_ID)
    await context.submit_tx_cbor(b"\x84\xa4")
    [(_, args, kwargs)] = [c for c in api.calls if c[0] == "transaction_submit_cbor"]
    assert args == (b"\x84\xa4",)
    assert kwargs == {"return_type": "json"}
