"""Ogmios adapter tests: parsing, epoch-scoped parameters and TTL caches."""

from fractions import Fraction

import pytest
from pycardano import Address
from pycardano import Network as NetworkId

from cardano_chain.backends.ogmios import OgmiosChainContext
from cardano_chain.errors import (
    InvalidArgumentError,
    OgmiosConnectionError,
    OgmiosQueryError,
    TransactionFailedError,
)
from cardano_chain.network import MAINNET, PREVIEW
from cardano_chain.types import Era, MultiHostName, SingleHostAddr, SingleHostName

TEST_ADDRESS = (
    "addr_test1qp4kux2v7xcg9urqssdffff5p0axz9e3hcc43zz7pcuyle0e20hkwsu2ndpd9dh9anm4jn76ljdz0evj22stzrw9egxqmza5y3"
)
TX_ID = "39a7a284c2a0948189dc45dec670211cd4d72f7b66c5726c08d9b3df11e44d58"
POLICY = "a0" * 28
POOL_ID = "pool1pu5jlj4q9w9jlxeu370a3c9myx47md5j5m2str0naunn2q3lkdy"


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeOgmiosClient:
    """Answers JSON-RPC methods from a dict; callables receive the params."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []
        self.disconnected = False

    async def request(self, method, params=None):
        self.calls.append((method, params))
        response = self.responses[method]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response

    async def disconnect(self):
        self.disconnected = True

    def count(self, method):
        return len([c for c in self.calls if c[0] == method])


PROTOCOL_PARAMETERS = {
    "minFeeCoefficient": 44,
    "minFeeConstant": {"ada": {"lovelace": 155381}},
    "maxBlockBodySize": {"bytes": 90112},
    "maxBlockHeaderSize": {"bytes": 1100},
    "maxTransactionSize": {"bytes": 16384},
    "stakeCredentialDeposit": {"ada": {"lovelace": 2000000}},
    "stakePoolDeposit": {"ada": {"lovelace": 500000000}},
    "stakePoolRetirementEpochBound": 18,
    "desiredNumberOfStakePools": 500,
    "stakePoolPledgeInfluence": "3/10",
    "monetaryExpansion": "3/1000",
    "treasuryExpansion": "1/5",
    "minStakePoolCost": {"ada": {"lovelace": 170000000}},
    "minUtxoDepositCoefficient": 4310,
    "plutusCostModels": {"plutus:v1": [205665, 812], "plutus:v3": [100788]},
    "scriptExecutionPrices": {"memory": "577/10000", "cpu": "721/10000000"},
    "maxExecutionUnitsPerTransaction": {"memory": 14000000, "cpu": 10000000000},
    "maxExecutionUnitsPerBlock": {"memory": 62000000, "cpu": 20000000000},
    "maxValueSize": {"bytes": 5000},
    "collateralPercentage": 150,
    "maxCollateralInputs": 3,
    "version": {"major": 9, "minor": 1},
    "stakePoolVotingThresholds": {
        "noConfidence": "51/100",
        "constitutionalCommittee": {"default": "13/20", "stateOfNoConfidence": "51/100"},
        "hardForkInitiation": "51/100",
        "protocolParametersUpdate": {"security": "51/100"},
    },
    "delegateRepresentativeVotingThresholds": {
        "noConfidence": "67/100",
        "constitution": "3/4",
        "constitutionalCommittee": {"default": "67/100", "stateOfNoConfidence": "3/5"},
        "hardForkInitiation": "3/5",
        "protocolParametersUpdate": {
            "network": "67/100", "economic": "67/100", "technical": "67/100", "governance": "3/4",
        },
        "treasuryWithdrawals": "67/100",
    },
    "constitutionalCommitteeMinSize": 7,
    "constitutionalCommitteeMaxTermLength": 146,
    "governanceActionLifetime": 6,
    "governanceActionDeposit": {"ada": {"lovelace": 100000000000}},
    "delegateRepresentativeDeposit": {"ada": {"lovelace": 500000000}},
    "delegateRepresentativeMaxIdleTime": 20,
    "minFeeReferenceScripts": {"range": 25600, "base": 15.0, "multiplier": 1.2},
}

GENESIS = {
    "era": "shelley",
    "startTime": "2022-10-25T00:00:00Z",
    "networkMagic": 2,
    "network": "testnet",
    "activeSlotsCoefficient": "1/20",
    "securityParameter": 432,
    "epochLength": 86400,
    "slotsPerKesPeriod": 129600,
    "maxKesEvolutions": 62,
    "slotLength": {"milliseconds": 1000},
    "updateQuorum": 5,
    "maxLovelaceSupply": 45000000000000000,
}


def utxo_entry(index=0, lovelace=1000000, **extra):
    entry = {
        "transaction": {"id": TX_ID},
        "index": index,
        "address": TEST_ADDRESS,
        "value": {"ada": {"lovelace": lovelace}},
    }
    entry.update(extra)
    return entry


def make_context(network=PREVIEW, **responses):
    clock = Clock()
    defaults = {
        "queryLedgerState/epoch": 150,
        "queryLedgerState/tip": {"slot": 51234567, "id": "e" * 64},
        "queryNetwork/blockHeight": 2100000,
        "queryLedgerState/protocolParameters": PROTOCOL_PARAMETERS,
        "queryNetwork/genesisConfiguration": GENESIS,
        "queryLedgerState/utxo": [utxo_entry()],
    }
    defaults.update(responses)
    client = FakeOgmiosClient(defaults)
    context = OgmiosChainContext(
        network=network,
        client=client,
        max_attempts=2,
        base_delay=0,
        timer=clock,
    )
    return context, client, clock


@pytest.mark.asyncio
async def test_utxos_single_entry():
    context, client, _ = make_context()

    utxos = await context.utxos(TEST_ADDRESS)

    assert len(utxos) == 1
    assert utxos[0].input.transaction_id.payload.hex() == TX_ID
    assert utxos[0].input.index == 0
    assert utxos[0].output.amount.coin == 1000000
    assert client.calls[-1] == ("queryLedgerState/utxo", {"addresses": [TEST_ADDRESS]})


@pytest.mark.asyncio
async def test_utxos_with_assets_and_datum():
    context, _, _ = make_context(**{"queryLedgerState/utxo": [utxo_entry(
        index=3,
        value={"ada": {"lovelace": 1500000}, POLICY: {"68656c6c6f": 5, "": 1}},
        datumHash="11" * 32,
        datum="d87980",
    )]})

    [utxo] = await context.utxos(TEST_ADDRESS)

    assert utxo.output.amount.coin == 1500000
    assert len(utxo.output.amount.multi_asset) == 1
    assert utxo.output.datum is not None
    assert utxo.output.datum_hash is None


@pytest.mark.asyncio
async def test_utxos_cached_per_slot_within_ttl():
    context, client, clock = make_context()

    first = await context.utxos(TEST_ADDRESS)
    second = await context.utxos(TEST_ADDRESS)

    assert client.count("queryLedgerState/utxo") == 1
    assert client.count("queryLedgerState/tip") == 1
    assert [u.input for u in first] == [u.input for u in second]

    clock.advance(1.5)
    await context.utxos(TEST_ADDRESS)
    assert client.count("queryLedgerState/tip") == 2
    assert client.count("queryLedgerState/utxo") == 2


@pytest.mark.asyncio
async def test_utxo_cache_keyed_by_address():
    context, client, _ = make_context()
    other = Address(
        payment_part=Address.from_primitive(TEST_ADDRESS).payment_part,
        network=NetworkId.TESTNET,
    ).encode()
    await context.utxos(TEST_ADDRESS)
    await context.utxos(other)
    assert client.count("queryLedgerState/utxo") == 2


@pytest.mark.asyncio
async def test_last_block_slot_ttl():
    context, client, clock = make_context()
    assert await context.last_block_slot() == 51234567
    assert await context.last_block_slot() == 51234567
    assert client.count("queryLedgerState/tip") == 1
    clock.advance(2)
    await context.last_block_slot()
    assert client.count("queryLedgerState/tip") == 2


@pytest.mark.asyncio
async def test_last_block_slot_at_origin():
    context, _, _ = make_context(**{"queryLedgerState/tip": "origin"})
    assert await context.last_block_slot() == 0


@pytest.mark.asyncio
async def test_protocol_parameters_epoch_scoped():
    epochs = iter([150, 150, 151])
    context, client, clock = make_context(**{"queryLedgerState/epoch": lambda _: next(epochs)})

    params = await context.protocol_parameters()
    await context.protocol_parameters()
    assert client.count("queryLedgerState/epoch") == 1
    assert client.count("queryLedgerState/protocolParameters") == 1

    # interval elapsed, same epoch: epoch re-read, parameters kept
    clock.advance(1001)
    assert await context.protocol_parameters() is params
    assert client.count("queryLedgerState/epoch") == 2
    assert client.count("queryLedgerState/protocolParameters") == 1

    # interval elapsed, new epoch
    clock.advance(1001)
    await context.protocol_parameters()
    assert await context.epoch() == 151
    assert client.count("queryLedgerState/protocolParameters") == 2


@pytest.mark.asyncio
async def test_protocol_parameters_parsed():
    context, _, _ = make_context()
    params = await context.protocol_parameters()
    assert params.tx_fee_per_byte == 44
    assert params.tx_fee_fixed == 155381
    assert params.max_block_body_size == 90112
    assert params.stake_address_deposit == 2000000
    assert params.pool_pledge_influence == pytest.approx(0.3)
    assert params.cost_models == {"PlutusV1": [205665, 812], "PlutusV3": [100788]}
    assert params.execution_unit_prices.price_memory == pytest.approx(0.0577)
    assert params.max_tx_execution_units.steps == 10000000000
    assert params.pool_voting_thresholds.committee_normal == pytest.approx(0.65)
    assert params.pool_voting_thresholds.committee_no_confidence == pytest.approx(0.51)
    assert params.drep_voting_thresholds.pp_gov_group == pytest.approx(0.75)
    assert params.drep_voting_thresholds.update_to_constitution == pytest.approx(0.75)
    assert params.drep_deposit == 500000000
    assert params.min_fee_ref_script_cost_per_byte == 15.0


@pytest.mark.asyncio
async def test_genesis_parameters():
    context, client, _ = make_context()
    genesis = await context.genesis_parameters()
    await context.genesis_parameters()
    assert client.count("queryNetwork/genesisConfiguration") == 1
    assert client.calls[0][1] == {"era": "shelley"}
    assert genesis.active_slots_coefficient == pytest.approx(0.05)
    assert genesis.slot_length == 1
    assert genesis.network_magic == 2
    assert genesis.system_start.year == 2022


@pytest.mark.asyncio
async def test_era_by_network():
    testnet, _, _ = make_context()
    assert await testnet.era() is Era.CONWAY

    mainnet, client, _ = make_context(network=MAINNET, **{"queryLedgerState/epoch": 400})
    assert await mainnet.era() is Era.BABBAGE
    assert client.count("queryLedgerState/protocolParameters") == 0


@pytest.mark.asyncio
async def test_chain_tip():
    context, _, _ = make_context()
    tip = await context.query_chain_tip()
    assert tip.slot == 51234567
    assert tip.block == 2100000
    assert tip.epoch == 150
    assert tip.hash == "e" * 64
    assert tip.era is Era.CONWAY


@pytest.mark.asyncio
async def test_queries_are_retried():
    attempts = []

    def flaky(_):
        attempts.append(1)
        if len(attempts) == 1:
            raise OgmiosConnectionError("Connection closed")
        return {"slot": 10, "id": "e" * 64}

    context, _, _ = make_context(**{"queryLedgerState/tip": flaky})
    assert await context.last_block_slot() == 10
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_submit():
    context, client, _ = make_context(submitTransaction={"transaction": {"id": TX_ID}})
    tx_id = await context.submit_tx_cbor(b"\x84\xa4")
    assert tx_id.payload.hex() == TX_ID
    assert client.calls[-1] == ("submitTransaction", {"transaction": {"cbor": "84a4"}})


@pytest.mark.asyncio
async def test_submit_rejected_is_not_retried():
    context, client, _ = make_context(submitTransaction=OgmiosQueryError("Ogmios error 3117: missing inputs"))
    with pytest.raises(TransactionFailedError, match="3117"):
        await context.submit_tx_cbor(b"\x84")
    assert client.count("submitTransaction") == 1


@pytest.mark.asyncio
async def test_evaluate():
    context, _, _ = make_context(evaluateTransaction=[
        {"validator": {"purpose": "spend", "index": 0}, "budget": {"memory": 1700, "cpu": 476468}},
        {"validator": "mint:1", "budget": {"memory": 10, "cpu": 20}},
    ])
    units = await context.evaluate_tx_cbor(b"\x84")
    assert units["spend:0"].mem == 1700
    assert units["spend:0"].steps == 476468
    assert units["mint:1"].steps == 20


@pytest.mark.asyncio
async def test_stake_address_info():
    base = Address.from_primitive(TEST_ADDRESS)
    credential = base.staking_part.payload.hex()
    context, client, _ = make_context(**{"queryLedgerState/rewardAccountSummaries": {
        credential: {
            "delegate": {"id": POOL_ID},
            "rewards": {"ada": {"lovelace": 2500000}},
            "deposit": {"ada": {"lovelace": 2000000}},
            "delegateRepresentative": {"type": "noConfidence"},
        },
    }})

    [info] = await context.stake_address_info(TEST_ADDRESS)

    assert client.calls[-1][1] == {"keys": [credential]}
    assert info.reward_account_balance == 2500000
    assert info.delegation_deposit == 2000000
    assert info.stake_delegation == POOL_ID
    assert info.vote_delegation == "drep_always_no_confidence"


@pytest.mark.asyncio
async def test_stake_address_info_unregistered():
    context, _, _ = make_context(**{"queryLedgerState/rewardAccountSummaries": {}})
    assert await context.stake_address_info(TEST_ADDRESS) == []


@pytest.mark.asyncio
async def test_stake_address_info_requires_staking_part():
    enterprise = Address(
        payment_part=Address.from_primitive(TEST_ADDRESS).payment_part,
        network=NetworkId.TESTNET,
    ).encode()
    context, client, _ = make_context()
    with pytest.raises(InvalidArgumentError):
        await context.stake_address_info(enterprise)
    with pytest.raises(InvalidArgumentError):
        await context.stake_address_info("not an address")
    assert client.calls == []


def test_vote_delegation_mapping():
    assert OgmiosChainContext._vote_delegation(None) is None
    assert OgmiosChainContext._vote_delegation({"type": "abstain"}) == "drep_always_abstain"
    assert OgmiosChainContext._vote_delegation({"type": "registered", "id": "drep1abc"}) == "drep1abc"


@pytest.mark.asyncio
async def test_stake_pools_and_pool_info():
    pool = {
        "id": POOL_ID,
        "vrfVerificationKeyHash": "e" * 64,
        "pledge": {"ada": {"lovelace": 100000000000}},
        "cost": {"ada": {"lovelace": 340000000}},
        "margin": "3/200",
        "rewardAccount": "stake_test1uz...",
        "owners": ["aa" * 28],
        "relays": [
            {"type": "ipAddress", "ipv4": "10.0.0.1", "port": 3001},
            {"type": "hostname", "hostname": "relay.example.com", "port": 3001},
            {"type": "hostname", "hostname": "_relays._tcp.example.com"},
        ],
        "metadata": {"url": "https://example.com/pool.json", "hash": "f" * 64},
    }
    context, client, _ = make_context(**{"queryLedgerState/stakePools": {POOL_ID: pool}})

    assert await context.stake_pools() == [POOL_ID]

    params = await context.stake_pool_info(POOL_ID)
    assert client.calls[-1][1] == {"stakePools": [{"id": POOL_ID}]}
    assert params.operator == "0f292fcaa02b8b2f9b3c8f9fd8e0bb21abedb692a6d5058df3ef2735"
    assert params.margin == Fraction(3, 200)
    assert params.pledge == 100000000000
    assert params.owners == frozenset({"aa" * 28})
    assert params.relays == (
        SingleHostAddr(port=3001, ipv4="10.0.0.1"),
        SingleHostName(dns_name="relay.example.com", port=3001),
        MultiHostName(dns_name="_relays._tcp.example.com"),
    )


@pytest.mark.asyncio
async def test_pool_info_not_found():
    context, _, _ = make_context(**{"queryLedgerState/stakePools": {}})
    with pytest.raises(OgmiosQueryError):
        await context.stake_pool_info(POOL_ID)
    with pytest.raises(InvalidArgumentError):
        await context.stake_pool_info("")


@pytest.mark.asyncio
async def test_kes_period_info():
    context, _, _ = make_context(**{"queryLedgerState/operationalCertificates": {POOL_ID: 6}})
    info = await context.kes_period_info(POOL_ID)
    assert info.on_chain_op_cert_count == 6
    assert info.next_chain_op_cert_count == 7

    with pytest.raises(InvalidArgumentError):
        await context.kes_period_info("00" * 28)


@pytest.mark.asyncio
async def test_close_disconnects():
    context, client, _ = make_context()
    async with context:
        pass
    assert client.disconnected
