"""Tests for DEX action extraction from transaction events."""

from datetime import datetime, timezone

import pytest

from models.events import Block, BlockResults, TxEvent
from models.market import TradeAction
from services.event_extractor import EventExtractor

FACTORY = "zig1factory"
ROUTER = "zig1router"


def ev(event_type, *attributes):
    return TxEvent(type=event_type, attributes=list(attributes))


@pytest.fixture
def extractor():
    return EventExtractor(FACTORY, ROUTER, native_denom="uzig")


def test_create_pair_uses_register_address(extractor):
    events = [
        ev("message", ("sender", "zig1creator"), ("msg_index", "0")),
        ev("wasm", ("_contract_address", FACTORY), ("action", "create_pair"),
           ("pair", "uzig-coin.zig1x.pepe"), ("pair_type", "xyk"), ("msg_index", "0")),
        ev("instantiate", ("_contract_address", "zig1other")),
        ev("wasm", ("_contract_address", FACTORY), ("action", "register"), ("pair_contract_addr", "zig1pair")),
    ]
    actions = extractor.extract_transaction(0, "HASH", events)

    assert len(actions.create_pairs) == 1
    pair = actions.create_pairs[0]
    assert pair.pair_contract == "zig1pair"
    assert (pair.base_denom, pair.quote_denom) == ("coin.zig1x.pepe", "uzig")
    assert pair.signer == "zig1creator"


def test_create_pair_from_other_contract_is_ignored(extractor):
    events = [
        ev("wasm", ("_contract_address", "zig1fake"), ("action", "create_pair"), ("pair", "a-uzig")),
        ev("wasm", ("_contract_address", FACTORY), ("action", "register"), ("pair_contract_addr", "zig1pair")),
    ]
    assert extractor.extract_transaction(0, "HASH", events).create_pairs == []


def test_kth_create_pair_matches_kth_register(extractor):
    events = [
        ev("wasm", ("_contract_address", FACTORY), ("action", "create_pair"), ("pair", "a-uzig")),
        ev("wasm", ("_contract_address", FACTORY), ("action", "create_pair"), ("pair", "b-uzig")),
        ev("wasm", ("_contract_address", FACTORY), ("action", "register"), ("pair_contract_addr", "zig1pa")),
        ev("wasm", ("_contract_address", FACTORY), ("action", "register"), ("pair_contract_addr", "zig1pb")),
    ]
    pairs = extractor.extract_transaction(0, "HASH", events).create_pairs
    assert [(p.base_denom, p.pair_contract) for p in pairs] == [("a", "zig1pa"), ("b", "zig1pb")]


def test_create_pair_falls_back_to_last_instantiate(extractor):
    events = [
        ev("wasm", ("_contract_address", FACTORY), ("action", "create_pair"), ("pair", "a-uzig")),
        ev("instantiate", ("_contract_address", "zig1lp")),
        ev("instantiate", ("_contract_address", "zig1pair")),
    ]
    pairs = extractor.extract_transaction(0, "HASH", events).create_pairs
    assert [p.pair_contract for p in pairs] == ["zig1pair"]


def test_create_pair_without_address_is_dropped(extractor):
    events = [ev("wasm", ("_contract_address", FACTORY), ("action", "create_pair"), ("pair", "a-uzig"))]
    assert extractor.extract_transaction(0, "HASH", events).create_pairs == []


def test_create_pair_disabled_without_factory():
    extractor = EventExtractor("", None)
    events = [
        ev("wasm", ("_contract_address", ""), ("action", "create_pair"), ("pair", "a-uzig")),
        ev("instantiate", ("_contract_address", "zig1pair")),
    ]
    assert extractor.extract_transaction(0, "HASH", events).create_pairs == []


def test_swap_fields_and_signer(extractor):
    events = [
        ev("message", ("sender", "zig1trader"), ("msg_index", "0")),
        ev("wasm", ("_contract_address", "zig1pair"), ("action", "swap"), ("sender", "zig1trader"),
           ("offer_asset", "uzig"), ("ask_asset", "coin.x"), ("offer_amount", "1000"),
           ("return_amount", "abc"), ("reserves", "coin.x:10,uzig:20"), ("msg_index", "0")),
    ]
    swap = extractor.extract_transaction(0, "HASH", events).swaps[0]

    assert swap.pair_contract == "zig1pair"
    assert swap.offer_asset_denom == "uzig"
    assert swap.offer_amount == "1000"
    assert swap.return_amount is None
    assert swap.reserves.asset2_amount == "20"
    assert swap.signer == "zig1trader"
    assert swap.is_router is False


def test_swap_msg_index_defaults_to_position(extractor):
    events = [
        ev("wasm", ("_contract_address", "zig1p1"), ("action", "swap")),
        ev("wasm", ("action", "swap")),
        ev("wasm", ("_contract_address", "zig1p2"), ("action", "swap")),
    ]
    swaps = extractor.extract_transaction(0, "HASH", events).swaps
    assert [(s.pair_contract, s.msg_index) for s in swaps] == [("zig1p1", 0), ("zig1p2", 2)]


def test_router_detection(extractor):
    by_sender = [ev("wasm", ("_contract_address", "zig1pair"), ("action", "swap"),
                    ("sender", ROUTER), ("msg_index", "0"))]
    by_execute = [
        ev("execute", ("_contract_address", ROUTER), ("msg_index", "1")),
        ev("wasm", ("_contract_address", "zig1pair"), ("action", "swap"),
           ("sender", "zig1trader"), ("msg_index", "1")),
    ]
    other_message = [
        ev("execute", ("_contract_address", ROUTER), ("msg_index", "0")),
        ev("wasm", ("_contract_address", "zig1pair"), ("action", "swap"),
           ("sender", "zig1trader"), ("msg_index", "1")),
    ]
    assert extractor.extract_transaction(0, None, by_sender).swaps[0].is_router
    assert extractor.extract_transaction(0, None, by_execute).swaps[0].is_router
    assert not extractor.extract_transaction(0, None, other_message).swaps[0].is_router


def test_liquidity_actions(extractor):
    events = [
        ev("wasm", ("_contract_address", "zig1pair"), ("action", "provide_liquidity"),
           ("share", "77"), ("assets", "100uzig,200coin.x"), ("msg_index", "0")),
        ev("wasm", ("_contract_address", "zig1pair"), ("action", "withdraw_liquidity"),
           ("share", "5"), ("msg_index", "1")),
    ]
    liquidity = extractor.extract_transaction(0, "HASH", events).liquidity

    assert [a.action for a in liquidity] == [TradeAction.PROVIDE, TradeAction.WITHDRAW]
    assert liquidity[0].share == "77"
    assert liquidity[0].reserves.asset1_denom == "uzig"
    assert liquidity[0].reserves.asset2_amount == "200"


def test_iter_block_pads_missing_slots(extractor):
    block = Block(height=5, timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
                  txs=["a", "b"], tx_hashes=["H0", "H1"])
    results = BlockResults(height=5, txs_events=[[ev("wasm", ("_contract_address", "zig1p"), ("action", "swap"))]])

    txs = list(extractor.iter_block(block, results))
    assert [t.tx_hash for t in txs] == ["H0", "H1"]
    assert txs[0].action_count == 1
    assert txs[1].action_count == 0
