"""Tests for reserve parsing across the explicit and packed encodings."""

from models.events import TxEvent
from services.parsers.reserves import (
    ABSENT,
    PackedReserves,
    parse_packed_assets,
    read_explicit,
    read_packed,
    reserves_from_event,
    resolve_reserves,
)


def test_packed_forms():
    assert parse_packed_assets("uzig:100,coin.x:200") == [("uzig", "100"), ("coin.x", "200")]
    assert parse_packed_assets("[uzig=100, coin.x=200]") == [("uzig", "100"), ("coin.x", "200")]
    assert parse_packed_assets("100uzig,200ibc/ABC") == [("uzig", "100"), ("ibc/ABC", "200")]
    assert parse_packed_assets("") == []
    assert parse_packed_assets("garbage") == []


def test_explicit_and_packed_encodings_agree():
    explicit = TxEvent(type="wasm", attributes=[
        ("reserve_asset1_denom", "coin.x"), ("reserve_asset1_amount", "500"),
        ("reserve_asset2_denom", "uzig"), ("reserve_asset2_amount", "900"),
    ])
    packed = TxEvent(type="wasm", attributes=[("reserves", "coin.x:500,uzig:900")])

    assert reserves_from_event(explicit, "reserves") == reserves_from_event(packed, "reserves")
    assert reserves_from_event(packed, "reserves").complete


def test_short_explicit_form():
    event = TxEvent(type="wasm", attributes=[
        ("asset1_denom", "coin.x"), ("asset1_amount", "5"),
        ("asset2_denom", "uzig"), ("asset2_amount", "9"),
    ])
    snapshot = reserves_from_event(event, "assets")
    assert (snapshot.asset1_denom, snapshot.asset2_amount) == ("coin.x", "9")


def test_explicit_fields_take_precedence_and_gaps_are_filled():
    event = TxEvent(type="wasm", attributes=[
        ("reserve_asset1_denom", "coin.x"), ("reserve_asset1_amount", "1"),
        ("reserves", "coin.x:999,uzig:2"),
    ])
    snapshot = reserves_from_event(event, "reserves")
    assert snapshot.asset1_amount == "1"
    assert snapshot.asset2_denom == "uzig"
    assert snapshot.asset2_amount == "2"


def test_malformed_amounts_are_dropped():
    snapshot = resolve_reserves(PackedReserves("coin.x:abc,uzig:10"))
    assert snapshot.asset1_denom == "coin.x"
    assert snapshot.asset1_amount is None
    assert not snapshot.complete


def test_non_ascii_digit_amounts_are_dropped():
    event = TxEvent(type="wasm", attributes=[
        ("reserve_asset1_denom", "coin.x"), ("reserve_asset1_amount", "１２３"),
        ("reserve_asset2_denom", "uzig"), ("reserve_asset2_amount", "٤٥٦"),
    ])
    snapshot = reserves_from_event(event, "reserves")
    assert (snapshot.asset1_amount, snapshot.asset2_amount) == (None, None)
    assert not snapshot.complete
    assert parse_packed_assets("１０uzig") == []


def test_absent_reserves():
    event = TxEvent(type="wasm", attributes=[("action", "swap")])
    assert read_explicit(event) is ABSENT
    assert read_packed(event, "reserves") is ABSENT
    assert not reserves_from_event(event, "reserves").complete
