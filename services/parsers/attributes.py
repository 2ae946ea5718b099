"""Attribute helpers for CosmWasm transaction events.

All helpers are pure and tolerant: malformed input yields None instead of
raising, so a bad attribute only nulls the field it feeds.
"""

import base64
import binascii
import hashlib
import re
from typing import Dict, Iterable, List, Optional, Tuple

from models.events import TxEvent
from models.market import TradeDirection

_DIGITS = re.compile(r"^[0-9]+$")


def digits_or_null(value: Optional[str]) -> Optional[str]:
    """Return ``value`` when it is a non-empty string of ASCII digits."""
    if value is None:
        return None
    s = str(value).strip()
    return s if _DIGITS.match(s) else None


def int_or_null(value: Optional[str]) -> Optional[int]:
    """Parse a non-negative integer attribute such as ``msg_index``."""
    digits = digits_or_null(value)
    return int(digits) if digits is not None else None


def events_by_type(events: Iterable[TxEvent], event_type: str) -> List[TxEvent]:
    """Events of one type, in emission order."""
    return [e for e in events if e.type == event_type]


def wasm_by_action(wasm_events: Iterable[TxEvent], action: str) -> List[TxEvent]:
    """Wasm events whose first ``action`` attribute equals ``action``."""
    return [e for e in wasm_events if e.get("action") == action]


def build_msg_sender_map(message_events: Iterable[TxEvent]) -> Dict[int, str]:
    """Map message index to the signing account.

    Only ``message`` events carrying both an integer ``msg_index`` and a
    ``sender`` contribute; the first sender seen for an index wins.
    """
    senders: Dict[int, str] = {}
    for event in message_events:
        idx = int_or_null(event.get("msg_index"))
        sender = event.get("sender")
        if idx is None or not sender:
            continue
        senders.setdefault(idx, sender)
    return senders


def normalize_pair(pair: Optional[str], native_denom: str) -> Tuple[Optional[str], Optional[str]]:
    """Split a factory ``pair`` attribute into (base, quote).

    The native denom is always the quote side. Otherwise the first listed
    denom is the base. Denoms may themselves contain '-', so every split
    point is tried and one that isolates the native denom is preferred.
    """
    if not pair:
        return None, None
    raw = pair.strip()
    positions = [i for i, ch in enumerate(raw) if ch == "-"]
    if not positions:
        return None, None

    candidates = [(raw[:i], raw[i + 1:]) for i in positions]
    candidates = [(a, b) for a, b in candidates if a and b]
    if not candidates:
        return None, None

    for a, b in candidates:
        if b == native_denom:
            return a, b
        if a == native_denom:
            return b, a

    a, b = candidates[0]
    return a, b


def classify_direction(offer_denom: Optional[str], quote_denom: str) -> Optional[TradeDirection]:
    """Offering the quote asset buys the base token; anything else sells it."""
    if not offer_denom:
        return None
    return TradeDirection.BUY if offer_denom == quote_denom else TradeDirection.SELL


def tx_hash_from_base64(tx_b64: Optional[str]) -> Optional[str]:
    """Uppercase hex SHA-256 of the decoded transaction bytes."""
    if not tx_b64:
        return None
    try:
        raw = base64.b64decode(tx_b64, validate=True)
    except (binascii.Error, ValueError):
        raw = tx_b64.encode()
    return hashlib.sha256(raw).hexdigest().upper()
