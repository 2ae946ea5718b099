"""Event attribute parsers."""

from .attributes import (
    build_msg_sender_map,
    classify_direction,
    digits_or_null,
    int_or_null,
    normalize_pair,
    tx_hash_from_base64,
)
from .reserves import (
    AbsentReserves,
    ExplicitReserves,
    PackedReserves,
    parse_packed_assets,
    reserves_from_event,
    resolve_reserves,
)

__all__ = [
    'AbsentReserves',
    'ExplicitReserves',
    'PackedReserves',
    'build_msg_sender_map',
    'classify_direction',
    'digits_or_null',
    'int_or_null',
    'normalize_pair',
    'parse_packed_assets',
    'reserves_from_event',
    'resolve_reserves',
    'tx_hash_from_base64',
]
