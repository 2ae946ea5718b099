"""Pool reserve encodings found in pair contract events.

Pair contracts report post-trade reserves either as explicit attributes
(``reserve_asset1_denom``/``reserve_asset1_amount``/... or the shorter
``asset1_*`` form) or as a single packed string (``reserves`` on swaps,
``assets`` on liquidity events). Both are read into the tagged union below
and merged by :func:`resolve_reserves`.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from models.events import ReserveSnapshot, TxEvent
from .attributes import digits_or_null

_COIN = re.compile(r"^([0-9]+)([a-zA-Z][a-zA-Z0-9/:._\-]*)$")


@dataclass(frozen=True)
class ExplicitReserves:
    asset1_denom: Optional[str] = None
    asset1_amount: Optional[str] = None
    asset2_denom: Optional[str] = None
    asset2_amount: Optional[str] = None


@dataclass(frozen=True)
class PackedReserves:
    raw: str

    def entries(self) -> List[Tuple[str, str]]:
        return parse_packed_assets(self.raw)


@dataclass(frozen=True)
class AbsentReserves:
    pass


ReserveEncoding = Union[ExplicitReserves, PackedReserves, AbsentReserves]

ABSENT = AbsentReserves()


def parse_packed_assets(raw: Optional[str]) -> List[Tuple[str, str]]:
    """Parse a packed asset list into ordered (denom, amount) pairs.

    Accepted entry forms, comma separated, optionally wrapped in brackets:
    ``denom:amount``, ``denom=amount`` and Cosmos coins (``1000uzig``).
    Unparseable entries are skipped; amounts are returned unvalidated.
    """
    if not raw:
        return []
    body = raw.strip().strip("[]")
    pairs: List[Tuple[str, str]] = []
    for entry in body.split(","):
        item = entry.strip()
        if not item:
            continue
        coin = _COIN.match(item)
        if coin:
            pairs.append((coin.group(2), coin.group(1)))
            continue
        for sep in ("=", ":"):
            if sep in item:
                denom, amount = item.rsplit(sep, 1)
                denom, amount = denom.strip(), amount.strip()
                if denom:
                    pairs.append((denom, amount))
                break
    return pairs


def read_explicit(event: TxEvent) -> ReserveEncoding:
    """Explicit reserve attributes, or ABSENT when none are present."""
    explicit = ExplicitReserves(
        asset1_denom=event.get_first("reserve_asset1_denom", "asset1_denom"),
        asset1_amount=digits_or_null(event.get_first("reserve_asset1_amount", "asset1_amount")),
        asset2_denom=event.get_first("reserve_asset2_denom", "asset2_denom"),
        asset2_amount=digits_or_null(event.get_first("reserve_asset2_amount", "asset2_amount")),
    )
    if explicit == ExplicitReserves():
        return ABSENT
    return explicit


def read_packed(event: TxEvent, key: str) -> ReserveEncoding:
    """Packed reserve attribute ``key``, or ABSENT."""
    raw = event.get(key)
    return PackedReserves(raw) if raw else ABSENT


def resolve_reserves(*encodings: ReserveEncoding) -> ReserveSnapshot:
    """Merge encodings field by field; earlier encodings take precedence.

    Packed amounts are digit-validated like explicit ones, so a malformed
    value never overrides a missing field with garbage.
    """
    fields = {"asset1_denom": None, "asset1_amount": None, "asset2_denom": None, "asset2_amount": None}

    for encoding in encodings:
        if isinstance(encoding, ExplicitReserves):
            candidate = {
                "asset1_denom": encoding.asset1_denom,
                "asset1_amount": encoding.asset1_amount,
                "asset2_denom": encoding.asset2_denom,
                "asset2_amount": encoding.asset2_amount,
            }
        elif isinstance(encoding, PackedReserves):
            entries = encoding.entries()
            candidate = {}
            if len(entries) > 0:
                candidate["asset1_denom"] = entries[0][0]
                candidate["asset1_amount"] = digits_or_null(entries[0][1])
            if len(entries) > 1:
                candidate["asset2_denom"] = entries[1][0]
                candidate["asset2_amount"] = digits_or_null(entries[1][1])
        else:
            continue

        for name, value in candidate.items():
            if fields[name] is None and value:
                fields[name] = value

    return ReserveSnapshot(**fields)


def reserves_from_event(event: TxEvent, packed_key: str) -> ReserveSnapshot:
    """Explicit attributes first, then the packed ``packed_key`` string."""
    return resolve_reserves(read_explicit(event), read_packed(event, packed_key))
