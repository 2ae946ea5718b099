"""Extraction of DEX actions from a block's transaction events."""

from typing import Dict, Iterator, List, Optional, Sequence
import structlog

from models.events import (
    Block,
    BlockResults,
    CreatePairAction,
    LiquidityAction,
    SwapAction,
    TxActions,
    TxEvent,
)
from models.market import TradeAction
from services.parsers.attributes import (
    build_msg_sender_map,
    digits_or_null,
    events_by_type,
    int_or_null,
    normalize_pair,
    wasm_by_action,
)
from services.parsers.reserves import reserves_from_event

logger = structlog.get_logger()


class EventExtractor:
    """Classifies wasm events into create_pair, swap and liquidity actions.

    Pure and synchronous. Malformed attributes degrade to None values; the
    only actions ever dropped are swaps and liquidity events without a pair
    contract and create_pairs whose pool address cannot be resolved.
    """

    def __init__(self, factory_address: str, router_address: Optional[str], native_denom: str = "uzig"):
        self.factory_address = (factory_address or "").strip()
        self.router_address = (router_address or "").strip() or None
        self.native_denom = native_denom

    def iter_block(self, block: Block, results: BlockResults) -> Iterator[TxActions]:
        """Yield one TxActions per transaction slot of the block."""
        hashes = block.tx_hashes
        tx_events = results.txs_events
        for i in range(max(len(tx_events), len(hashes))):
            events = tx_events[i] if i < len(tx_events) else []
            tx_hash = hashes[i] if i < len(hashes) else None
            yield self.extract_transaction(i, tx_hash, events, height=block.height)

    def extract_transaction(
        self,
        index: int,
        tx_hash: Optional[str],
        events: Sequence[TxEvent],
        height: Optional[int] = None,
    ) -> TxActions:
        """Extract every DEX action from one transaction's events."""
        wasms = events_by_type(events, "wasm")
        instantiates = events_by_type(events, "instantiate")
        executes = events_by_type(events, "execute")
        signers = build_msg_sender_map(events_by_type(events, "message"))

        return TxActions(
            index=index,
            tx_hash=tx_hash,
            create_pairs=self._create_pairs(wasms, instantiates, signers, tx_hash, height),
            swaps=self._swaps(wasms, executes, signers),
            liquidity=self._liquidity(wasms, signers),
            signers=signers,
        )

    def _create_pairs(
        self,
        wasms: List[TxEvent],
        instantiates: List[TxEvent],
        signers: Dict[int, str],
        tx_hash: Optional[str],
        height: Optional[int],
    ) -> List[CreatePairAction]:
        if not self.factory_address:
            return []

        registers = [
            w for w in wasm_by_action(wasms, "register")
            if w.get("_contract_address") == self.factory_address
        ]
        last_instantiated = instantiates[-1].get("_contract_address") if instantiates else None

        actions = []
        for event in wasm_by_action(wasms, "create_pair"):
            if (event.get("_contract_address") or "").strip() != self.factory_address:
                continue

            # k-th honored create_pair pairs with the k-th register event
            register = None
            if registers:
                register = registers[len(actions)] if len(actions) < len(registers) else registers[0]
            pool_address = (register.get("pair_contract_addr") if register else None) or last_instantiated
            if not pool_address:
                logger.warning("create_pair: could not find pool address",
                               height=height,
                               tx_hash=tx_hash,
                               pair=event.get("pair"))
                continue

            base, quote = normalize_pair(event.get("pair"), self.native_denom)
            if not base or not quote:
                logger.warning("create_pair: unparseable pair attribute",
                               height=height,
                               tx_hash=tx_hash,
                               pair=event.get("pair"))
                continue

            msg_index = int_or_null(event.get("msg_index"))
            actions.append(CreatePairAction(
                pair_contract=pool_address,
                base_denom=base,
                quote_denom=quote,
                pair_type=str(event.get("pair_type") or "xyk"),
                signer=signers.get(msg_index) if msg_index is not None else None,
            ))
        return actions

    def _swaps(self, wasms: List[TxEvent], executes: List[TxEvent], signers: Dict[int, str]) -> List[SwapAction]:
        actions = []
        for position, event in enumerate(wasm_by_action(wasms, "swap")):
            pair_contract = event.get("_contract_address")
            if not pair_contract:
                continue

            msg_index = int_or_null(event.get("msg_index"))
            if msg_index is None:
                msg_index = position

            pool_sender = event.get("sender")
            actions.append(SwapAction(
                pair_contract=pair_contract,
                offer_asset_denom=event.get_first("offer_asset", "offer_asset_denom"),
                ask_asset_denom=event.get_first("ask_asset", "ask_asset_denom"),
                offer_amount=digits_or_null(event.get("offer_amount")),
                ask_amount=digits_or_null(event.get("ask_amount")),
                return_amount=digits_or_null(event.get("return_amount")),
                reserves=reserves_from_event(event, "reserves"),
                msg_index=msg_index,
                signer=signers.get(msg_index),
                pool_sender=pool_sender,
                is_router=self._is_router(pool_sender, msg_index, executes),
            ))
        return actions

    def _is_router(self, pool_sender: Optional[str], msg_index: int, executes: List[TxEvent]) -> bool:
        if not self.router_address:
            return False
        if pool_sender == self.router_address:
            return True
        return any(
            e.get("_contract_address") == self.router_address
            and int_or_null(e.get("msg_index")) == msg_index
            for e in executes
        )

    def _liquidity(self, wasms: List[TxEvent], signers: Dict[int, str]) -> List[LiquidityAction]:
        events = wasm_by_action(wasms, "provide_liquidity") + wasm_by_action(wasms, "withdraw_liquidity")

        actions = []
        for position, event in enumerate(events):
            pair_contract = event.get("_contract_address")
            if not pair_contract:
                continue

            msg_index = int_or_null(event.get("msg_index"))
            if msg_index is None:
                msg_index = position

            actions.append(LiquidityAction(
                pair_contract=pair_contract,
                action=TradeAction.PROVIDE if event.get("action") == "provide_liquidity" else TradeAction.WITHDRAW,
                share=digits_or_null(event.get("share")),
                reserves=reserves_from_event(event, "assets"),
                msg_index=msg_index,
                signer=signers.get(msg_index),
            ))
        return actions
