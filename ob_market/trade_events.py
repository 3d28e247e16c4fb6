"""Turn the logs of one trade transaction into an `OrderResult`.

Two contracts may emit relevant logs: the exchange itself (offer
executions, writes, the final `OrderComplete`) and, for routed orders, the
order helper (`OrderSummary`, `NewOwnedOffer` for a resting order).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, List, Optional

from ob_core.events import (
    LogEntry,
    NewOwnedOffer,
    OfferFail,
    OfferSuccess,
    OfferWrite,
    OrderComplete,
    OrderSummary,
    PosthookFail,
    Receipt,
)
from ob_core.offers import BA, Offer, OfferRaw, Pair, raw_id_to_id, raw_offer_to_offer
from ob_core.units import NATIVE_DECIMALS, TokenInfo, from_units, same_address


log = logging.getLogger("ob_market.trade_events")

PartialFillFunc = Callable[[int, int], bool]


@dataclass(frozen=True)
class Summary:
    got: Decimal
    gave: Decimal
    partial_fill: bool
    bounty: Decimal
    fee_paid: Decimal


@dataclass(frozen=True)
class Success:
    offer_id: int
    got: Decimal
    gave: Decimal


@dataclass(frozen=True)
class Failure:
    offer_id: int
    reason: str
    fail_to_deliver: Optional[Decimal] = None
    volume_given: Optional[Decimal] = None


@dataclass(frozen=True)
class OfferWriteRecord:
    ba: BA
    offer: Offer


@dataclass
class OrderResult:
    tx_receipt: Receipt
    summary: Optional[Summary] = None
    successes: List[Success] = field(default_factory=list)
    trade_failures: List[Failure] = field(default_factory=list)
    posthook_failures: List[Failure] = field(default_factory=list)
    offer_writes: List[OfferWriteRecord] = field(default_factory=list)
    resting_order: Optional[Offer] = None

    @property
    def is_order_result(self) -> bool:
        return is_order_result(self)


def is_order_result(result: OrderResult) -> bool:
    """A result is complete once the trade's terminal summary has been seen."""
    return result.summary is not None


def create_partial_fill_func(fill_wants: bool, wants: int, gives: int) -> PartialFillFunc:
    def partial_fill(taker_got_with_fee: int, taker_gave: int) -> bool:
        if fill_wants:
            return taker_got_with_fee < wants
        return taker_gave < gives

    return partial_fill


def create_summary(
    taker_got: int,
    taker_gave: int,
    penalty: int,
    fee_paid: Optional[int],
    got: TokenInfo,
    gave: TokenInfo,
    partial_fill: PartialFillFunc,
) -> Summary:
    fee = 0 if fee_paid is None else int(fee_paid)
    return Summary(
        got=got.from_units(taker_got),
        gave=gave.from_units(taker_gave),
        partial_fill=partial_fill(int(taker_got) + fee, int(taker_gave)),
        bounty=from_units(penalty, NATIVE_DECIMALS),
        fee_paid=from_units(fee, NATIVE_DECIMALS),
    )


def create_success(event: OfferSuccess, got: TokenInfo, gave: TokenInfo) -> Success:
    return Success(
        offer_id=int(event.id),
        got=got.from_units(event.taker_wants),
        gave=gave.from_units(event.taker_gives),
    )


def create_trade_failure(event: OfferFail, got: TokenInfo, gave: TokenInfo) -> Failure:
    return Failure(
        offer_id=int(event.id),
        reason=event.mgv_data,
        fail_to_deliver=got.from_units(event.taker_wants),
        volume_given=gave.from_units(event.taker_gives),
    )


def create_posthook_failure(event: PosthookFail) -> Failure:
    return Failure(offer_id=int(event.offer_id), reason=event.posthook_data)


def create_offer_write(pair: Pair, event: OfferWrite) -> Optional[OfferWriteRecord]:
    """Resolve the side of a write; the same transaction may write on either side."""
    ba = pair.side_of(event.outbound_tkn, event.inbound_tkn)
    if ba is None:
        log.debug(
            "OfferWrite for unknown market %s/%s (outbound=%s inbound=%s)",
            pair.base.name,
            pair.quote.name,
            event.outbound_tkn,
            event.inbound_tkn,
        )
        return None
    raw = OfferRaw(
        id=event.id,
        prev=event.prev,
        gasprice=event.gasprice,
        maker=event.maker,
        gasreq=event.gasreq,
        wants=event.wants,
        gives=event.gives,
    )
    return OfferWriteRecord(ba=ba, offer=raw_offer_to_offer(ba, raw, pair))


def create_resting_order(
    ba: BA,
    event: NewOwnedOffer,
    taker: str,
    current: Optional[Offer],
    offer_writes: List[OfferWriteRecord],
) -> Optional[Offer]:
    if not same_address(event.owner, taker):
        return current
    # A resting order sits on the opposite side of the book the taker hit.
    resting_ba = ba.opposite
    offer_id = raw_id_to_id(event.offer_id)
    for write in offer_writes:
        if write.ba is resting_ba and write.offer.id == offer_id:
            return write.offer
    return current


def contract_logs(receipt: Receipt, address: Optional[str]) -> List[LogEntry]:
    if address is None:
        return []
    return [entry for entry in receipt.logs if same_address(entry.address, address)]


def _foreign_taker(receipt: Receipt, event) -> bool:
    taker = getattr(event, "taker", None)
    return bool(taker) and not same_address(taker, receipt.sender)


def process_exchange_events(
    result: OrderResult,
    receipt: Receipt,
    ba: BA,
    partial_fill: PartialFillFunc,
    pair: Pair,
    exchange_address: str,
) -> None:
    got, gave = pair.outbound_inbound(ba)
    for entry in contract_logs(receipt, exchange_address):
        event = entry.event
        if _foreign_taker(receipt, event):
            continue
        if isinstance(event, OrderComplete):
            # last one is ours
            result.summary = create_summary(
                event.taker_got, event.taker_gave, event.penalty, event.fee_paid, got, gave, partial_fill
            )
        elif isinstance(event, OfferSuccess):
            result.successes.append(create_success(event, got, gave))
        elif isinstance(event, OfferFail):
            result.trade_failures.append(create_trade_failure(event, got, gave))
        elif isinstance(event, PosthookFail):
            result.posthook_failures.append(create_posthook_failure(event))
        elif isinstance(event, OfferWrite):
            record = create_offer_write(pair, event)
            if record is not None:
                result.offer_writes.append(record)


def process_order_events(
    result: OrderResult,
    receipt: Receipt,
    ba: BA,
    partial_fill: PartialFillFunc,
    pair: Pair,
    order_address: Optional[str],
) -> None:
    got, gave = pair.outbound_inbound(ba)
    for entry in contract_logs(receipt, order_address):
        event = entry.event
        if _foreign_taker(receipt, event):
            continue
        if isinstance(event, OrderSummary):
            result.summary = create_summary(
                event.taker_got, event.taker_gave, event.bounty, event.fee, got, gave, partial_fill
            )
        elif isinstance(event, NewOwnedOffer):
            result.resting_order = create_resting_order(
                ba, event, receipt.sender, result.resting_order, result.offer_writes
            )


def reconcile_trade(
    receipt: Receipt,
    ba: BA,
    fill_wants: bool,
    wants: int,
    gives: int,
    pair: Pair,
    exchange_address: str,
    order_address: Optional[str] = None,
) -> OrderResult:
    """Build the `OrderResult` of a trade from its receipt.

    `wants`/`gives` are the raw amounts the taker asked for; they decide
    `partial_fill`. Exchange logs are processed before order-helper logs so
    a resting order can be matched against the writes already collected.
    """
    ba = BA(ba)
    result = OrderResult(tx_receipt=receipt)
    partial_fill = create_partial_fill_func(fill_wants, int(wants), int(gives))
    process_exchange_events(result, receipt, ba, partial_fill, pair, exchange_address)
    process_order_events(result, receipt, ba, partial_fill, pair, order_address)
    if not is_order_result(result):
        log.warning("Receipt %s has no order summary for taker %s", receipt.tx_hash, receipt.sender)
    return result
