from __future__ import annotations

import itertools
import logging
from collections import Counter
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Tuple

from sortedcontainers import SortedKeyList

from ob_core.events import (
    LogEntry,
    NewOwnedOffer,
    OfferFail,
    OfferRetract,
    OfferSuccess,
    OfferWrite,
    OrderComplete,
    OrderSummary,
    PosthookFail,
    Receipt,
    SetGasbase,
)
from ob_core.interfaces import BookReader, EventFeed, FeedSubscription, LogCallback, OfferListPage
from ob_core.offers import BA, OfferRaw, Pair
from ob_core.provision import GWEI, GlobalConfig, RawLocalConfig


log = logging.getLogger("ob_feed.paper")

FAIL_REASON = "mgv/makerTransferFail"
POSTHOOK_FAIL_REASON = "posthook/failed"


@dataclass
class _PaperOffer:
    id: int
    maker: str
    wants: int
    gives: int
    gasreq: int
    gasprice: int
    seq: int


def _offer_key(offer: _PaperOffer) -> Tuple[Fraction, int]:
    # Lower wants/gives is better for the taker on both sides; older first on ties.
    return Fraction(offer.wants, offer.gives), offer.seq


@dataclass
class _OfferList:
    outbound: str
    inbound: str
    fee: int = 0
    density: int = 0
    offer_gasbase: int = 0
    active: bool = True
    live: SortedKeyList = field(default_factory=lambda: SortedKeyList(key=_offer_key))
    by_id: Dict[int, _PaperOffer] = field(default_factory=dict)
    dead: Dict[int, _PaperOffer] = field(default_factory=dict)
    next_id: int = 1

    def prev_of(self, offer: _PaperOffer) -> int:
        idx = self.live.index(offer)
        return self.live[idx - 1].id if idx > 0 else 0

    def next_of(self, offer: _PaperOffer) -> int:
        idx = self.live.index(offer)
        return self.live[idx + 1].id if idx + 1 < len(self.live) else 0


class _PaperSubscription(FeedSubscription):
    def __init__(self, ledger: "PaperLedger", sub_id: int):
        self._ledger = ledger
        self._sub_id = sub_id

    def unsubscribe(self) -> None:
        self._ledger._subscribers.pop(self._sub_id, None)


class PaperLedger(BookReader, EventFeed):
    """In-memory ledger keeping real ordered offer lists.

    Every mutation is its own block and queues the logs it emits; `flush()`
    delivers queued logs to feed subscribers in order. Amounts are raw
    integer token units.
    """

    def __init__(
        self,
        exchange_address: str = "0x00000000000000000000000000000000000000e1",
        order_address: str = "0x00000000000000000000000000000000000000e2",
        gasprice: int = 1,
        gasmax: int = 2_000_000,
    ) -> None:
        self.exchange_address = exchange_address
        self.order_address = order_address
        self.gasprice = int(gasprice)
        self.gasmax = int(gasmax)
        self.block_number = 0
        self.reads: Counter = Counter()

        self._lists: Dict[Tuple[str, str], _OfferList] = {}
        self._seq = itertools.count(1)
        self._tx = itertools.count(1)
        self._log_index = 0
        self._pending: List[LogEntry] = []
        self._subscribers: Dict[int, Tuple[Pair, LogCallback]] = {}
        self._sub_ids = itertools.count(1)

    # ----------------------------------------------------------- internals

    def _list(self, pair: Pair, ba: BA) -> _OfferList:
        outbound, inbound = pair.outbound_inbound(ba)
        key = (outbound.address.lower(), inbound.address.lower())
        olist = self._lists.get(key)
        if olist is None:
            olist = _OfferList(outbound=outbound.address, inbound=inbound.address)
            self._lists[key] = olist
        return olist

    def _next_block(self) -> str:
        self.block_number += 1
        self._log_index = 0
        return f"0x{next(self._tx):064x}"

    def _emit(self, address: str, event, tx_hash: str) -> LogEntry:
        entry = LogEntry(
            address=address,
            event=event,
            block_number=self.block_number,
            log_index=self._log_index,
            tx_hash=tx_hash,
        )
        self._log_index += 1
        self._pending.append(entry)
        return entry

    def _write_event(self, olist: _OfferList, offer: _PaperOffer) -> OfferWrite:
        return OfferWrite(
            outbound_tkn=olist.outbound,
            inbound_tkn=olist.inbound,
            maker=offer.maker,
            wants=offer.wants,
            gives=offer.gives,
            gasprice=offer.gasprice,
            gasreq=offer.gasreq,
            id=offer.id,
            prev=olist.prev_of(offer),
        )

    def _insert(self, olist: _OfferList, offer: _PaperOffer, tx_hash: str) -> LogEntry:
        if offer.gives <= 0 or offer.wants < 0:
            raise ValueError(f"offer needs gives > 0 and wants >= 0 (got wants={offer.wants} gives={offer.gives})")
        offer.seq = next(self._seq)
        olist.live.add(offer)
        olist.by_id[offer.id] = offer
        olist.dead.pop(offer.id, None)
        return self._emit(self.exchange_address, self._write_event(olist, offer), tx_hash)

    def _kill(self, olist: _OfferList, offer: _PaperOffer) -> None:
        olist.live.remove(offer)
        del olist.by_id[offer.id]
        offer.gives = 0
        olist.dead[offer.id] = offer

    def _live_offer(self, olist: _OfferList, offer_id: int) -> _PaperOffer:
        offer = olist.by_id.get(int(offer_id))
        if offer is None:
            raise ValueError(f"offer {offer_id} is not live")
        return offer

    def _bounty(self, olist: _OfferList, offer: _PaperOffer) -> int:
        return GWEI * offer.gasprice * (offer.gasreq + olist.offer_gasbase)

    # ------------------------------------------------------------- makers

    def configure(
        self,
        pair: Pair,
        ba: BA,
        *,
        fee: Optional[int] = None,
        density: Optional[int] = None,
        offer_gasbase: Optional[int] = None,
        active: Optional[bool] = None,
    ) -> None:
        """Set list parameters; a gasbase change is logged like the ledger does."""
        olist = self._list(pair, ba)
        if fee is not None:
            olist.fee = int(fee)
        if density is not None:
            olist.density = int(density)
        if active is not None:
            olist.active = bool(active)
        if offer_gasbase is not None and int(offer_gasbase) != olist.offer_gasbase:
            olist.offer_gasbase = int(offer_gasbase)
            tx_hash = self._next_block()
            self._emit(self.exchange_address, SetGasbase(olist.outbound, olist.inbound, olist.offer_gasbase), tx_hash)

    def new_offer(
        self,
        pair: Pair,
        ba: BA,
        wants: int,
        gives: int,
        maker: str = "0x00000000000000000000000000000000000000aa",
        gasreq: int = 100_000,
        gasprice: Optional[int] = None,
    ) -> int:
        olist = self._list(pair, ba)
        offer = _PaperOffer(
            id=olist.next_id,
            maker=maker,
            wants=int(wants),
            gives=int(gives),
            gasreq=int(gasreq),
            gasprice=self.gasprice if gasprice is None else int(gasprice),
            seq=0,
        )
        tx_hash = self._next_block()
        self._insert(olist, offer, tx_hash)
        olist.next_id += 1
        return offer.id

    def update_offer(
        self,
        pair: Pair,
        ba: BA,
        offer_id: int,
        wants: int,
        gives: int,
        gasreq: Optional[int] = None,
        gasprice: Optional[int] = None,
    ) -> None:
        """Move a live or dead offer to its new position; it becomes live again."""
        olist = self._list(pair, ba)
        offer = olist.by_id.get(int(offer_id)) or olist.dead.get(int(offer_id))
        if offer is None:
            raise ValueError(f"unknown offer {offer_id}")
        if int(gives) <= 0:
            raise ValueError("use retract_offer to take an offer off the book")
        if offer.id in olist.by_id:
            olist.live.remove(offer)
        offer.wants = int(wants)
        offer.gives = int(gives)
        if gasreq is not None:
            offer.gasreq = int(gasreq)
        if gasprice is not None:
            offer.gasprice = int(gasprice)
        tx_hash = self._next_block()
        self._insert(olist, offer, tx_hash)

    def retract_offer(self, pair: Pair, ba: BA, offer_id: int) -> None:
        olist = self._list(pair, ba)
        offer = self._live_offer(olist, offer_id)
        self._kill(olist, offer)
        tx_hash = self._next_block()
        self._emit(self.exchange_address, OfferRetract(olist.outbound, olist.inbound, offer.id), tx_hash)

    # ------------------------------------------------------------- takers

    def _take(
        self,
        olist: _OfferList,
        taker: str,
        wants: int,
        gives: int,
        fill_wants: bool,
        failing: Iterable[int],
        posthook_failing: Iterable[int],
        tx_hash: str,
    ) -> Tuple[int, int, int, int]:
        """Walk the list best first; returns (got, gave, penalty, fee_paid)."""
        failing = set(failing)
        posthook_failing = set(posthook_failing)
        got = gave = penalty = fee_paid = 0
        while olist.live:
            remaining = wants - got - fee_paid if fill_wants else gives - gave
            if remaining <= 0:
                break
            offer = olist.live[0]
            # Limit price gives/wants, compared without division.
            if offer.wants * wants > offer.gives * gives:
                break
            if fill_wants:
                take = min(remaining, offer.gives)
                pay = -(-take * offer.wants // offer.gives)
            else:
                pay = min(remaining, offer.wants)
                take = pay * offer.gives // offer.wants if offer.wants else offer.gives
            residual_wants = max(offer.wants - pay, 0)
            residual_gives = offer.gives - take
            self._kill(olist, offer)

            if offer.id in failing:
                penalty += self._bounty(olist, offer)
                self._emit(
                    self.exchange_address,
                    OfferFail(olist.outbound, olist.inbound, offer.id, taker, take, pay, FAIL_REASON),
                    tx_hash,
                )
                continue

            fee = take * olist.fee // 10_000
            got += take - fee
            fee_paid += fee
            gave += pay
            self._emit(
                self.exchange_address,
                OfferSuccess(olist.outbound, olist.inbound, offer.id, taker, take, pay),
                tx_hash,
            )
            if offer.id in posthook_failing:
                self._emit(
                    self.exchange_address,
                    PosthookFail(olist.outbound, olist.inbound, offer.id, POSTHOOK_FAIL_REASON),
                    tx_hash,
                )
            elif residual_gives > 0:
                # The maker's posthook reposts what is left of a partially taken offer.
                offer.wants = residual_wants
                offer.gives = residual_gives
                self._insert(olist, offer, tx_hash)
        return got, gave, penalty, fee_paid

    def market_order(
        self,
        pair: Pair,
        ba: BA,
        taker: str,
        wants: int,
        gives: int,
        fill_wants: bool = True,
        failing: Iterable[int] = (),
        posthook_failing: Iterable[int] = (),
    ) -> Receipt:
        """Take offers from `ba` directly on the exchange.

        `wants`/`gives` set the limit price; `failing` offers revert and pay a
        bounty, `posthook_failing` offers deliver but their posthook fails.
        """
        olist = self._list(pair, ba)
        tx_hash = self._next_block()
        start = len(self._pending)
        got, gave, penalty, fee_paid = self._take(
            olist, taker, int(wants), int(gives), fill_wants, failing, posthook_failing, tx_hash
        )
        self._emit(
            self.exchange_address,
            OrderComplete(olist.outbound, olist.inbound, taker, got, gave, penalty, fee_paid),
            tx_hash,
        )
        log.debug("paper market order %s got=%d gave=%d penalty=%d", ba, got, gave, penalty)
        return Receipt(
            sender=taker,
            to=self.exchange_address,
            logs=list(self._pending[start:]),
            block_number=self.block_number,
            tx_hash=tx_hash,
        )

    def limit_order(
        self,
        pair: Pair,
        ba: BA,
        taker: str,
        wants: int,
        gives: int,
        fill_wants: bool = True,
        rest: bool = True,
        gasreq: int = 100_000,
    ) -> Receipt:
        """Market order routed through the order helper; the unfilled part may rest.

        The helper is the taker on the exchange, so exchange-level executions
        carry its address; the sender sees an `OrderSummary` and, when a
        resting order is posted, a `NewOwnedOffer` on the opposite list.
        """
        ba = BA(ba)
        olist = self._list(pair, ba)
        tx_hash = self._next_block()
        start = len(self._pending)
        wants, gives = int(wants), int(gives)
        got, gave, penalty, fee_paid = self._take(
            olist, self.order_address, wants, gives, fill_wants, (), (), tx_hash
        )
        self._emit(
            self.exchange_address,
            OrderComplete(olist.outbound, olist.inbound, self.order_address, got, gave, penalty, fee_paid),
            tx_hash,
        )

        if fill_wants:
            left_wants = wants - got - fee_paid
            left_gives = -(-left_wants * gives // wants) if wants else 0
        else:
            left_gives = gives - gave
            left_wants = left_gives * wants // gives if gives else 0
        if rest and left_wants > 0 and left_gives > 0:
            # The resting offer gives what the taker still offers, for what it still wants.
            resting_list = self._list(pair, ba.opposite)
            offer = _PaperOffer(
                id=resting_list.next_id,
                maker=self.order_address,
                wants=left_wants,
                gives=left_gives,
                gasreq=int(gasreq),
                gasprice=self.gasprice,
                seq=0,
            )
            resting_list.next_id += 1
            self._insert(resting_list, offer, tx_hash)
            self._emit(
                self.order_address,
                NewOwnedOffer(resting_list.outbound, resting_list.inbound, offer.id, taker),
                tx_hash,
            )
        self._emit(
            self.order_address,
            OrderSummary(olist.outbound, olist.inbound, taker, got, gave, penalty, fee_paid),
            tx_hash,
        )
        return Receipt(
            sender=taker,
            to=self.order_address,
            logs=list(self._pending[start:]),
            block_number=self.block_number,
            tx_hash=tx_hash,
        )

    # --------------------------------------------------------------- feed

    def subscribe(self, pair: Pair, callback: LogCallback) -> FeedSubscription:
        sub_id = next(self._sub_ids)
        self._subscribers[sub_id] = (pair, callback)
        return _PaperSubscription(self, sub_id)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def pending_logs(self) -> List[LogEntry]:
        return list(self._pending)

    def drop_pending(self) -> None:
        self._pending.clear()

    async def flush(self) -> int:
        """Deliver queued logs in order; returns how many were delivered."""
        delivered = 0
        while self._pending:
            entry = self._pending.pop(0)
            event = entry.event
            for sub_id, (pair, callback) in list(self._subscribers.items()):
                if sub_id not in self._subscribers:
                    continue
                if pair.side_of(event.outbound_tkn, event.inbound_tkn) is None:
                    continue
                await callback(entry)
            delivered += 1
        return delivered

    # ------------------------------------------------------------- reader

    def _raw(self, olist: _OfferList, offer: _PaperOffer, live: bool = True) -> OfferRaw:
        return OfferRaw(
            id=offer.id,
            prev=olist.prev_of(offer) if live else 0,
            gasprice=offer.gasprice,
            maker=offer.maker,
            gasreq=offer.gasreq,
            wants=offer.wants,
            gives=offer.gives,
            next=olist.next_of(offer) if live else 0,
            offer_gasbase=olist.offer_gasbase,
        )

    async def read_offer_list_prefix(
        self,
        pair: Pair,
        ba: BA,
        start_after_id: Optional[int],
        count: int,
        block_number: Optional[int] = None,
    ) -> OfferListPage:
        self.reads["offer_list"] += 1
        olist = self._list(pair, ba)
        if start_after_id:
            start = olist.live.index(self._live_offer(olist, start_after_id)) + 1
        else:
            start = 0
        page = list(olist.live[start : start + int(count)])
        return OfferListPage(
            offers=[self._raw(olist, o) for o in page],
            has_more=start + len(page) < len(olist.live),
            block_number=self.block_number,
        )

    async def read_offer_detail(self, pair: Pair, ba: BA, offer_id: int) -> OfferRaw:
        self.reads["offer_detail"] += 1
        olist = self._list(pair, ba)
        offer = olist.by_id.get(int(offer_id))
        if offer is not None:
            return self._raw(olist, offer)
        offer = olist.dead.get(int(offer_id))
        if offer is None:
            raise ValueError(f"unknown offer {offer_id}")
        return self._raw(olist, offer, live=False)

    async def read_list_config(self, pair: Pair, ba: BA) -> RawLocalConfig:
        self.reads["list_config"] += 1
        olist = self._list(pair, ba)
        return RawLocalConfig(
            active=olist.active,
            fee=olist.fee,
            density=olist.density,
            offer_gasbase=olist.offer_gasbase,
            lock=False,
            best=olist.live[0].id if olist.live else 0,
            last=olist.live[-1].id if olist.live else 0,
        )

    async def read_global_config(self) -> GlobalConfig:
        return GlobalConfig(
            monitor="0x0000000000000000000000000000000000000000",
            use_oracle=False,
            notify=False,
            gasprice=self.gasprice,
            gasmax=self.gasmax,
            dead=False,
        )

    def offer_ids(self, pair: Pair, ba: BA) -> List[int]:
        """Live offer ids, best first."""
        return [o.id for o in self._list(pair, ba).live]
