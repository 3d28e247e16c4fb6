from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .events import (
    BOOK_EVENT_TYPES,
    BookEvent,
    LogEntry,
    OfferFail,
    OfferRetract,
    OfferSuccess,
    OfferWrite,
    SetGasbase,
)
from .interfaces import BookReader, EventFeed, FeedSubscription
from .offers import (
    BA,
    BS,
    Offer,
    OfferRaw,
    OfferSlim,
    Pair,
    is_live_offer,
    is_price_better_or_equal,
    raw_offer_to_offer,
)
from .provision import LocalConfig, RawLocalConfig, raw_local_config_to_local_config
from .units import to_decimal


log = logging.getLogger("ob_core.semibook")


def _default_max_offers(fallback: int = 50) -> int:
    raw = os.getenv("OB_DEFAULT_MAX_OFFERS")
    if raw is None:
        return fallback
    try:
        return int(raw)
    except ValueError:
        return fallback


DEFAULT_MAX_OFFERS = _default_max_offers()
BPS = Decimal(10_000)


@dataclass
class VolumeParams:
    """`to="buy"`: `given` is outbound volume wanted. `to="sell"`: inbound volume given."""

    given: Decimal
    to: BS

    def __post_init__(self) -> None:
        self.given = to_decimal(self.given)
        self.to = BS(self.to)


@dataclass
class SemibookOptions:
    """What the cache fetches and retains.

    `max_offers`, `desired_price` and `desired_volume` are mutually exclusive;
    with none of them the cache holds `DEFAULT_MAX_OFFERS` offers.
    """

    max_offers: Optional[int] = None
    desired_price: Optional[Decimal] = None
    desired_volume: Optional[VolumeParams] = None
    chunk_size: Optional[int] = None

    def __post_init__(self) -> None:
        bounds = [b for b in (self.max_offers, self.desired_price, self.desired_volume) if b is not None]
        if len(bounds) > 1:
            raise ValueError("max_offers, desired_price and desired_volume are mutually exclusive")
        if not bounds:
            self.max_offers = DEFAULT_MAX_OFFERS
        if self.max_offers is not None:
            self.max_offers = int(self.max_offers)
            if self.max_offers < 0:
                raise ValueError(f"max_offers must be >= 0 (got {self.max_offers})")
        if self.desired_price is not None:
            self.desired_price = to_decimal(self.desired_price)
        if self.chunk_size is None:
            self.chunk_size = self.max_offers if self.max_offers else DEFAULT_MAX_OFFERS
        self.chunk_size = int(self.chunk_size)
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive (got {self.chunk_size})")


@dataclass(frozen=True)
class VolumeEstimate:
    estimated_volume: Decimal
    given_residue: Decimal


@dataclass(frozen=True)
class MarketOrderSimulation:
    total_got: Decimal
    total_gave: Decimal
    fee_paid: Decimal
    gas: int
    offers_considered: int
    given_residue: Decimal


@dataclass
class BookChange:
    """Normalized notification for one applied log.

    `offer` is the cached offer after a write, the removed offer after a
    removal, or None when the offer is outside the cached window.
    """

    ba: BA
    kind: str
    offer_id: Optional[int] = None
    offer: Optional[Offer] = None
    taker: Optional[str] = None
    taker_wants: Optional[Decimal] = None
    taker_gives: Optional[Decimal] = None
    mgv_data: Optional[str] = None
    event: Optional[BookEvent] = None
    log: Optional[LogEntry] = None


Listener = Callable[[BookChange], Awaitable[None]]


def walk_book(
    offers: Iterable[Offer],
    *,
    fill_wants: bool,
    initial_wants: Decimal,
    initial_gives: Decimal,
    fee: int = 0,
    enforce_price: bool = False,
) -> MarketOrderSimulation:
    """Simulate a taker consuming `offers` best first.

    With `fill_wants` the walk stops once `initial_wants` outbound has been
    taken, otherwise once `initial_gives` inbound has been spent. With
    `enforce_price` it also stops at the first offer priced worse than
    `initial_gives / initial_wants`. `fee` is in basis points of the
    outbound volume taken.
    """
    remaining = initial_wants if fill_wants else initial_gives
    got = gave = fee_paid = Decimal(0)
    gas = 0
    considered = 0
    for offer in offers:
        if remaining <= 0:
            break
        if not is_live_offer(offer):
            continue
        if enforce_price and offer.wants * initial_wants > offer.gives * initial_gives:
            break
        considered += 1
        gas += offer.gasreq + offer.offer_gasbase
        if fill_wants:
            take_wants = min(remaining, offer.gives)
            take_gives = take_wants * offer.wants / offer.gives
            remaining -= take_wants
        elif offer.wants > 0:
            take_gives = min(remaining, offer.wants)
            take_wants = take_gives * offer.gives / offer.wants
            remaining -= take_gives
        else:
            take_gives = Decimal(0)
            take_wants = offer.gives
        fee_part = take_wants * fee / BPS
        got += take_wants - fee_part
        gave += take_gives
        fee_paid += fee_part
    return MarketOrderSimulation(
        total_got=got,
        total_gave=gave,
        fee_paid=fee_paid,
        gas=gas,
        offers_considered=considered,
        given_residue=max(remaining, Decimal(0)),
    )


class Semibook:
    """Local mirror of one offer list (bids or asks) of a pair.

    Holds a prefix of the on-chain list, best offer first, in an arena keyed
    by offer id with prev/next links. Built with `Semibook.connect`, then
    mutated only by logs from the event feed (and by receipt logs routed
    through the owning market). A bounded window left short by removals is
    read again; logs at or below the block of that read are passed on to the
    listener without being applied.
    """

    def __init__(
        self,
        reader: BookReader,
        feed: Optional[EventFeed],
        pair: Pair,
        ba: BA,
        listener: Optional[Listener] = None,
        options: Optional[SemibookOptions] = None,
    ) -> None:
        self._reader = reader
        self._feed = feed
        self.pair = pair
        self.ba = BA(ba)
        self.options = options or SemibookOptions()
        self._listener = listener

        self._offers: Dict[int, Offer] = {}
        self._best: Optional[int] = None
        self._worst: Optional[int] = None
        self._complete = False
        self.offer_gasbase = 0
        self.last_block: Optional[int] = None

        # Block of the last window read; logs at or below it are already reflected.
        self._read_block: Optional[int] = None
        self._syncing = False
        self._buffer: List[LogEntry] = []
        self._subscription: Optional[FeedSubscription] = None
        self._closed = False

    @classmethod
    async def connect(
        cls,
        reader: BookReader,
        feed: Optional[EventFeed],
        pair: Pair,
        ba: BA,
        listener: Optional[Listener] = None,
        options: Optional[SemibookOptions] = None,
    ) -> "Semibook":
        """Subscribe to `feed`, read the initial prefix, then replay logs seen meanwhile."""
        book = cls(reader, feed, pair, ba, listener, options)
        if feed is not None:
            book._subscription = feed.subscribe(pair, book._handle_log)
        try:
            await book._populate()
        except Exception:
            if book._subscription is not None:
                book._subscription.unsubscribe()
                book._subscription = None
            raise
        return book

    # ------------------------------------------------------------------ sync

    async def _populate(self) -> None:
        self._syncing = True
        self._buffer = []
        try:
            config = await self._reader.read_list_config(self.pair, self.ba)
            self.offer_gasbase = int(config.offer_gasbase)
            offers, complete, block = await self._fetch_prefix(self.options)
            self._load(offers, complete, block)
            log.info(
                "%s %s/%s synced offers=%d complete=%s block=%s buffered=%d",
                self.ba.value,
                self.pair.base.name,
                self.pair.quote.name,
                len(self._offers),
                self._complete,
                block,
                len(self._buffer),
            )
            # Logs delivered while reading; new ones keep queueing until drained.
            while self._buffer:
                entry = self._buffer.pop(0)
                if block is not None and entry.block_number <= block:
                    continue
                await self._process(entry)
        finally:
            self._syncing = False
            self._buffer = []

    async def _fetch_prefix(self, options: SemibookOptions) -> Tuple[List[Offer], bool, Optional[int]]:
        """Read a prefix of the list according to `options`.

        Returns (offers, complete, block) where `complete` means the list was
        read to its end and nothing was trimmed.
        """
        offers: List[Offer] = []
        if options.max_offers == 0:
            return offers, False, None

        start_after: Optional[int] = None
        block: Optional[int] = None
        exhausted = False
        while True:
            page = await self._reader.read_offer_list_prefix(
                self.pair, self.ba, start_after, options.chunk_size, block
            )
            if block is None:
                block = page.block_number
            for raw in page.offers:
                offer = self._offer_from_raw(raw)
                if is_live_offer(offer):
                    offers.append(offer)
            if not page.has_more or not page.offers:
                exhausted = True
                break
            start_after = int(page.offers[-1].id)
            if self._bound_satisfied(options, offers):
                break

        if options.max_offers is not None and len(offers) > options.max_offers:
            return offers[: options.max_offers], False, block
        return offers, exhausted, block

    def _bound_satisfied(self, options: SemibookOptions, offers: List[Offer]) -> bool:
        if options.max_offers is not None:
            return len(offers) >= options.max_offers
        if not offers:
            return False
        if options.desired_price is not None:
            last_price = offers[-1].price
            return last_price is not None and not is_price_better_or_equal(
                self.ba, last_price, options.desired_price
            )
        if options.desired_volume is not None:
            fill_wants = options.desired_volume.to is BS.BUY
            given = options.desired_volume.given
            sim = walk_book(offers, fill_wants=fill_wants, initial_wants=given, initial_gives=given)
            return sim.given_residue <= 0
        return False

    def _load(self, offers: List[Offer], complete: bool, block: Optional[int]) -> None:
        self._offers = {}
        prev_id: Optional[int] = None
        for offer in offers:
            offer.prev = prev_id
            if prev_id is not None:
                self._offers[prev_id].next = offer.id
            self._offers[offer.id] = offer
            prev_id = offer.id
        self._best = offers[0].id if offers else None
        self._worst = prev_id
        if complete and self._worst is not None:
            self._offers[self._worst].next = None
        self._complete = complete
        self.last_block = block
        self._read_block = block

    def _needs_refill(self) -> bool:
        return not self._complete and not self._bound_satisfied(self.options, self.offers())

    async def _refill(self) -> None:
        log.debug(
            "%s %s/%s window short (offers=%d); re-reading",
            self.ba.value,
            self.pair.base.name,
            self.pair.quote.name,
            len(self._offers),
        )
        await self._populate()

    async def resync(self) -> None:
        """Drop the cached state and read the prefix again."""
        self._ensure_open()
        log.warning("%s %s/%s resync requested", self.ba.value, self.pair.base.name, self.pair.quote.name)
        await self._populate()

    def close(self) -> None:
        self._ensure_open()
        self._closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Semibook {self.ba.value} is closed")

    # ---------------------------------------------------------------- events

    def _accepts(self, entry: LogEntry) -> bool:
        event = entry.event
        if not isinstance(event, BOOK_EVENT_TYPES):
            return False
        return self.pair.side_of(event.outbound_tkn, event.inbound_tkn) is self.ba

    def _is_reflected(self, entry: LogEntry) -> bool:
        return (
            self._read_block is not None
            and entry.block_number is not None
            and entry.block_number <= self._read_block
        )

    async def _handle_log(self, entry: LogEntry) -> None:
        if self._closed or not self._accepts(entry):
            return
        if self._syncing:
            self._buffer.append(entry)
            return
        await self._process(entry)
        # Removals can leave a bounded window short of its bound.
        if not self._closed and self._needs_refill():
            await self._refill()

    async def _process(self, entry: LogEntry) -> None:
        change = self._apply(entry, mutate=not self._is_reflected(entry))
        if self._listener is not None:
            await self._listener(change)

    def apply(self, entry: LogEntry) -> Optional[BookChange]:
        """Apply one log without notifying the listener.

        Returns None when the log is not a book event of this side. Used for
        receipt logs that the feed will deliver again later.
        """
        self._ensure_open()
        if not self._accepts(entry):
            return None
        return self._apply(entry, mutate=not self._is_reflected(entry))

    def _apply(self, entry: LogEntry, mutate: bool = True) -> BookChange:
        event = entry.event
        if entry.block_number is not None and (self.last_block is None or entry.block_number > self.last_block):
            self.last_block = entry.block_number

        if isinstance(event, OfferWrite):
            if mutate:
                offer = self.insert_or_update(self._offer_from_event(event))
            else:
                offer = self._offers.get(event.id)
            return BookChange(self.ba, event.kind, offer_id=event.id, offer=offer, event=event, log=entry)

        if isinstance(event, (OfferFail, OfferSuccess, OfferRetract)):
            removed = self._remove_offer(event.id) if mutate else None
            change = BookChange(self.ba, event.kind, offer_id=event.id, offer=removed, event=event, log=entry)
            if isinstance(event, (OfferFail, OfferSuccess)):
                outbound, inbound = self.pair.outbound_inbound(self.ba)
                change.taker = event.taker
                change.taker_wants = outbound.from_units(event.taker_wants)
                change.taker_gives = inbound.from_units(event.taker_gives)
            if isinstance(event, OfferFail):
                change.mgv_data = event.mgv_data
            return change

        if isinstance(event, SetGasbase):
            if mutate:
                self.offer_gasbase = int(event.offer_gasbase)
            return BookChange(self.ba, event.kind, event=event, log=entry)

        raise TypeError(f"Unhandled book event {type(event).__name__}")

    def _offer_from_raw(self, raw: OfferRaw) -> Offer:
        return raw_offer_to_offer(
            self.ba, raw, self.pair, offer_gasbase=raw.offer_gasbase or self.offer_gasbase
        )

    def _offer_from_event(self, event: OfferWrite) -> Offer:
        raw = OfferRaw(
            id=event.id,
            prev=event.prev,
            gasprice=event.gasprice,
            maker=event.maker,
            gasreq=event.gasreq,
            wants=event.wants,
            gives=event.gives,
        )
        return raw_offer_to_offer(self.ba, raw, self.pair, offer_gasbase=self.offer_gasbase)

    # -------------------------------------------------------------- mutation

    def insert_or_update(self, offer: OfferSlim) -> Optional[Offer]:
        """Place `offer` right after `offer.prev`, replacing any cached copy.

        Returns the cached offer, or None if it falls outside the window.
        """
        self._ensure_open()
        self._remove_offer(offer.id)

        if not is_live_offer(offer):
            log.debug("%s offer %s written with gives=%s; not cached", self.ba.value, offer.id, offer.gives)
            return None

        prev_id = offer.prev
        if prev_id is not None and prev_id not in self._offers:
            if not self._complete:
                log.debug("%s offer %s outside cached window (prev=%s)", self.ba.value, offer.id, prev_id)
                return None
            log.warning(
                "%s offer %s references unknown prev=%s on a complete cache; appending at tail",
                self.ba.value,
                offer.id,
                prev_id,
            )
            prev_id = self._worst

        next_id = self._best if prev_id is None else self._offers[prev_id].next
        cached = Offer(
            id=offer.id,
            prev=prev_id,
            gasprice=offer.gasprice,
            maker=offer.maker,
            gasreq=offer.gasreq,
            wants=offer.wants,
            gives=offer.gives,
            volume=offer.volume,
            price=offer.price,
            next=next_id,
            offer_gasbase=self.offer_gasbase,
        )
        self._offers[cached.id] = cached
        if prev_id is None:
            self._best = cached.id
        else:
            self._offers[prev_id].next = cached.id
        if next_id is not None and next_id in self._offers:
            self._offers[next_id].prev = cached.id
        else:
            self._worst = cached.id

        max_offers = self.options.max_offers
        if max_offers is not None and len(self._offers) > max_offers:
            evicted = self._evict_worst()
            self._complete = False
            if evicted.id == cached.id:
                return None
        return cached

    def _remove_offer(self, offer_id: int) -> Optional[Offer]:
        offer = self._offers.pop(offer_id, None)
        if offer is None:
            self._forget_successor(offer_id)
            return None
        next_cached = offer.next is not None and offer.next in self._offers
        if offer.prev is None:
            self._best = offer.next if next_cached else None
        else:
            self._offers[offer.prev].next = offer.next
        if next_cached:
            self._offers[offer.next].prev = offer.prev
        if self._worst == offer_id:
            self._worst = offer.prev
        return replace(offer)

    def _evict_worst(self) -> Offer:
        worst = self._offers.pop(self._worst)
        if worst.prev is None:
            self._best = None
        else:
            self._offers[worst.prev].next = worst.id
        self._worst = worst.prev
        return worst

    def _forget_successor(self, offer_id: int) -> None:
        # The tail may point at an uncached offer that is moving or leaving.
        if self._worst is not None and self._offers[self._worst].next == offer_id:
            self._offers[self._worst].next = None

    # --------------------------------------------------------------- queries

    def __iter__(self) -> Iterator[Offer]:
        offer_id = self._best
        seen = 0
        while offer_id is not None and seen < len(self._offers):
            offer = self._offers.get(offer_id)
            if offer is None:
                return
            yield offer
            seen += 1
            offer_id = offer.next

    def __len__(self) -> int:
        return len(self._offers)

    def __contains__(self, offer_id) -> bool:
        return offer_id in self._offers

    def size(self) -> int:
        return len(self._offers)

    @property
    def is_complete(self) -> bool:
        return self._complete

    def best(self) -> Optional[Offer]:
        return None if self._best is None else self._offers[self._best]

    def worst(self) -> Optional[Offer]:
        return None if self._worst is None else self._offers[self._worst]

    def get(self, offer_id: int) -> Optional[Offer]:
        return self._offers.get(offer_id)

    def offers(self) -> List[Offer]:
        return list(self)

    def get_pivot_id(self, price) -> Optional[int]:
        """Id of the last cached offer at least as good as `price`, or None if none is."""
        if price is None:
            return None
        price = to_decimal(price)
        pivot: Optional[int] = None
        for offer in self:
            if offer.price is None:
                continue
            if not is_price_better_or_equal(self.ba, offer.price, price):
                break
            pivot = offer.id
        return pivot

    def get_max_gas_req(self) -> Optional[int]:
        return max((offer.gasreq for offer in self), default=None)

    async def offer_info(self, offer_id: int) -> Offer:
        """Cached offer if present, else a direct read (not added to the cache)."""
        cached = self._offers.get(offer_id)
        if cached is not None:
            return cached
        raw = await self._reader.read_offer_detail(self.pair, self.ba, offer_id)
        return self._offer_from_raw(raw)

    async def request_offer_list_prefix(self, options: Optional[SemibookOptions] = None) -> List[Offer]:
        """Fresh read of a prefix of the list; the cache is left untouched."""
        offers, _, _ = await self._fetch_prefix(options or self.options)
        prev_id: Optional[int] = None
        for i, offer in enumerate(offers):
            offer.prev = prev_id
            offer.next = offers[i + 1].id if i + 1 < len(offers) else offer.next
            prev_id = offer.id
        return offers

    async def get_raw_config(self) -> RawLocalConfig:
        return await self._reader.read_list_config(self.pair, self.ba)

    async def get_config(self) -> LocalConfig:
        outbound, _ = self.pair.outbound_inbound(self.ba)
        return raw_local_config_to_local_config(await self.get_raw_config(), outbound.decimals)

    async def simulate_market_order(
        self, initial_wants, initial_gives, fill_wants: bool
    ) -> MarketOrderSimulation:
        """Walk the cache as a market order limited to price `initial_gives / initial_wants`."""
        config = await self.get_raw_config()
        return walk_book(
            self,
            fill_wants=fill_wants,
            initial_wants=to_decimal(initial_wants),
            initial_gives=to_decimal(initial_gives),
            fee=int(config.fee),
            enforce_price=True,
        )

    async def estimate_volume(self, params: VolumeParams) -> VolumeEstimate:
        """Estimate the counter-volume of `params.given` against the cached offers.

        A non-zero `given_residue` means the cache ran out before `given` was used up.
        """
        config = await self.get_raw_config()
        buying = params.to is BS.BUY
        sim = walk_book(
            self,
            fill_wants=buying,
            initial_wants=params.given,
            initial_gives=params.given,
            fee=int(config.fee),
        )
        return VolumeEstimate(
            estimated_volume=sim.total_gave if buying else sim.total_got,
            given_residue=sim.given_residue,
        )
