from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ob_core.events import Receipt
from ob_core.interfaces import BookReader, EventFeed
from ob_core.offers import BA, BS, Offer, Pair, display_decimals_for_price_differences, is_live_offer
from ob_core.provision import (
    LocalConfig,
    calculate_offer_provision,
    estimate_market_order_gas,
    get_missing_provision,
    simulated_gas_with_overhead,
)
from ob_core.semibook import BookChange, Semibook, SemibookOptions, VolumeEstimate, VolumeParams
from ob_core.units import to_decimal

from . import settings
from .trade_events import OrderResult, contract_logs, reconcile_trade


log = logging.getLogger("ob_market.market")

MarketCallback = Callable[[BookChange], Union[Any, Awaitable[Any]]]
MarketFilter = Callable[[BookChange], Union[bool, Awaitable[bool]]]


class BaseQuote(str, Enum):
    BASE = "base"
    QUOTE = "quote"


@dataclass
class MarketVolumeParams:
    """`given` units of `what`, to buy or to sell.

    `(base, buy)`: how much quote to spend for `given` base.
    `(quote, sell)`: how much base is received for `given` quote.
    """

    given: Decimal
    what: BaseQuote
    to: BS

    def __post_init__(self) -> None:
        self.given = to_decimal(self.given)
        self.what = BaseQuote(self.what)
        self.to = BS(self.to)

    @property
    def ba(self) -> BA:
        """The offer list a trade with these params consumes."""
        if (self.what is BaseQuote.BASE) == (self.to is BS.BUY):
            return BA.ASKS
        return BA.BIDS


@dataclass
class BookOptions:
    """Book window for both sides of a market.

    `desired_volume` bounds only the side it trades against; the other side
    gets the default `max_offers`.
    """

    max_offers: Optional[int] = None
    desired_price: Optional[Decimal] = None
    desired_volume: Optional[MarketVolumeParams] = None
    chunk_size: Optional[int] = None

    def __post_init__(self) -> None:
        bounds = [b for b in (self.max_offers, self.desired_price, self.desired_volume) if b is not None]
        if len(bounds) > 1:
            raise ValueError("max_offers, desired_price and desired_volume are mutually exclusive")

    def semibook_options(self, ba: BA) -> SemibookOptions:
        ba = BA(ba)
        if self.desired_volume is not None and self.desired_volume.ba is ba:
            volume = VolumeParams(given=self.desired_volume.given, to=self.desired_volume.to)
            return SemibookOptions(desired_volume=volume, chunk_size=self.chunk_size)
        if self.desired_price is not None:
            return SemibookOptions(desired_price=self.desired_price, chunk_size=self.chunk_size)
        return SemibookOptions(max_offers=self.max_offers, chunk_size=self.chunk_size)


@dataclass(frozen=True)
class Book:
    asks: Semibook
    bids: Semibook


@dataclass
class _Subscription:
    kind: str  # "multiple" | "once"
    future: Optional[asyncio.Future] = None
    filter: Optional[MarketFilter] = None


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class Market:
    """Both offer lists of a base/quote pair plus subscriptions to their changes.

    Each side is a `Semibook` fed by the event feed; every applied log is
    fanned out to subscribers in registration order, one notification at a
    time.
    """

    def __init__(
        self,
        reader: BookReader,
        feed: Optional[EventFeed],
        pair: Pair,
        exchange_address: Optional[str] = None,
        order_address: Optional[str] = None,
    ) -> None:
        self.reader = reader
        self.feed = feed
        self.pair = pair
        self.exchange_address = exchange_address
        self.order_address = order_address

        self._asks: Optional[Semibook] = None
        self._bids: Optional[Semibook] = None
        self._pending_options: Optional[BookOptions] = None
        self._closed = False
        self._subscriptions: Dict[Callable, _Subscription] = {}
        self._dispatch_lock = asyncio.Lock()

    @property
    def base(self):
        return self.pair.base

    @property
    def quote(self):
        return self.pair.quote

    @classmethod
    async def connect(
        cls,
        reader: BookReader,
        feed: Optional[EventFeed],
        pair: Pair,
        book_options: Optional[BookOptions] = None,
        no_init: bool = False,
        exchange_address: Optional[str] = None,
        order_address: Optional[str] = None,
    ) -> "Market":
        """Build a market; unless `no_init`, both sides are populated before returning."""
        market = cls(reader, feed, pair, exchange_address=exchange_address, order_address=order_address)
        market._pending_options = book_options or BookOptions()
        if not no_init:
            await market.initialize()
        return market

    async def initialize(self) -> None:
        if self._pending_options is None:
            raise RuntimeError("Cannot initialize already initialized market")
        options, self._pending_options = self._pending_options, None

        results = await asyncio.gather(
            Semibook.connect(self.reader, self.feed, self.pair, BA.ASKS, self._on_change, options.semibook_options(BA.ASKS)),
            Semibook.connect(self.reader, self.feed, self.pair, BA.BIDS, self._on_change, options.semibook_options(BA.BIDS)),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            for r in results:
                if isinstance(r, Semibook):
                    r.close()
            raise errors[0]
        self._asks, self._bids = results
        log.info(
            "Market %s/%s ready asks=%d bids=%d",
            self.base.name,
            self.quote.name,
            len(self._asks),
            len(self._bids),
        )

    def close(self) -> None:
        """Detach both sides from the feed. Pending `once` futures are left as they are."""
        self._ensure_initialized()
        if self._closed:
            raise RuntimeError("Market is already closed")
        self._closed = True
        self._asks.close()
        self._bids.close()

    async def resync(self) -> None:
        self._ensure_initialized()
        await asyncio.gather(self._asks.resync(), self._bids.resync())

    def _ensure_initialized(self) -> None:
        if self._asks is None or self._bids is None:
            raise RuntimeError("Market is not initialized")

    # ----------------------------------------------------------- dispatching

    def subscribe(self, callback: MarketCallback) -> None:
        self._subscriptions[callback] = _Subscription(kind="multiple")

    def once(self, callback: MarketCallback, filter: Optional[MarketFilter] = None) -> asyncio.Future:
        """Future resolved with `callback`'s result on the first change passing `filter`.

        Cancelling the future drops the subscription.
        """
        future = asyncio.get_running_loop().create_future()
        sub = _Subscription(kind="once", future=future, filter=filter)
        self._subscriptions[callback] = sub

        def _drop(fut: asyncio.Future) -> None:
            if fut.cancelled() and self._subscriptions.get(callback) is sub:
                del self._subscriptions[callback]

        future.add_done_callback(_drop)
        return future

    def unsubscribe(self, callback: MarketCallback) -> None:
        self._subscriptions.pop(callback, None)

    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _on_change(self, change: BookChange) -> None:
        async with self._dispatch_lock:
            for callback, sub in list(self._subscriptions.items()):
                if self._subscriptions.get(callback) is not sub:
                    continue
                if sub.kind == "once":
                    await self._dispatch_once(callback, sub, change)
                else:
                    try:
                        await _maybe_await(callback(change))
                    except Exception:
                        log.exception("Market subscriber failed on %s %s", change.ba.value, change.kind)

    async def _dispatch_once(self, callback: MarketCallback, sub: _Subscription, change: BookChange) -> None:
        future = sub.future
        if future.done():
            self._subscriptions.pop(callback, None)
            return
        try:
            if sub.filter is not None and not await _maybe_await(sub.filter(change)):
                return
        except Exception as exc:
            self._subscriptions.pop(callback, None)
            future.set_exception(exc)
            return
        self._subscriptions.pop(callback, None)
        try:
            result = await _maybe_await(callback(change))
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
            return
        if not future.done():
            future.set_result(result)

    # ---------------------------------------------------------------- books

    def get_book(self) -> Book:
        self._ensure_initialized()
        return Book(asks=self._asks, bids=self._bids)

    def get_semibook(self, ba: BA) -> Semibook:
        self._ensure_initialized()
        return self._asks if BA(ba) is BA.ASKS else self._bids

    async def request_book(self, options: Optional[BookOptions] = None) -> Dict[BA, List[Offer]]:
        """Fresh read of both sides; the cached books are not touched."""
        self._ensure_initialized()
        options = options or BookOptions()
        asks, bids = await asyncio.gather(
            self._asks.request_offer_list_prefix(options.semibook_options(BA.ASKS)),
            self._bids.request_offer_list_prefix(options.semibook_options(BA.BIDS)),
        )
        return {BA.ASKS: asks, BA.BIDS: bids}

    async def config(self) -> Dict[BA, LocalConfig]:
        self._ensure_initialized()
        asks, bids = await asyncio.gather(self._asks.get_config(), self._bids.get_config())
        return {BA.ASKS: asks, BA.BIDS: bids}

    async def is_active(self) -> bool:
        config = await self.config()
        return config[BA.ASKS].active and config[BA.BIDS].active

    async def is_live(self, ba: BA, offer_id: int) -> bool:
        return is_live_offer(await self.offer_info(ba, offer_id))

    async def offer_info(self, ba: BA, offer_id: int) -> Offer:
        return await self.get_semibook(ba).offer_info(offer_id)

    async def bid_info(self, offer_id: int) -> Offer:
        return await self.offer_info(BA.BIDS, offer_id)

    async def ask_info(self, offer_id: int) -> Offer:
        return await self.offer_info(BA.ASKS, offer_id)

    def get_pivot_id(self, ba: BA, price) -> Optional[int]:
        return self.get_semibook(ba).get_pivot_id(price)

    def display_decimals_for_price_differences(self) -> int:
        book = self.get_book()
        return display_decimals_for_price_differences([*book.asks, *reversed(book.bids.offers())])

    # ----------------------------------------------------------- provisions

    async def get_offer_provision(self, ba: BA, gasreq: int, gasprice: Optional[int] = None) -> Decimal:
        """Native-token provision for an offer; the ledger gasprice applies when higher."""
        semibook = self.get_semibook(ba)
        raw_config = await semibook.get_raw_config()
        global_config = await self.reader.read_global_config()
        effective_gasprice = max(int(gasprice or 0), int(global_config.gasprice))
        return calculate_offer_provision(effective_gasprice, gasreq, raw_config.offer_gasbase)

    async def get_bid_provision(self, gasreq: int, gasprice: Optional[int] = None) -> Decimal:
        return await self.get_offer_provision(BA.BIDS, gasreq, gasprice)

    async def get_ask_provision(self, gasreq: int, gasprice: Optional[int] = None) -> Decimal:
        return await self.get_offer_provision(BA.ASKS, gasreq, gasprice)

    async def get_missing_provision(
        self, ba: BA, locked_provision, gasreq: int, gasprice: Optional[int] = None
    ) -> Decimal:
        total = await self.get_offer_provision(ba, gasreq, gasprice)
        return get_missing_provision(locked_provision, total)

    # ----------------------------------------------------------- estimation

    async def estimate_volume(self, params: MarketVolumeParams) -> VolumeEstimate:
        return await self.get_semibook(params.ba).estimate_volume(VolumeParams(given=params.given, to=params.to))

    async def estimate_volume_to_receive(self, given, what: BaseQuote) -> VolumeEstimate:
        """Volume received for spending `given` of `what`."""
        return await self.estimate_volume(MarketVolumeParams(given=given, what=what, to=BS.SELL))

    async def estimate_volume_to_spend(self, given, what: BaseQuote) -> VolumeEstimate:
        """Volume to spend for receiving `given` of `what`."""
        return await self.estimate_volume(MarketVolumeParams(given=given, what=what, to=BS.BUY))

    async def estimate_gas(self, bs: BS, volume: int) -> int:
        """Gas bound for a market order taking `volume` raw outbound units."""
        semibook = self.get_semibook(BA.ASKS if BS(bs) is BS.BUY else BA.BIDS)
        raw_config = await semibook.get_raw_config()
        return estimate_market_order_gas(
            raw_config.density,
            raw_config.offer_gasbase,
            volume,
            semibook.get_max_gas_req(),
            cap=settings.MAX_MARKET_ORDER_GAS,
        )

    async def simulate_gas(self, ba: BA, gives: int, wants: int, fill_wants: bool) -> int:
        """Simulated gas of a market order on the cached book, plus 50%, capped."""
        semibook = self.get_semibook(ba)
        outbound, inbound = self.pair.outbound_inbound(ba)
        sim = await semibook.simulate_market_order(
            outbound.from_units(wants), inbound.from_units(gives), fill_wants
        )
        return simulated_gas_with_overhead(sim.gas, settings.MAX_MARKET_ORDER_GAS)

    # --------------------------------------------------------------- trades

    def reconcile(self, receipt: Receipt, ba: BA, fill_wants: bool, wants: int, gives: int) -> OrderResult:
        """Reconcile a trade receipt and apply its exchange logs to the books.

        Removals and writes are applied in receipt order without notifying
        subscribers; the feed delivers the same logs later and replaying the
        sequence leaves the books unchanged.
        """
        self._ensure_initialized()
        if self.exchange_address is None:
            raise RuntimeError("Market has no exchange address; cannot reconcile trades")
        result = reconcile_trade(
            receipt,
            ba,
            fill_wants,
            wants,
            gives,
            self.pair,
            self.exchange_address,
            self.order_address,
        )
        if not self._closed:
            for entry in contract_logs(receipt, self.exchange_address):
                self._asks.apply(entry)
                self._bids.apply(entry)
        return result
