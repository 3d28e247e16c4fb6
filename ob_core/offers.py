from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Tuple

from .units import TokenInfo, same_address, to_decimal


class BA(str, Enum):
    BIDS = "bids"
    ASKS = "asks"

    @property
    def opposite(self) -> "BA":
        return BA.ASKS if self is BA.BIDS else BA.BIDS


class BS(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class Pair:
    """A base/quote market. Asks give base for quote, bids give quote for base."""

    base: TokenInfo
    quote: TokenInfo

    def outbound_inbound(self, ba: BA) -> Tuple[TokenInfo, TokenInfo]:
        if BA(ba) is BA.ASKS:
            return self.base, self.quote
        return self.quote, self.base

    def side_of(self, outbound_tkn: str, inbound_tkn: str) -> Optional[BA]:
        """Return the side whose offer list is (outbound_tkn, inbound_tkn), if any."""
        for ba in (BA.ASKS, BA.BIDS):
            outbound, inbound = self.outbound_inbound(ba)
            if same_address(outbound.address, outbound_tkn) and same_address(inbound.address, inbound_tkn):
                return ba
        return None


@dataclass(frozen=True)
class OfferRaw:
    """Offer as read from the ledger, amounts in integer token units. Id 0 means none."""

    id: int
    prev: int
    gasprice: int
    maker: str
    gasreq: int
    wants: int
    gives: int
    next: int = 0
    offer_gasbase: int = 0


@dataclass
class OfferSlim:
    id: int
    prev: Optional[int]
    gasprice: int
    maker: str
    gasreq: int
    wants: Decimal
    gives: Decimal
    volume: Decimal
    price: Optional[Decimal]


@dataclass
class Offer(OfferSlim):
    next: Optional[int] = None
    offer_gasbase: int = 0


def raw_id_to_id(raw_id) -> Optional[int]:
    rid = int(raw_id)
    return None if rid == 0 else rid


def get_base_quote_volumes(ba: BA, gives: Decimal, wants: Decimal) -> Tuple[Decimal, Decimal]:
    """Return (base_volume, quote_volume) for an offer on side `ba`."""
    if BA(ba) is BA.ASKS:
        return gives, wants
    return wants, gives


def get_price(ba: BA, gives: Decimal, wants: Decimal) -> Optional[Decimal]:
    """Quote/base price of an offer; None when the base volume is zero."""
    base_volume, quote_volume = get_base_quote_volumes(ba, gives, wants)
    if base_volume > 0:
        return quote_volume / base_volume
    return None


def get_wants_for_price(ba: BA, gives, price) -> Decimal:
    gives, price = to_decimal(gives), to_decimal(price)
    return gives * price if BA(ba) is BA.ASKS else gives / price


def get_gives_for_price(ba: BA, wants, price) -> Decimal:
    wants, price = to_decimal(wants), to_decimal(price)
    return wants / price if BA(ba) is BA.ASKS else wants * price


def get_gives_wants_for_volume_at_price(ba: BA, volume, price) -> Tuple[Decimal, Decimal]:
    """Return (gives, wants) for `volume` base tokens at `price`."""
    volume, price = to_decimal(volume), to_decimal(price)
    if BA(ba) is BA.ASKS:
        return volume, volume * price
    return volume * price, volume


def is_live_offer(offer: OfferSlim) -> bool:
    return offer.gives > 0


def is_price_better_or_equal(ba: BA, price: Decimal, reference: Decimal) -> bool:
    """True if `price` is at least as good as `reference` for a taker on side `ba`."""
    if BA(ba) is BA.ASKS:
        return price <= reference
    return price >= reference


def raw_offer_to_offer(
    ba: BA,
    raw: OfferRaw,
    pair: Pair,
    *,
    offer_gasbase: Optional[int] = None,
    next_id: Optional[int] = None,
) -> Offer:
    """Convert a raw ledger offer into a decimal `Offer` for side `ba`.

    `next` and `offer_gasbase` come from the raw record unless overridden;
    events carry neither, so the cache supplies them from its own state.
    """
    offer_id = raw_id_to_id(raw.id)
    if offer_id is None:
        raise ValueError("Offer ID is 0")
    outbound, inbound = pair.outbound_inbound(ba)
    gives = outbound.from_units(raw.gives)
    wants = inbound.from_units(raw.wants)
    base_volume, _ = get_base_quote_volumes(ba, gives, wants)
    return Offer(
        id=offer_id,
        prev=raw_id_to_id(raw.prev),
        gasprice=int(raw.gasprice),
        maker=raw.maker,
        gasreq=int(raw.gasreq),
        wants=wants,
        gives=gives,
        volume=base_volume,
        price=get_price(ba, gives, wants),
        next=raw_id_to_id(raw.next) if next_id is None else next_id,
        offer_gasbase=int(raw.offer_gasbase) if offer_gasbase is None else int(offer_gasbase),
    )


def display_decimals_for_price_differences(offers: Iterable[OfferSlim]) -> int:
    """First decimal place at which the smallest non-zero price step between neighbours is visible."""
    prices = [o.price for o in offers]
    if len(prices) <= 1:
        return 0
    diffs = [
        abs(a - b)
        for a, b in zip(prices, prices[1:])
        if a is not None and b is not None and a != b
    ]
    if not diffs:
        return 0
    return -math.floor(min(diffs).log10())
