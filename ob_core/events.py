"""Typed ledger events and the envelopes that carry them.

Book events mutate an offer list (`OfferWrite`, `OfferFail`, `OfferSuccess`,
`OfferRetract`, `SetGasbase`). Trade events only matter when reconciling a
receipt (`OrderComplete`, `PosthookFail`, and the order helper's
`OrderSummary` / `NewOwnedOffer`). Amounts are integer token units.
"""

from __future__ import annotations

from dataclasses import MISSING, dataclass, field, fields
from typing import Any, ClassVar, List, Mapping, Optional, Union


@dataclass(frozen=True)
class OfferWrite:
    kind: ClassVar[str] = "OfferWrite"

    outbound_tkn: str
    inbound_tkn: str
    maker: str
    wants: int
    gives: int
    gasprice: int
    gasreq: int
    id: int
    prev: int


@dataclass(frozen=True)
class OfferFail:
    kind: ClassVar[str] = "OfferFail"

    outbound_tkn: str
    inbound_tkn: str
    id: int
    taker: str
    taker_wants: int
    taker_gives: int
    mgv_data: str


@dataclass(frozen=True)
class OfferSuccess:
    kind: ClassVar[str] = "OfferSuccess"

    outbound_tkn: str
    inbound_tkn: str
    id: int
    taker: str
    taker_wants: int
    taker_gives: int


@dataclass(frozen=True)
class OfferRetract:
    kind: ClassVar[str] = "OfferRetract"

    outbound_tkn: str
    inbound_tkn: str
    id: int


@dataclass(frozen=True)
class SetGasbase:
    kind: ClassVar[str] = "SetGasbase"

    outbound_tkn: str
    inbound_tkn: str
    offer_gasbase: int


@dataclass(frozen=True)
class OrderComplete:
    kind: ClassVar[str] = "OrderComplete"

    outbound_tkn: str
    inbound_tkn: str
    taker: str
    taker_got: int
    taker_gave: int
    penalty: int
    # Absent on ledgers that predate fee reporting.
    fee_paid: Optional[int] = None


@dataclass(frozen=True)
class PosthookFail:
    kind: ClassVar[str] = "PosthookFail"

    outbound_tkn: str
    inbound_tkn: str
    offer_id: int
    posthook_data: str


@dataclass(frozen=True)
class OrderSummary:
    kind: ClassVar[str] = "OrderSummary"

    outbound_tkn: str
    inbound_tkn: str
    taker: str
    taker_got: int
    taker_gave: int
    bounty: int
    fee: int = 0


@dataclass(frozen=True)
class NewOwnedOffer:
    kind: ClassVar[str] = "NewOwnedOffer"

    outbound_tkn: str
    inbound_tkn: str
    offer_id: int
    owner: str


BookEvent = Union[OfferWrite, OfferFail, OfferSuccess, OfferRetract, SetGasbase]
TradeEvent = Union[OrderComplete, OfferSuccess, OfferFail, PosthookFail, OfferWrite, OrderSummary, NewOwnedOffer]
Event = Union[
    OfferWrite,
    OfferFail,
    OfferSuccess,
    OfferRetract,
    SetGasbase,
    OrderComplete,
    PosthookFail,
    OrderSummary,
    NewOwnedOffer,
]

BOOK_EVENT_TYPES = (OfferWrite, OfferFail, OfferSuccess, OfferRetract, SetGasbase)

_EVENT_TYPES = {
    cls.kind: cls
    for cls in (
        OfferWrite,
        OfferFail,
        OfferSuccess,
        OfferRetract,
        SetGasbase,
        OrderComplete,
        PosthookFail,
        OrderSummary,
        NewOwnedOffer,
    )
}

_STR_FIELDS = {"outbound_tkn", "inbound_tkn", "maker", "taker", "mgv_data", "posthook_data", "owner"}


@dataclass(frozen=True)
class LogEntry:
    """One decoded log as delivered by the event feed or found in a receipt."""

    address: str
    event: Event
    block_number: int
    log_index: int = 0
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class Receipt:
    sender: str
    to: Optional[str]
    logs: List[LogEntry] = field(default_factory=list)
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None


def decode_event(name: str, args: Mapping[str, Any]) -> Event:
    """Build a typed event from its name and a mapping of arguments.

    Integer fields accept ints or decimal/hex strings. Optional fields may be
    omitted; any other missing field is a ValueError.
    """
    cls = _EVENT_TYPES.get(name)
    if cls is None:
        raise ValueError(f"Unknown event kind {name!r}")
    kwargs = {}
    for f in fields(cls):
        if f.name not in args:
            if f.default is MISSING and f.default_factory is MISSING:
                raise ValueError(f"{name} missing field {f.name!r}")
            continue
        value = args[f.name]
        if f.name in _STR_FIELDS:
            kwargs[f.name] = str(value)
        elif value is None:
            kwargs[f.name] = None
        else:
            kwargs[f.name] = coerce_int(value)
    return cls(**kwargs)


def coerce_int(value) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    return int(value)
