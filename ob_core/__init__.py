"""I/O-free core: offers, typed events, provisioning arithmetic and the semibook cache."""

from .events import LogEntry, Receipt, decode_event
from .interfaces import BookReader, EventFeed, FeedSubscription, OfferListPage
from .offers import BA, BS, Offer, OfferRaw, OfferSlim, Pair, raw_offer_to_offer
from .provision import GlobalConfig, LocalConfig, RawLocalConfig
from .semibook import (
    BookChange,
    MarketOrderSimulation,
    Semibook,
    SemibookOptions,
    VolumeEstimate,
    VolumeParams,
)
from .units import NATIVE_DECIMALS, TokenInfo, from_units, to_units

__all__ = [
    "BA",
    "BS",
    "BookChange",
    "BookReader",
    "EventFeed",
    "FeedSubscription",
    "GlobalConfig",
    "LocalConfig",
    "LogEntry",
    "MarketOrderSimulation",
    "NATIVE_DECIMALS",
    "Offer",
    "OfferListPage",
    "OfferRaw",
    "OfferSlim",
    "Pair",
    "RawLocalConfig",
    "Receipt",
    "Semibook",
    "SemibookOptions",
    "TokenInfo",
    "VolumeEstimate",
    "VolumeParams",
    "decode_event",
    "from_units",
    "raw_offer_to_offer",
    "to_units",
]
