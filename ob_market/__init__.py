"""Market dispatcher, trade reconciliation and the market's config/logging setup."""

from .market import BaseQuote, Book, BookOptions, Market, MarketVolumeParams
from .trade_events import (
    Failure,
    OfferWriteRecord,
    OrderResult,
    Success,
    Summary,
    is_order_result,
    reconcile_trade,
)

__all__ = [
    "BaseQuote",
    "Book",
    "BookOptions",
    "Failure",
    "Market",
    "MarketVolumeParams",
    "OfferWriteRecord",
    "OrderResult",
    "Success",
    "Summary",
    "is_order_result",
    "reconcile_trade",
]
