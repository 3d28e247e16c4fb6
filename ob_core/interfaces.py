from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from .events import LogEntry
from .offers import BA, OfferRaw, Pair
from .provision import GlobalConfig, RawLocalConfig


LogCallback = Callable[[LogEntry], Awaitable[None]]


@dataclass(frozen=True)
class OfferListPage:
    offers: List[OfferRaw] = field(default_factory=list)
    has_more: bool = False
    # Block the page was read at, if the reader knows it.
    block_number: Optional[int] = None


class BookReader(ABC):
    """Paginated read access to the ledger's offer lists."""

    @abstractmethod
    async def read_offer_list_prefix(
        self,
        pair: Pair,
        ba: BA,
        start_after_id: Optional[int],
        count: int,
        block_number: Optional[int] = None,
    ) -> OfferListPage:
        """Return up to `count` offers following `start_after_id` (None: from the best offer)."""

    @abstractmethod
    async def read_offer_detail(self, pair: Pair, ba: BA, offer_id: int) -> OfferRaw:
        """Return one offer, live or not."""

    @abstractmethod
    async def read_list_config(self, pair: Pair, ba: BA) -> RawLocalConfig:
        """Return the offer list configuration."""

    @abstractmethod
    async def read_global_config(self) -> GlobalConfig:
        """Return the exchange-wide configuration (gasprice, gasmax, ...)."""


class FeedSubscription(ABC):
    @abstractmethod
    def unsubscribe(self) -> None:
        raise NotImplementedError


class EventFeed(ABC):
    """Ordered, at-least-once delivery of ledger logs.

    Logs arrive in block order and, within a block, in log-index order. The
    feed awaits each callback before delivering the next log.
    """

    @abstractmethod
    def subscribe(self, pair: Pair, callback: LogCallback) -> FeedSubscription:
        raise NotImplementedError
