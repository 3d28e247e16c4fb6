from __future__ import annotations

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping, Optional

import yaml

from ob_core.offers import Pair
from ob_core.units import TokenInfo

from . import settings
from .market import BookOptions, MarketVolumeParams


DEFAULT_CONFIG_PATH = "config/config.example.yaml"


def load_config(default_path: str = DEFAULT_CONFIG_PATH) -> dict:
    path = os.getenv("CONFIG_PATH", default_path)
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


@dataclass(frozen=True)
class MarketConfig:
    """Everything needed to connect one market, read once at startup.

    `tokens` is a read-only snapshot; nothing downstream registers tokens.
    """

    tokens: Mapping[str, TokenInfo]
    base: str
    quote: str
    exchange_address: str
    order_address: Optional[str]
    reader_url: str
    feed_url: str
    book: BookOptions
    log_level: str = "INFO"

    def token(self, name: str) -> TokenInfo:
        try:
            return self.tokens[name]
        except KeyError:
            raise ValueError(f"Unknown token {name!r}; known: {sorted(self.tokens)}") from None

    @property
    def pair(self) -> Pair:
        return Pair(base=self.token(self.base), quote=self.token(self.quote))


def _parse_tokens(raw: Mapping[str, Any]) -> Mapping[str, TokenInfo]:
    tokens = {}
    for name, entry in (raw or {}).items():
        if "address" not in entry or "decimals" not in entry:
            raise ValueError(f"Token {name!r} needs both address and decimals")
        tokens[name] = TokenInfo(name=name, address=str(entry["address"]), decimals=int(entry["decimals"]))
    return MappingProxyType(tokens)


def _parse_book(raw: Optional[Mapping[str, Any]]) -> BookOptions:
    raw = raw or {}
    desired_volume = raw.get("desired_volume")
    return BookOptions(
        max_offers=raw.get("max_offers"),
        desired_price=raw.get("desired_price"),
        desired_volume=MarketVolumeParams(**desired_volume) if desired_volume else None,
        chunk_size=raw.get("chunk_size"),
    )


def market_config_from_dict(cfg: Mapping[str, Any]) -> MarketConfig:
    market = cfg.get("market") or {}
    contracts = cfg.get("contracts") or {}
    if "base" not in market or "quote" not in market:
        raise ValueError("market.base and market.quote are required")
    if not contracts.get("exchange"):
        raise ValueError("contracts.exchange is required")
    config = MarketConfig(
        tokens=_parse_tokens(cfg.get("tokens")),
        base=market["base"],
        quote=market["quote"],
        exchange_address=contracts["exchange"],
        order_address=contracts.get("order"),
        reader_url=cfg.get("reader_url", settings.READER_URL),
        feed_url=cfg.get("feed_url", settings.FEED_URL),
        book=_parse_book(cfg.get("book")),
        log_level=cfg.get("log_level", "INFO"),
    )
    # Fail on unknown token names at load time rather than at connect.
    config.pair
    return config


def load_market_config(default_path: str = DEFAULT_CONFIG_PATH) -> MarketConfig:
    return market_config_from_dict(load_config(default_path))
