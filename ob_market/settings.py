from __future__ import annotations

import os

from ob_core import provision, semibook


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


# Book cache
# OB_DEFAULT_MAX_OFFERS is read once by ob_core.semibook.
DEFAULT_MAX_OFFERS = semibook.DEFAULT_MAX_OFFERS
MAX_MARKET_ORDER_GAS = _env_int("OB_MAX_MARKET_ORDER_GAS", provision.MAX_MARKET_ORDER_GAS)

# JSON-RPC book reader
READER_URL = os.getenv("OB_READER_URL", "http://127.0.0.1:8545")
READER_TIMEOUT_S = _env_float("OB_READER_TIMEOUT_S", 10.0)
READER_RETRY_MAX = _env_int("OB_READER_RETRY_MAX", 3)
READER_RETRY_BACKOFF_S = _env_float("OB_READER_RETRY_BACKOFF_S", 0.5)
READER_RETRY_BACKOFF_MAX_S = _env_float("OB_READER_RETRY_BACKOFF_MAX_S", 5.0)

# WS event feed keepalive/reconnect
FEED_URL = os.getenv("OB_FEED_URL", "ws://127.0.0.1:8546")
WS_PING_INTERVAL_S = _env_int("WS_PING_INTERVAL_S", 20)
WS_PING_TIMEOUT_S = _env_int("WS_PING_TIMEOUT_S", 60)
WS_RECONNECT_BACKOFF_S = _env_float("WS_RECONNECT_BACKOFF_S", 1.0)
WS_RECONNECT_BACKOFF_MAX_S = _env_float("WS_RECONNECT_BACKOFF_MAX_S", 30.0)
WS_RECV_POLL_TIMEOUT_S = _env_float("WS_RECV_POLL_TIMEOUT_S", 5.0)

# TLS verification should remain enabled by default.
INSECURE_TLS = _env_bool("INSECURE_TLS", False)
