"""Transports for the book core: websocket event feed, JSON-RPC reader, paper ledger."""

from .http_reader import JsonRpcBookReader, JsonRpcError
from .paper import PaperLedger
from .ws_feed import WSEventFeed

__all__ = ["JsonRpcBookReader", "JsonRpcError", "PaperLedger", "WSEventFeed"]
