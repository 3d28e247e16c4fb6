import asyncio
import contextlib
import inspect
import itertools
import json
import logging
import os
import random
import ssl
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

from websockets.asyncio.client import connect as ws_connect  # type: ignore
from websockets.exceptions import ConnectionClosed  # type: ignore

from ob_core.events import LogEntry, coerce_int, decode_event
from ob_core.interfaces import EventFeed, FeedSubscription, LogCallback
from ob_core.offers import Pair
from ob_market import settings


ReorgCallback = Callable[[int], Union[None, Awaitable[None]]]


class _Subscription(FeedSubscription):
    def __init__(self, feed: "WSEventFeed", sub_id: int):
        self._feed = feed
        self._sub_id = sub_id

    def unsubscribe(self) -> None:
        self._feed._subscribers.pop(self._sub_id, None)


class WSEventFeed(EventFeed):
    """Async websocket client delivering decoded ledger logs to per-pair subscribers.

    Messages are JSON objects, either
    `{"type": "log", "address", "block_number", "log_index", "tx_hash", "event": {"name", "args"}}`
    or `{"type": "reorg", "block_number"}`. Each subscriber callback is
    awaited before the next one runs, so logs are handled strictly in
    arrival order.
    """

    def __init__(
        self,
        ws_url: Optional[str] = None,
        on_reorg: Optional[ReorgCallback] = None,
        on_open: Optional[Callable[[], None]] = None,
        on_status: Optional[Callable[[str, dict], None]] = None,
        insecure_tls: Optional[bool] = None,
        ping_interval_s: Optional[int] = None,
        ping_timeout_s: Optional[int] = None,
        reconnect_backoff_s: Optional[float] = None,
        reconnect_backoff_max_s: Optional[float] = None,
        recv_poll_timeout_s: Optional[float] = None,
        max_queue: int = 1024,
    ):
        self.ws_url = ws_url or settings.FEED_URL
        self.on_reorg_cb = on_reorg
        self.on_open_cb = on_open
        self.on_status_cb = on_status
        self.insecure_tls = settings.INSECURE_TLS if insecure_tls is None else bool(insecure_tls)

        def pick(value, default):
            return default if value is None else value

        self.ping_interval_s = max(0, int(pick(ping_interval_s, settings.WS_PING_INTERVAL_S)))
        self.ping_timeout_s = max(1, int(pick(ping_timeout_s, settings.WS_PING_TIMEOUT_S)))
        self.reconnect_backoff_s = max(0.0, float(pick(reconnect_backoff_s, settings.WS_RECONNECT_BACKOFF_S)))
        self.reconnect_backoff_max_s = max(
            self.reconnect_backoff_s, float(pick(reconnect_backoff_max_s, settings.WS_RECONNECT_BACKOFF_MAX_S))
        )
        self.recv_poll_timeout_s = max(0.5, float(pick(recv_poll_timeout_s, settings.WS_RECV_POLL_TIMEOUT_S)))
        self.max_queue = max(1, int(max_queue))

        self._subscribers: Dict[int, Tuple[Pair, LogCallback]] = {}
        self._sub_ids = itertools.count(1)
        self._ws = None
        self._stop = False
        self._log = logging.getLogger("ob_feed.ws_feed")
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ---------------------------------------------------------- subscribers

    def subscribe(self, pair: Pair, callback: LogCallback) -> FeedSubscription:
        sub_id = next(self._sub_ids)
        self._subscribers[sub_id] = (pair, callback)
        return _Subscription(self, sub_id)

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def deliver(self, entry: LogEntry) -> None:
        """Hand `entry` to every subscriber whose pair it concerns, in subscription order."""
        event = entry.event
        for sub_id, (pair, callback) in list(self._subscribers.items()):
            if sub_id not in self._subscribers:
                continue
            if pair.side_of(event.outbound_tkn, event.inbound_tkn) is None:
                continue
            try:
                await callback(entry)
            except Exception:
                self._log.exception("Subscriber error (block=%s kind=%s)", entry.block_number, event.kind)

    # ------------------------------------------------------------- messages

    def _emit_status(self, typ: str, details: dict) -> None:
        try:
            if self.on_status_cb:
                self.on_status_cb(typ, details)
        except Exception:
            self._log.exception("Status callback error (type=%s)", typ)

    @staticmethod
    def parse_log(payload: dict) -> LogEntry:
        event = payload["event"]
        return LogEntry(
            address=str(payload["address"]),
            event=decode_event(event["name"], event.get("args", {})),
            block_number=coerce_int(payload["block_number"]),
            log_index=coerce_int(payload.get("log_index", 0)),
            tx_hash=payload.get("tx_hash"),
        )

    async def handle_message(self, msg: Union[str, bytes]) -> None:
        try:
            payload = json.loads(msg)
        except Exception:
            self._log.exception("Failed to parse WS message")
            return

        typ = payload.get("type")
        if typ == "log":
            try:
                entry = self.parse_log(payload)
            except (KeyError, TypeError, ValueError) as exc:
                self._log.warning("Dropping undecodable log: %s", exc)
                self._emit_status("log_decode_error", {"error": str(exc)})
                return
            await self.deliver(entry)
        elif typ == "reorg":
            block = coerce_int(payload.get("block_number", 0))
            self._emit_status("reorg", {"block_number": block})
            if self.on_reorg_cb:
                try:
                    result = self.on_reorg_cb(block)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    self._log.exception("Reorg callback error (block=%s)", block)
        else:
            self._log.debug("Ignoring WS message type=%s", typ)

    # ----------------------------------------------------------- connection

    async def _ping_loop(self) -> None:
        if self.ping_interval_s <= 0 or self._ws is None:
            return
        while not self._stop:
            await asyncio.sleep(self.ping_interval_s)
            if self._stop or self._ws is None:
                return
            try:
                payload = os.urandom(4)
                pong_waiter = await self._ws.ping(payload)
                await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout_s)
            except Exception as exc:
                self._emit_status("ws_ping_timeout", {"error": str(exc)})
                with contextlib.suppress(Exception):
                    await self._ws.close()
                return

    async def _read_loop(self) -> None:
        assert self._ws is not None
        while not self._stop:
            try:
                msg = await asyncio.wait_for(self._ws.recv(), timeout=self.recv_poll_timeout_s)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosed as exc:
                self._emit_status("ws_close", {"code": getattr(exc, "code", None), "msg": str(exc)})
                return
            except Exception as exc:
                self._emit_status("ws_error", {"error": str(exc)})
                return

            if msg is None:
                return
            await self.handle_message(msg)

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.insecure_tls:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def _backoff(self, attempt: int) -> float:
        base = self.reconnect_backoff_s
        cap = self.reconnect_backoff_max_s
        if base <= 0.0 or cap <= 0.0:
            return 0.0
        backoff = min(cap, base * (2 ** max(0, attempt - 1)))
        return backoff * (0.7 + 0.6 * random.random())

    async def run_async(self) -> None:
        """Connect and deliver logs until `close()`, reconnecting with backoff."""
        self._loop = asyncio.get_running_loop()
        self._stop = False
        attempt = 0

        while not self._stop:
            attempt += 1
            ssl_ctx = self._ssl_context()
            try:
                connect_kwargs = {
                    "ping_interval": None,
                    "ping_timeout": None,
                    "close_timeout": 5,
                    "max_queue": self.max_queue,
                }
                if ssl_ctx is not None:
                    connect_kwargs["ssl"] = ssl_ctx
                async with ws_connect(self.ws_url, **connect_kwargs) as ws:
                    self._ws = ws
                    if self.on_open_cb:
                        self.on_open_cb()
                    self._emit_status("ws_connect", {"attempt": attempt})
                    attempt = 0

                    ping_task = asyncio.create_task(self._ping_loop())
                    try:
                        await self._read_loop()
                    finally:
                        ping_task.cancel()
                        with contextlib.suppress(BaseException):
                            await ping_task
            except Exception as exc:
                self._emit_status("ws_run_exception", {"error": str(exc)})
                self._log.exception("WebSocket run exception")
            finally:
                self._ws = None

            if self._stop:
                break

            backoff = self._backoff(max(1, attempt))
            self._emit_status("ws_reconnect_wait", {"sleep_s": float(backoff), "attempt": attempt})
            await asyncio.sleep(backoff)

    def run(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            raise RuntimeError("WSEventFeed.run() cannot be called from an active event loop; await run_async().")
        asyncio.run(self.run_async())

    def close(self) -> None:
        self._stop = True
        ws = self._ws
        if ws is None:
            return
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(ws.close())
            return
        except RuntimeError:
            loop = self._loop
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(ws.close(), loop)
