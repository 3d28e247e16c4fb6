from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Callable, Mapping, Optional

import requests

from ob_core.events import coerce_int
from ob_core.interfaces import BookReader, OfferListPage
from ob_core.offers import BA, OfferRaw, Pair
from ob_core.provision import GlobalConfig, RawLocalConfig
from ob_market import settings


log = logging.getLogger("ob_feed.http_reader")


class JsonRpcError(RuntimeError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, error: Mapping[str, Any]):
        self.method = method
        self.code = error.get("code")
        super().__init__(f"{method} failed: {error.get('message', error)} (code={self.code})")


def _call_with_retry(fn: Callable[[], Any], attempts: int, backoff_s: float, backoff_max_s: float):
    """Retry transport failures with exponential backoff; JSON-RPC errors are final."""
    attempts = max(1, int(attempts))
    delay = max(0.0, float(backoff_s))
    backoff_max_s = max(delay, float(backoff_max_s))
    last_exc: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except requests.RequestException as exc:
            last_exc = exc
            log.warning("JSON-RPC attempt %d/%d failed: %s", attempt, attempts, exc)
            if attempt >= attempts:
                break
            if delay > 0:
                time.sleep(delay)
                delay = min(backoff_max_s, delay * 2)
    raise RuntimeError(f"JSON-RPC call failed after {attempts} attempts") from last_exc


def _offer_raw(data: Mapping[str, Any]) -> OfferRaw:
    return OfferRaw(
        id=coerce_int(data["id"]),
        prev=coerce_int(data.get("prev", 0)),
        gasprice=coerce_int(data["gasprice"]),
        maker=str(data["maker"]),
        gasreq=coerce_int(data["gasreq"]),
        wants=coerce_int(data["wants"]),
        gives=coerce_int(data["gives"]),
        next=coerce_int(data.get("next", 0)),
        offer_gasbase=coerce_int(data.get("offer_gasbase", 0)),
    )


class JsonRpcBookReader(BookReader):
    """`BookReader` over a node's `book_*` JSON-RPC methods.

    Calls are blocking `requests` posts run in a worker thread; the retry
    policy for the whole core lives here.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout_s: Optional[float] = None,
        retry_max: Optional[int] = None,
        retry_backoff_s: Optional[float] = None,
        retry_backoff_max_s: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.url = url or settings.READER_URL
        self.timeout_s = settings.READER_TIMEOUT_S if timeout_s is None else float(timeout_s)
        self.retry_max = settings.READER_RETRY_MAX if retry_max is None else int(retry_max)
        self.retry_backoff_s = settings.READER_RETRY_BACKOFF_S if retry_backoff_s is None else float(retry_backoff_s)
        self.retry_backoff_max_s = (
            settings.READER_RETRY_BACKOFF_MAX_S if retry_backoff_max_s is None else float(retry_backoff_max_s)
        )
        self._session = session
        self._ids = itertools.count(1)

    def _post(self, method: str, params: Mapping[str, Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        post = self._session.post if self._session is not None else requests.post
        resp = post(self.url, json=body, timeout=self.timeout_s)
        resp.raise_for_status()
        payload = resp.json()
        if payload.get("error") is not None:
            raise JsonRpcError(method, payload["error"])
        return payload.get("result")

    def call(self, method: str, params: Mapping[str, Any]) -> Any:
        return _call_with_retry(
            lambda: self._post(method, params),
            self.retry_max,
            self.retry_backoff_s,
            self.retry_backoff_max_s,
        )

    async def _call(self, method: str, params: Mapping[str, Any]) -> Any:
        return await asyncio.to_thread(self.call, method, params)

    @staticmethod
    def _list_params(pair: Pair, ba: BA) -> dict:
        outbound, inbound = pair.outbound_inbound(ba)
        return {"outbound_tkn": outbound.address, "inbound_tkn": inbound.address}

    async def read_offer_list_prefix(
        self,
        pair: Pair,
        ba: BA,
        start_after_id: Optional[int],
        count: int,
        block_number: Optional[int] = None,
    ) -> OfferListPage:
        params = self._list_params(pair, ba)
        params.update({"start_after": int(start_after_id or 0), "count": int(count)})
        if block_number is not None:
            params["block_number"] = int(block_number)
        result = await self._call("book_offerList", params)
        block = result.get("block_number")
        return OfferListPage(
            offers=[_offer_raw(o) for o in result.get("offers", [])],
            has_more=bool(result.get("has_more", False)),
            block_number=None if block is None else coerce_int(block),
        )

    async def read_offer_detail(self, pair: Pair, ba: BA, offer_id: int) -> OfferRaw:
        params = self._list_params(pair, ba)
        params["offer_id"] = int(offer_id)
        return _offer_raw(await self._call("book_offerDetail", params))

    async def read_list_config(self, pair: Pair, ba: BA) -> RawLocalConfig:
        result = await self._call("book_localConfig", self._list_params(pair, ba))
        return RawLocalConfig(
            active=bool(result["active"]),
            fee=coerce_int(result["fee"]),
            density=coerce_int(result["density"]),
            offer_gasbase=coerce_int(result["offer_gasbase"]),
            lock=bool(result.get("lock", False)),
            best=coerce_int(result.get("best", 0)),
            last=coerce_int(result.get("last", 0)),
        )

    async def read_global_config(self) -> GlobalConfig:
        result = await self._call("book_globalConfig", {})
        return GlobalConfig(
            monitor=str(result.get("monitor", "")),
            use_oracle=bool(result.get("use_oracle", False)),
            notify=bool(result.get("notify", False)),
            gasprice=coerce_int(result["gasprice"]),
            gasmax=coerce_int(result["gasmax"]),
            dead=bool(result.get("dead", False)),
        )
