from __future__ import annotations

import asyncio
import logging

import pytest

from ob_core.offers import BA
from ob_feed.paper import PaperLedger
from ob_market.market import Market

from tests._book import EXCHANGE, ORDER, PAIR, USDC, WETH, units


async def _market(ledger=None, **kwargs):
    ledger = ledger or PaperLedger()
    market = await Market.connect(ledger, ledger, PAIR, exchange_address=EXCHANGE, order_address=ORDER, **kwargs)
    return ledger, market


def _ask(ledger, wants=2000, gives=1):
    return ledger.new_offer(PAIR, BA.ASKS, wants=units(USDC, wants), gives=units(WETH, gives))


def _bid(ledger, wants=1, gives=1900):
    return ledger.new_offer(PAIR, BA.BIDS, wants=units(WETH, wants), gives=units(USDC, gives))


def test_subscribers_are_called_in_registration_order():
    seen = []

    async def run():
        ledger, market = await _market()
        market.subscribe(lambda c: seen.append(("a", c.ba, c.offer_id)))

        async def second(change):
            seen.append(("b", change.ba, change.offer_id))

        market.subscribe(second)
        _ask(ledger)
        _bid(ledger)
        await ledger.flush()
        return market

    market = asyncio.run(run())
    assert seen == [
        ("a", BA.ASKS, 1),
        ("b", BA.ASKS, 1),
        ("a", BA.BIDS, 1),
        ("b", BA.BIDS, 1),
    ]
    assert market.subscription_count() == 2


def test_once_with_sync_filter_resolves_with_callback_result():
    async def run():
        ledger, market = await _market()
        fut = market.once(lambda c: (c.kind, c.offer_id), filter=lambda c: c.ba is BA.BIDS)
        _ask(ledger)
        _bid(ledger)
        await ledger.flush()
        return await fut, market

    result, market = asyncio.run(run())
    assert result == ("OfferWrite", 1)
    assert market.subscription_count() == 0


def test_once_with_async_filter_and_callback():
    async def is_retract(change):
        return change.kind == "OfferRetract"

    async def offer_of(change):
        return change.offer.id

    async def run():
        ledger, market = await _market()
        offer_id = _ask(ledger)
        fut = market.once(offer_of, filter=is_retract)
        ledger.retract_offer(PAIR, BA.ASKS, offer_id)
        await ledger.flush()
        return await asyncio.wait_for(fut, timeout=1)

    assert asyncio.run(run()) == 1


def test_cancelled_once_is_dropped():
    calls = []

    async def run():
        ledger, market = await _market()
        fut = market.once(calls.append)
        fut.cancel()
        await asyncio.sleep(0)
        count = market.subscription_count()
        _ask(ledger)
        await ledger.flush()
        return count

    assert asyncio.run(run()) == 0
    assert calls == []


def test_failing_subscriber_does_not_stop_others(caplog):
    seen = []

    def broken(change):
        raise RuntimeError("subscriber bug")

    async def run():
        ledger, market = await _market()
        market.subscribe(broken)
        market.subscribe(lambda c: seen.append(c.offer_id))
        _ask(ledger)
        _ask(ledger, wants=2100)
        await ledger.flush()

    with caplog.at_level(logging.ERROR, logger="ob_market.market"):
        asyncio.run(run())
    assert seen == [1, 2]
    assert sum("Market subscriber failed" in r.getMessage() for r in caplog.records) == 2


def test_once_surfaces_callback_and_filter_errors():
    def boom(change):
        raise ValueError("callback")

    def bad_filter(change):
        raise KeyError("filter")

    async def run():
        ledger, market = await _market()
        from_callback = market.once(boom)
        from_filter = market.once(lambda c: c, filter=bad_filter)
        _ask(ledger)
        await ledger.flush()
        with pytest.raises(ValueError, match="callback"):
            await from_callback
        with pytest.raises(KeyError):
            await from_filter
        return market

    market = asyncio.run(run())
    assert market.subscription_count() == 0


def test_unsubscribe_stops_notifications():
    seen = []

    async def run():
        ledger, market = await _market()
        callback = seen.append
        market.subscribe(callback)
        _ask(ledger)
        await ledger.flush()
        market.unsubscribe(callback)
        market.unsubscribe(callback)
        _ask(ledger)
        await ledger.flush()

    asyncio.run(run())
    assert len(seen) == 1


def test_lifecycle_errors():
    async def run():
        ledger = PaperLedger()
        market = await Market.connect(ledger, ledger, PAIR, no_init=True)
        with pytest.raises(RuntimeError, match="not initialized"):
            market.get_book()
        with pytest.raises(RuntimeError, match="not initialized"):
            market.close()
        await market.initialize()
        with pytest.raises(RuntimeError, match="already initialized"):
            await market.initialize()
        assert ledger.subscriber_count() == 2
        market.close()
        with pytest.raises(RuntimeError, match="already closed"):
            market.close()
        return ledger

    ledger = asyncio.run(run())
    assert ledger.subscriber_count() == 0


def test_closed_market_stops_dispatching():
    seen = []

    async def run():
        ledger, market = await _market()
        market.subscribe(seen.append)
        market.close()
        _ask(ledger)
        await ledger.flush()

    asyncio.run(run())
    assert seen == []


def test_failed_initialize_closes_the_side_that_connected():
    class _BidsDown(PaperLedger):
        async def read_list_config(self, pair, ba):
            if ba is BA.BIDS:
                raise RuntimeError("bids unavailable")
            return await super().read_list_config(pair, ba)

    async def run():
        ledger = _BidsDown()
        with pytest.raises(RuntimeError, match="bids unavailable"):
            await Market.connect(ledger, ledger, PAIR)
        return ledger

    assert asyncio.run(run()).subscriber_count() == 0
