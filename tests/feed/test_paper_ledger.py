from __future__ import annotations

import asyncio

import pytest

from ob_core.events import OfferSuccess, OfferWrite, OrderComplete, SetGasbase
from ob_core.offers import BA, Pair
from ob_feed.paper import PaperLedger

from tests._book import DAI, PAIR, TAKER, USDC, WETH, units


def _ledger_with_asks(*prices):
    ledger = PaperLedger()
    for price in prices:
        ledger.new_offer(PAIR, BA.ASKS, wants=units(USDC, price), gives=units(WETH, 1))
    return ledger


def test_offers_are_kept_in_price_time_order():
    ledger = _ledger_with_asks(2000, 1900, 2000, 2100)
    assert ledger.offer_ids(PAIR, BA.ASKS) == [2, 1, 3, 4]
    writes = [e.event for e in ledger.pending_logs()]
    assert all(isinstance(e, OfferWrite) for e in writes)
    # prev is the neighbour at insertion time.
    assert [w.prev for w in writes] == [0, 0, 1, 3]
    assert [e.block_number for e in ledger.pending_logs()] == [1, 2, 3, 4]


def test_prefix_pages_link_offers():
    ledger = _ledger_with_asks(2000, 1900, 2100)

    async def run():
        first = await ledger.read_offer_list_prefix(PAIR, BA.ASKS, None, 2)
        rest = await ledger.read_offer_list_prefix(PAIR, BA.ASKS, first.offers[-1].id, 2)
        return first, rest

    first, rest = asyncio.run(run())
    assert [(o.id, o.prev, o.next) for o in first.offers] == [(2, 0, 1), (1, 2, 3)]
    assert first.has_more is True
    assert [(o.id, o.prev, o.next) for o in rest.offers] == [(3, 1, 0)]
    assert rest.has_more is False
    assert first.block_number == 3
    assert ledger.reads["offer_list"] == 2


def test_retracted_offer_is_dead_but_readable():
    ledger = _ledger_with_asks(2000)
    ledger.retract_offer(PAIR, BA.ASKS, 1)
    detail = asyncio.run(ledger.read_offer_detail(PAIR, BA.ASKS, 1))
    assert detail.gives == 0
    assert ledger.offer_ids(PAIR, BA.ASKS) == []
    with pytest.raises(ValueError):
        ledger.retract_offer(PAIR, BA.ASKS, 1)
    # Updating revives it.
    ledger.update_offer(PAIR, BA.ASKS, 1, wants=units(USDC, 1000), gives=units(WETH, 1))
    assert ledger.offer_ids(PAIR, BA.ASKS) == [1]


def test_invalid_maker_operations():
    ledger = _ledger_with_asks(2000)
    with pytest.raises(ValueError):
        ledger.new_offer(PAIR, BA.ASKS, wants=1, gives=0)
    with pytest.raises(ValueError):
        ledger.update_offer(PAIR, BA.ASKS, 1, wants=1, gives=0)
    with pytest.raises(ValueError):
        ledger.update_offer(PAIR, BA.ASKS, 42, wants=1, gives=1)
    assert ledger.offer_ids(PAIR, BA.ASKS) == [1]


def test_configure_logs_gasbase_changes_only():
    ledger = PaperLedger()
    ledger.configure(PAIR, BA.BIDS, fee=30, density=5)
    ledger.configure(PAIR, BA.BIDS, offer_gasbase=20_000)
    ledger.configure(PAIR, BA.BIDS, offer_gasbase=20_000)
    events = [e.event for e in ledger.pending_logs()]
    assert len(events) == 1
    assert isinstance(events[0], SetGasbase)
    assert events[0].outbound_tkn == USDC.address

    config = asyncio.run(ledger.read_list_config(PAIR, BA.BIDS))
    assert (config.fee, config.density, config.offer_gasbase) == (30, 5, 20_000)


def test_market_order_takes_best_first_within_limit_price():
    ledger = _ledger_with_asks(2000, 2100, 2500)
    ledger.drop_pending()
    receipt = ledger.market_order(PAIR, BA.ASKS, TAKER, wants=units(WETH, 3), gives=units(USDC, 6600))
    kinds = [type(e.event) for e in receipt.logs]
    assert kinds == [OfferSuccess, OfferSuccess, OrderComplete]
    complete = receipt.logs[-1].event
    assert complete.taker_got == units(WETH, 2)
    assert complete.taker_gave == units(USDC, 4100)
    assert ledger.offer_ids(PAIR, BA.ASKS) == [3]
    assert receipt.sender == TAKER
    assert {e.tx_hash for e in receipt.logs} == {receipt.tx_hash}


def test_market_order_fee_is_taken_from_outbound():
    ledger = PaperLedger()
    ledger.configure(PAIR, BA.ASKS, fee=100)
    ledger.new_offer(PAIR, BA.ASKS, wants=units(USDC, 2000), gives=units(WETH, 1))
    receipt = ledger.market_order(PAIR, BA.ASKS, TAKER, wants=units(WETH, 1), gives=units(USDC, 2000))
    complete = receipt.logs[-1].event
    assert complete.taker_got == units(WETH, "0.99")
    assert complete.fee_paid == units(WETH, "0.01")


def test_flush_delivers_in_order_to_matching_pairs():
    ledger = PaperLedger()
    seen = []
    other = []

    async def cb(entry):
        seen.append((type(entry.event).__name__, entry.block_number))

    async def other_cb(entry):
        other.append(entry)

    async def run():
        ledger.subscribe(PAIR, cb)
        sub = ledger.subscribe(Pair(base=DAI, quote=USDC), other_cb)
        offer_id = ledger.new_offer(PAIR, BA.BIDS, wants=units(WETH, 1), gives=units(USDC, 1900))
        ledger.retract_offer(PAIR, BA.BIDS, offer_id)
        delivered = await ledger.flush()
        sub.unsubscribe()
        return delivered

    assert asyncio.run(run()) == 2
    assert seen == [("OfferWrite", 1), ("OfferRetract", 2)]
    assert other == []
    assert ledger.subscriber_count() == 1
    assert ledger.pending_logs() == []
