from __future__ import annotations

import asyncio
import logging
import random
from decimal import Decimal
from fractions import Fraction
from itertools import permutations

from ob_core.events import OfferFail, SetGasbase
from ob_core.offers import BA
from ob_core.semibook import Semibook, SemibookOptions
from ob_feed.paper import PaperLedger

from tests._book import PAIR, TAKER, ManualFeed, StaticReader, raw, retract, success, tokens, units, write


def _snapshot(book):
    return [(o.id, o.prev, o.next, o.wants, o.gives) for o in book]


async def _empty_book(ba=BA.ASKS, **options):
    feed = ManualFeed()
    book = await Semibook.connect(StaticReader(), feed, PAIR, ba, options=SemibookOptions(**options))
    return feed, book


SCENARIO = {1: ("1", "1"), 2: ("1.2", "1"), 3: ("1", "1.2")}


def _prev_for(inserted, offer_id):
    # Ask order: ascending wants/gives.
    def price(i):
        wants, gives = SCENARIO[i]
        return Fraction(wants) / Fraction(gives)

    better = [i for i in inserted if price(i) <= price(offer_id)]
    return max(better, key=price) if better else 0


def test_insert_order_does_not_matter_for_book_order():
    async def run(order):
        feed, book = await _empty_book(max_offers=3)
        inserted = []
        for offer_id in order:
            wants, gives = SCENARIO[offer_id]
            await feed.push(write(BA.ASKS, offer_id, wants=wants, gives=gives, prev=_prev_for(inserted, offer_id)))
            inserted.append(offer_id)
        return book

    for order in permutations([1, 2, 3]):
        book = asyncio.run(run(order))
        assert [o.id for o in book] == [3, 1, 2], order
        assert [o.prev for o in book] == [None, 3, 1]
        assert book.best().id == 3 and book.worst().id == 2


def test_same_write_twice_is_idempotent():
    async def run():
        feed, book = await _empty_book()
        await feed.push(write(BA.ASKS, 1, wants=1, gives=1))
        await feed.push(write(BA.ASKS, 2, wants=2, gives=1, prev=1))
        event = write(BA.ASKS, 3, wants="1.5", gives=1, prev=1)
        await feed.push(event)
        once = _snapshot(book)
        await feed.push(event)
        return once, _snapshot(book)

    once, twice = asyncio.run(run())
    assert once == twice
    assert [row[0] for row in once] == [1, 3, 2]


def test_update_moves_offer():
    async def run():
        feed, book = await _empty_book()
        await feed.push(write(BA.ASKS, 1, wants=1, gives=1))
        await feed.push(write(BA.ASKS, 2, wants=2, gives=1, prev=1))
        await feed.push(write(BA.ASKS, 3, wants=3, gives=1, prev=2))
        await feed.push(write(BA.ASKS, 1, wants=4, gives=1, prev=3))
        return book

    book = asyncio.run(run())
    assert [o.id for o in book] == [2, 3, 1]
    assert book.get(1).price == Decimal(4)
    assert book.best().prev is None


def test_unknown_prev_on_incomplete_cache_is_ignored():
    async def run():
        reader = StaticReader({BA.ASKS: [raw(BA.ASKS, i, wants=i, gives=1) for i in range(1, 6)]})
        feed = ManualFeed()
        book = await Semibook.connect(reader, feed, PAIR, BA.ASKS, options=SemibookOptions(max_offers=2))
        await feed.push(write(BA.ASKS, 9, wants="4.5", gives=1, prev=4))
        return book

    book = asyncio.run(run())
    assert [o.id for o in book] == [1, 2]
    assert 9 not in book


def test_unknown_prev_on_complete_cache_goes_to_tail(caplog):
    async def run():
        reader = StaticReader({BA.ASKS: [raw(BA.ASKS, 1, wants=1, gives=1), raw(BA.ASKS, 2, wants=2, gives=1)]})
        feed = ManualFeed()
        book = await Semibook.connect(reader, feed, PAIR, BA.ASKS)
        assert book.is_complete
        await feed.push(write(BA.ASKS, 9, wants=3, gives=1, prev=77))
        return book

    with caplog.at_level(logging.WARNING, logger="ob_core.semibook"):
        book = asyncio.run(run())
    assert [o.id for o in book] == [1, 2, 9]
    assert book.get(9).prev == 2
    assert any("unknown prev=77" in r.getMessage() for r in caplog.records)


def test_removals_relink_and_ignore_unknown_ids():
    changes = []

    async def listener(change):
        changes.append(change)

    async def run():
        reader = StaticReader({BA.ASKS: [raw(BA.ASKS, i, wants=i, gives=1) for i in range(1, 5)]})
        feed = ManualFeed()
        book = await Semibook.connect(reader, feed, PAIR, BA.ASKS, listener=listener)
        await feed.push(retract(BA.ASKS, 42))
        await feed.push(success(BA.ASKS, 1))
        await feed.push(retract(BA.ASKS, 3))
        outbound, inbound = tokens(BA.ASKS)
        await feed.push(OfferFail(outbound, inbound, 4, TAKER, units(PAIR.base, 1), units(PAIR.quote, 4), "mgv/makerRevert"))
        return book

    book = asyncio.run(run())
    assert [o.id for o in book] == [2]
    assert book.best().prev is None and book.best().next is None
    assert [(c.kind, c.offer_id, c.offer is not None) for c in changes] == [
        ("OfferRetract", 42, False),
        ("OfferSuccess", 1, True),
        ("OfferRetract", 3, True),
        ("OfferFail", 4, True),
    ]
    fail = changes[-1]
    assert fail.taker == TAKER
    assert fail.taker_wants == Decimal(1)
    assert fail.taker_gives == Decimal(4)
    assert fail.mgv_data == "mgv/makerRevert"
    assert fail.offer.id == 4


def test_overflow_evicts_worst_and_marks_incomplete():
    async def run():
        reader = StaticReader({BA.ASKS: [raw(BA.ASKS, i, wants=i + 1, gives=1) for i in range(1, 4)]})
        feed = ManualFeed()
        book = await Semibook.connect(reader, feed, PAIR, BA.ASKS, options=SemibookOptions(max_offers=3))
        assert book.is_complete
        await feed.push(write(BA.ASKS, 7, wants=1, gives=1, prev=0))
        # Worse than everything cached: evicted right away.
        await feed.push(write(BA.ASKS, 8, wants=9, gives=1, prev=2))
        return book

    book = asyncio.run(run())
    assert [o.id for o in book] == [7, 1, 2]
    assert not book.is_complete
    assert book.worst().next == 8


def test_removals_refill_a_bounded_window():
    changes = []

    async def listener(change):
        changes.append((change.kind, change.offer_id, change.offer is not None))

    async def run():
        ledger = PaperLedger()
        for price in range(1, 6):
            ledger.new_offer(PAIR, BA.ASKS, wants=units(PAIR.quote, price), gives=units(PAIR.base, 1))
        ledger.drop_pending()
        opts = SemibookOptions(max_offers=2)
        book = await Semibook.connect(ledger, ledger, PAIR, BA.ASKS, listener=listener, options=opts)
        ledger.retract_offer(PAIR, BA.ASKS, 1)
        ledger.retract_offer(PAIR, BA.ASKS, 2)
        await ledger.flush()
        fresh = await Semibook.connect(ledger, None, PAIR, BA.ASKS, options=SemibookOptions(max_offers=2))
        return book, fresh

    book, fresh = asyncio.run(run())
    assert [o.id for o in book] == [o.id for o in fresh] == [3, 4]
    assert not book.is_complete
    assert book.best().prev is None
    # The second retract is already covered by the re-read window.
    assert changes == [("OfferRetract", 1, True), ("OfferRetract", 2, False)]


def test_logs_covered_by_a_refill_read_are_not_reapplied():
    async def run():
        asks = [raw(BA.ASKS, i, wants=i, gives=1) for i in range(1, 6)]
        reader = StaticReader({BA.ASKS: asks})
        feed = ManualFeed()
        book = await Semibook.connect(reader, feed, PAIR, BA.ASKS, options=SemibookOptions(max_offers=2))
        reader.lists[BA.ASKS] = asks[1:]
        reader.block_number = 12
        await feed.push(retract(BA.ASKS, 1), block_number=11)
        refilled = [o.id for o in book]
        await feed.push(write(BA.ASKS, 9, wants="2.5", gives=1, prev=2), block_number=12)
        covered = [o.id for o in book]
        await feed.push(write(BA.ASKS, 9, wants="2.5", gives=1, prev=2), block_number=13)
        return reader, book, refilled, covered

    reader, book, refilled, covered = asyncio.run(run())
    assert refilled == [2, 3]
    assert covered == [2, 3]
    assert [o.id for o in book] == [2, 9]
    assert book.worst().next == 3
    assert reader.count("list") == 2


def test_set_gasbase_applies_to_new_offers():
    async def run():
        feed, book = await _empty_book()
        await feed.push(SetGasbase(*tokens(BA.ASKS), 33_000))
        await feed.push(SetGasbase(*tokens(BA.BIDS), 99_000))
        await feed.push(write(BA.ASKS, 1, wants=1, gives=1))
        return book

    book = asyncio.run(run())
    assert book.offer_gasbase == 33_000
    assert book.get(1).offer_gasbase == 33_000


def test_other_side_events_are_ignored():
    async def run():
        feed, book = await _empty_book(BA.BIDS)
        await feed.push(write(BA.ASKS, 1, wants=1, gives=1))
        await feed.push(write(BA.BIDS, 1, wants=1, gives=2000))
        return book

    book = asyncio.run(run())
    assert [o.id for o in book] == [1]
    assert book.get(1).price == Decimal(2000)


def test_zero_gives_write_removes_offer():
    async def run():
        feed, book = await _empty_book()
        await feed.push(write(BA.ASKS, 1, wants=1, gives=1))
        await feed.push(write(BA.ASKS, 1, wants=1, gives=0))
        return book

    book = asyncio.run(run())
    assert len(book) == 0
    assert book.best() is None


def _random_traffic(ledger: PaperLedger, rng: random.Random, steps: int) -> None:
    for _ in range(steps):
        ba = rng.choice([BA.ASKS, BA.BIDS])
        live = ledger.offer_ids(PAIR, ba)
        op = rng.random()
        if op < 0.4 or not live:
            ledger.new_offer(PAIR, ba, wants=rng.randint(1, 10**6), gives=rng.randint(1, 10**6))
        elif op < 0.65:
            ledger.update_offer(PAIR, ba, rng.choice(live), wants=rng.randint(1, 10**6), gives=rng.randint(1, 10**6))
        elif op < 0.8:
            ledger.retract_offer(PAIR, ba, rng.choice(live))
        else:
            failing = [i for i in live if rng.random() < 0.2]
            ledger.market_order(PAIR, ba, TAKER, wants=1, gives=rng.randint(1, 3 * 10**6), fill_wants=False, failing=failing)


def _view(book):
    return [(o.id, o.wants, o.gives) for o in book]


def test_event_replay_matches_fresh_read():
    async def run(seed, max_offers):
        rng = random.Random(seed)
        ledger = PaperLedger()
        _random_traffic(ledger, rng, 20)
        ledger.drop_pending()
        opts = SemibookOptions(max_offers=max_offers)
        asks = await Semibook.connect(ledger, ledger, PAIR, BA.ASKS, options=opts)
        bids = await Semibook.connect(ledger, ledger, PAIR, BA.BIDS, options=opts)

        _random_traffic(ledger, rng, 60)
        await ledger.flush()

        fresh_asks = await Semibook.connect(ledger, None, PAIR, BA.ASKS, options=SemibookOptions(max_offers=1000))
        fresh_bids = await Semibook.connect(ledger, None, PAIR, BA.BIDS, options=SemibookOptions(max_offers=1000))
        return (asks, fresh_asks), (bids, fresh_bids)

    for seed in range(8):
        # Unbounded: the cache equals the full list.
        for cached, fresh in asyncio.run(run(seed, 1000)):
            assert _view(cached) == _view(fresh), seed
        # Bounded: the cache equals the first four offers of the full list.
        for cached, fresh in asyncio.run(run(seed, 4)):
            assert _view(cached) == _view(fresh)[:4], seed
