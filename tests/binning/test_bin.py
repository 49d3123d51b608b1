"""Tests for Bin -- bounds, readiness predicates and lifecycle."""

from typing import List, Tuple

import pytest

from binflow.binning.bin import MAX_SUCCESSIVE_REJECTIONS, Bin, BinState, ReadyReason
from binflow.exceptions import BinningError
from binflow.flow import FlowItem, ItemQueue, Session, SessionFactory


class _FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _pulled(sizes: List[int]) -> Tuple[SessionFactory, Session, List[FlowItem]]:
    """Helper: a factory plus a session holding items of the given sizes."""
    factory = SessionFactory(ItemQueue(FlowItem(size=s) for s in sizes))
    session = factory.create_session()
    items = session.get(len(sizes))
    return factory, session, items


class TestBinOffer:
    def test_accepts_within_bounds_and_migrates(self) -> None:
        factory, intake, items = _pulled([10, 20])
        bin_ = Bin(factory.create_session(), max_entries=5)

        assert bin_.offer(items[0], intake) is True
        assert bin_.offer(items[1], intake) is True

        assert bin_.entry_count == 2
        assert bin_.size == 30
        assert items[0] in bin_.session
        assert items[0] not in intake

    def test_preserves_insertion_order(self) -> None:
        factory, intake, items = _pulled([1, 2, 3])
        bin_ = Bin(factory.create_session())
        for item in items:
            bin_.offer(item, intake)
        assert [i.item_id for i in bin_.contents] == [i.item_id for i in items]

    def test_rejects_when_max_entries_reached(self) -> None:
        factory, intake, items = _pulled([1, 1, 1])
        bin_ = Bin(factory.create_session(), max_entries=2)

        assert bin_.offer(items[0], intake)
        assert bin_.offer(items[1], intake)
        assert bin_.offer(items[2], intake) is False
        assert bin_.entry_count == 2
        assert bin_.is_full() is True
        assert items[2] in intake

    def test_rejects_item_that_would_exceed_max_size(self) -> None:
        factory, intake, items = _pulled([60, 60, 40])
        bin_ = Bin(factory.create_session(), max_size=100)

        assert bin_.offer(items[0], intake)
        assert bin_.offer(items[1], intake) is False
        assert bin_.offer(items[2], intake) is True
        assert bin_.size == 100
        assert bin_.is_full() is True

    def test_repeated_rejections_make_bin_full(self) -> None:
        factory, intake, items = _pulled([60] + [50] * (MAX_SUCCESSIVE_REJECTIONS + 1))
        bin_ = Bin(factory.create_session(), max_size=100)
        bin_.offer(items[0], intake)

        for item in items[1:-1]:
            assert bin_.offer(item, intake) is False
        assert bin_.is_full() is False

        assert bin_.offer(items[-1], intake) is False
        assert bin_.is_full() is True

    def test_offer_after_ready_raises(self) -> None:
        factory, intake, items = _pulled([1])
        bin_ = Bin(factory.create_session())
        bin_.mark_ready(ReadyReason.EVICTED)
        with pytest.raises(BinningError, match="Cannot offer"):
            bin_.offer(items[0], intake)

    def test_unbound_bin_takes_oversized_item(self) -> None:
        factory, intake, items = _pulled([10 ** 9])
        bin_ = Bin.unbound(factory.create_session(), group_id="g")
        assert bin_.offer(items[0], intake) is True
        assert bin_.is_full_enough() is True


class TestBinReadiness:
    def test_full_enough_requires_both_minimums(self) -> None:
        factory, intake, items = _pulled([5, 5, 5])
        bin_ = Bin(factory.create_session(), min_size=12, min_entries=2)

        bin_.offer(items[0], intake)
        assert bin_.is_full_enough() is False
        bin_.offer(items[1], intake)
        assert bin_.is_full_enough() is False  # 2 entries but only 10 bytes
        bin_.offer(items[2], intake)
        assert bin_.is_full_enough() is True

    def test_full_takes_precedence_over_minimums(self) -> None:
        factory, intake, items = _pulled([1, 1])
        bin_ = Bin(factory.create_session(), min_size=1000, max_entries=2)
        bin_.offer(items[0], intake)
        bin_.offer(items[1], intake)
        assert bin_.is_full_enough() is True

    def test_is_older_than(self) -> None:
        clock = _FakeClock()
        bin_ = Bin(SessionFactory(ItemQueue()).create_session(), clock=clock)

        clock.advance(5)
        assert bin_.is_older_than(10) is False
        clock.advance(6)
        assert bin_.is_older_than(10) is True
        assert bin_.is_older_than(None) is False

    def test_creation_order_breaks_timestamp_ties(self) -> None:
        clock = _FakeClock()
        factory = SessionFactory(ItemQueue())
        first = Bin(factory.create_session(), clock=clock)
        second = Bin(factory.create_session(), clock=clock)
        assert first.is_older_than_bin(second) is True
        assert second.is_older_than_bin(first) is False


class TestBinLifecycle:
    @pytest.fixture
    def bin_(self) -> Bin:
        return Bin(SessionFactory(ItemQueue()).create_session())

    def test_starts_open(self, bin_: Bin) -> None:
        assert bin_.state is BinState.OPEN
        assert bin_.ready_reason is None

    def test_ready_then_processed(self, bin_: Bin) -> None:
        bin_.mark_ready(ReadyReason.FULL)
        assert bin_.state is BinState.READY
        assert bin_.ready_reason is ReadyReason.FULL
        bin_.mark_processed()
        assert bin_.state is BinState.PROCESSED

    def test_ready_then_rolled_back(self, bin_: Bin) -> None:
        bin_.mark_ready(ReadyReason.AGED)
        bin_.mark_rolled_back()
        assert bin_.state is BinState.ROLLED_BACK

    def test_terminal_states_are_final(self, bin_: Bin) -> None:
        bin_.mark_ready(ReadyReason.THRESHOLD)
        bin_.mark_processed()
        with pytest.raises(BinningError, match="Illegal bin transition"):
            bin_.mark_rolled_back()

    def test_cannot_process_open_bin(self, bin_: Bin) -> None:
        with pytest.raises(BinningError):
            bin_.mark_processed()
