"""Tests for BinningScheduler -- background activations and lifecycle."""

import threading
import time
from typing import Callable, List
from unittest.mock import MagicMock

import pytest

from binflow.binning.engine import BinningEngine, TriggerResult
from binflow.binning.policy import BinningConfig, BinPolicy, ValidationResult
from binflow.binning.processor import BundleAttributesProcessor
from binflow.binning.scheduler import BinningScheduler
from binflow.config import reset_settings
from binflow.exceptions import BinningError, ConfigurationError
from binflow.flow import REL_SUCCESS, FlowItem, ItemQueue, SessionFactory


def _make_items(groups: str) -> List[FlowItem]:
    return [FlowItem(size=1, attributes={"group": g}) for g in groups]


def _make_engine(items: List[FlowItem]) -> BinningEngine:
    return BinningEngine(
        BundleAttributesProcessor(),
        lambda i: i.attributes["group"],
        SessionFactory(ItemQueue(items)),
        policy=BinPolicy(),
        chunk_size=10,
    )


def _wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll *predicate* until it holds or *timeout* seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture(autouse=True)
def _clean_settings():
    reset_settings()
    yield
    reset_settings()


class TestBinningSchedulerLifecycle:
    """Tests for start/stop lifecycle."""

    @pytest.fixture
    def engine(self) -> BinningEngine:
        return _make_engine([])

    def test_start_and_stop(self, engine: BinningEngine) -> None:
        scheduler = BinningScheduler(engine, BinningConfig(), yield_duration_ms=10)
        scheduler.start()
        assert scheduler.is_running is True
        scheduler.stop()
        assert scheduler.is_running is False

    def test_double_start_raises(self, engine: BinningEngine) -> None:
        scheduler = BinningScheduler(engine, BinningConfig(), yield_duration_ms=10)
        scheduler.start()
        try:
            with pytest.raises(BinningError, match="already running"):
                scheduler.start()
        finally:
            scheduler.stop()

    def test_stop_when_not_running(self, engine: BinningEngine) -> None:
        scheduler = BinningScheduler(engine, BinningConfig())
        scheduler.stop()  # should not raise

    def test_defaults_come_from_settings(self, engine: BinningEngine) -> None:
        scheduler = BinningScheduler(engine)
        scheduler.start()
        try:
            assert scheduler.is_running is True
        finally:
            scheduler.stop()

    def test_non_positive_concurrency_rejected(self, engine: BinningEngine) -> None:
        with pytest.raises(BinningError, match="concurrent_tasks"):
            BinningScheduler(engine, BinningConfig(), concurrent_tasks=0)


class TestBinningSchedulerValidation:
    def test_invalid_config_prevents_start(self) -> None:
        scheduler = BinningScheduler(
            _make_engine([]), BinningConfig(min_entries=0, max_bin_age="10 ms")
        )
        with pytest.raises(ConfigurationError) as exc_info:
            scheduler.start()
        assert "min_entries" in str(exc_info.value)
        assert "max_bin_age" in str(exc_info.value)
        assert scheduler.is_running is False

    def test_additional_validation_prevents_start(self) -> None:
        def no_unbounded_size(config: BinningConfig) -> List[ValidationResult]:
            if config.max_size is None:
                return [ValidationResult(
                    subject="max_size", explanation="a maximum size is required",
                )]
            return []

        scheduler = BinningScheduler(
            _make_engine([]), BinningConfig(),
            additional_validation=no_unbounded_size,
        )
        with pytest.raises(ConfigurationError, match="a maximum size is required"):
            scheduler.start()

    def test_start_applies_config_to_engine(self) -> None:
        engine = _make_engine([])
        scheduler = BinningScheduler(
            engine, BinningConfig(max_size="1 KB", max_bin_count=2), yield_duration_ms=10
        )
        scheduler.start()
        try:
            assert engine.manager.policy.max_size == 1024
            assert engine.manager.policy.max_bin_count == 2
        finally:
            scheduler.stop()


class TestBinningSchedulerProcessing:
    def test_processes_bins_in_background(self) -> None:
        engine = _make_engine(_make_items("AAAABB"))
        sink = engine.session_factory.sink(REL_SUCCESS)
        scheduler = BinningScheduler(
            engine, BinningConfig(min_entries=2, max_entries=2), yield_duration_ms=10
        )
        scheduler.start()
        try:
            assert _wait_for(lambda: sink.size() == 6)
        finally:
            scheduler.stop()

        stats = scheduler.stats()
        assert stats["bins_processed"] == 3
        assert stats["activations"] >= 1
        assert stats["running"] is False

    def test_idle_activations_are_counted(self) -> None:
        scheduler = BinningScheduler(_make_engine([]), BinningConfig(), yield_duration_ms=10)
        scheduler.start()
        try:
            assert _wait_for(lambda: scheduler.stats()["idle_activations"] >= 2)
        finally:
            scheduler.stop()

    def test_stop_rolls_back_open_bins(self) -> None:
        engine = _make_engine(_make_items("AB"))
        source = engine.session_factory.source
        scheduler = BinningScheduler(
            engine, BinningConfig(min_entries=100), yield_duration_ms=10
        )
        scheduler.start()
        try:
            assert _wait_for(lambda: engine.manager.get_bin_count() == 2)
        finally:
            scheduler.stop()

        assert engine.manager.get_bin_count() == 0
        assert source.size() == 2

    def test_concurrent_tasks(self) -> None:
        engine = _make_engine(_make_items("ABC" * 20))
        sink = engine.session_factory.sink(REL_SUCCESS)
        scheduler = BinningScheduler(
            engine, BinningConfig(min_entries=4, max_entries=4, max_bin_count=50),
            yield_duration_ms=10, concurrent_tasks=3,
        )
        scheduler.start()
        try:
            names = [
                t.name for t in threading.enumerate()
                if t.name.startswith("binflow-scheduler-")
            ]
            assert len(names) == 3
            assert _wait_for(lambda: sink.size() == 60)
        finally:
            scheduler.stop()

        assert all(i.attributes["bundle.count"] == "4" for i in sink.items())

    def test_activation_errors_are_counted(self) -> None:
        engine = MagicMock(spec=BinningEngine)
        engine.on_trigger.side_effect = RuntimeError("engine failure")
        engine.stats.return_value = {}
        scheduler = BinningScheduler(engine, BinningConfig(), yield_duration_ms=10)
        scheduler.start()
        try:
            assert _wait_for(lambda: scheduler.stats()["activation_errors"] >= 1)
            assert scheduler.is_running is True
        finally:
            scheduler.stop()

        engine.on_scheduled.assert_called_once()
        engine.reset_state.assert_called_once()


class TestTriggerOnce:
    def test_trigger_once_runs_on_caller_thread(self) -> None:
        scheduler = BinningScheduler(_make_engine([]), BinningConfig())
        result = scheduler.trigger_once()

        assert isinstance(result, TriggerResult)
        assert result.should_yield is True
        stats = scheduler.stats()
        assert stats["activations"] == 1
        assert stats["idle_activations"] == 1
        assert stats["running"] is False
        assert stats["open_bins"] == 0


class TestSlowShutdown:
    def test_reset_deferred_until_last_activation_finishes(self) -> None:
        release = threading.Event()
        entered = threading.Event()

        def slow_trigger(is_scheduled: Callable[[], bool]) -> TriggerResult:
            entered.set()
            release.wait(5.0)
            return TriggerResult()

        engine = MagicMock(spec=BinningEngine)
        engine.on_trigger.side_effect = slow_trigger
        engine.stats.return_value = {}
        scheduler = BinningScheduler(engine, BinningConfig(), yield_duration_ms=10)
        scheduler.start()
        assert entered.wait(5.0)

        scheduler.stop(timeout=0.05)

        assert scheduler.is_running is False
        engine.reset_state.assert_not_called()
        with pytest.raises(BinningError, match="still finishing"):
            scheduler.start()

        release.set()
        assert _wait_for(lambda: engine.reset_state.call_count == 1)

        scheduler.start()
        scheduler.stop()
        assert engine.reset_state.call_count == 2
