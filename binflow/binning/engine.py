"""
Binning engine for binflow.

One call to :meth:`BinningEngine.on_trigger` is one activation of the
driving loop.  It runs four phases in order:

1. **Intake** -- pull chunks of items from the source, compute each
   item's group key, and offer them to the :class:`BinManager` one group
   at a time.  Items the manager cannot place become single-item ready
   bins so nothing is dropped.
2. **Migration** -- move ready bins into the :class:`ReadyQueue`.  If
   none are ready and the manager is at capacity, evict the oldest bin so
   the engine cannot stall.
3. **Drain** -- hand every queued bin to the :class:`BinProcessor` and
   finalise its session according to the outcome.
4. **Idle decision** -- report whether the caller should back off.

The engine starts no threads.  Activations may overlap; shared state
lives in the manager and ready queue, which are both locked.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from binflow.binning.bin import Bin, ReadyReason
from binflow.binning.manager import BinManager
from binflow.binning.policy import BinPolicy
from binflow.binning.processor import BinProcessingResult, BinProcessor
from binflow.binning.ready_queue import ReadyQueue
from binflow.config import get_settings
from binflow.exceptions import BinningError, BinProcessingError, FlowSessionError
from binflow.flow.item import FlowItem
from binflow.flow.session import REL_FAILURE, REL_SUCCESS, Session, SessionFactory

logger = logging.getLogger(__name__)

# Type aliases for caller-supplied hooks
GroupKeyFn = Callable[[FlowItem], str]
PreprocessFn = Callable[[FlowItem, Session], FlowItem]

_COUNTERS = (
    "items_binned",
    "grouping_failures",
    "unbound_items",
    "bins_migrated",
    "bins_aged",
    "bins_evicted",
    "bins_processed",
    "bins_failed",
    "bins_rolled_back",
    "yields",
)


class TriggerResult(BaseModel):
    """Work performed by a single activation.

    Attributes:
        items_binned: Items offered to bins during intake.
        bins_migrated: Bins moved to the ready queue (including evictions).
        bins_processed: Bins the processor completed successfully.
        bins_failed: Bins routed to failure after a recoverable error.
        bins_rolled_back: Bins rolled back after an unexpected error.
        cancelled: Whether the activation stopped early because it was
            no longer scheduled.
    """

    items_binned: int = 0
    bins_migrated: int = 0
    bins_processed: int = 0
    bins_failed: int = 0
    bins_rolled_back: int = 0
    cancelled: bool = False

    @property
    def should_yield(self) -> bool:
        """``True`` when a completed activation accomplished nothing."""
        return (
            self.items_binned == 0
            and self.bins_migrated == 0
            and self.bins_processed == 0
            and self.bins_failed == 0
            and not self.cancelled
        )


class BinningEngine:
    """Accumulate items into bins and hand completed bins to a processor.

    Args:
        processor: Consumer invoked once per ready bin.
        group_key: Computes an item's group key.  May raise; the item is
            then routed to ``failure``.
        session_factory: Creates intake sessions and bin sessions.
        policy: Bin thresholds.  Read from settings when omitted.
        preprocess: Optional hook applied to each item before its group
            key is computed.  Must return the (possibly updated) item.
        chunk_size: Maximum items pulled per intake session.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        processor: BinProcessor,
        group_key: GroupKeyFn,
        session_factory: SessionFactory,
        policy: Optional[BinPolicy] = None,
        preprocess: Optional[PreprocessFn] = None,
        chunk_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if policy is None or chunk_size is None:
            _s = get_settings().binning
            if policy is None:
                policy = BinPolicy.from_settings(_s)
            if chunk_size is None:
                chunk_size = _s.chunk_size
        if chunk_size <= 0:
            raise BinningError(f"chunk_size must be positive, got {chunk_size}")

        self._processor = processor
        self._group_key = group_key
        self._factory = session_factory
        self._preprocess = preprocess
        self._chunk_size = chunk_size
        self._clock = clock

        self._manager = BinManager(policy, clock=clock)
        self._ready = ReadyQueue()

        self._stats_lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in _COUNTERS}

        logger.info(
            "BinningEngine initialised",
            extra={
                "chunk_size": chunk_size,
                "max_bin_count": policy.max_bin_count,
                "processor": type(processor).__name__,
            },
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def manager(self) -> BinManager:
        return self._manager

    @property
    def ready_queue(self) -> ReadyQueue:
        return self._ready

    @property
    def session_factory(self) -> SessionFactory:
        return self._factory

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def on_scheduled(self, policy: BinPolicy) -> None:
        """Apply the policy for the upcoming run of activations."""
        self._manager.apply_policy(policy)

    def reset_state(self) -> None:
        """Discard open bins and roll back every bin awaiting processing."""
        self._manager.purge()
        pending = self._ready.drain()
        for bin_ in pending:
            bin_.session.rollback()
            bin_.mark_rolled_back()
        if pending:
            logger.info(
                "Rolled back queued ready bins",
                extra={"bins": len(pending)},
            )

    # ------------------------------------------------------------------
    # Driving loop
    # ------------------------------------------------------------------

    def on_trigger(
        self, is_scheduled: Optional[Callable[[], bool]] = None
    ) -> TriggerResult:
        """Run one activation.

        Args:
            is_scheduled: Returns ``False`` once the activation should
                stop early.  Checked between intake chunks and before
                migration.

        Returns:
            Counts of the work performed.
        """
        if is_scheduled is None:
            is_scheduled = _always_scheduled

        max_bin_count = self._manager.policy.max_bin_count
        total_bin_count = self._manager.get_bin_count() + self._ready.size()

        if total_bin_count < max_bin_count:
            items_binned = self._bin_items(is_scheduled)
            logger.debug("Binned items", extra={"items_binned": items_binned})
        else:
            items_binned = 0
            logger.debug(
                "Not binning: bin capacity reached; waiting for bins to empty",
                extra={"bin_count": total_bin_count},
            )

        if not is_scheduled():
            return TriggerResult(items_binned=items_binned, cancelled=True)

        bins_migrated = self._migrate_bins()
        result = self._process_bins()
        result.items_binned = items_binned
        result.bins_migrated = bins_migrated

        if result.should_yield:
            self._incr("yields")
        return result

    def _bin_items(self, is_scheduled: Callable[[], bool]) -> int:
        """Intake phase.  Returns the number of items offered to bins."""
        items_binned = 0
        while self._manager.get_bin_count() < self._manager.policy.max_bin_count:
            if not is_scheduled():
                break

            session = self._factory.create_session()
            items = session.get(self._chunk_size)
            if not items:
                break

            try:
                groups = self._group_items(items, session)
                for group_id, group_items in groups.items():
                    unbound = self._manager.offer(
                        group_id, group_items, session, self._factory
                    )
                    for item in unbound:
                        self._ready.add(self._unbound_bin(group_id, item, session))
                    items_binned += len(group_items)
                    self._incr("items_binned", len(group_items))
                    self._incr("unbound_items", len(unbound))

                # Only items routed to failure are left in the intake session.
                session.commit()
            except Exception:
                session.rollback()
                raise

        return items_binned

    def _group_items(
        self, items: List[FlowItem], session: Session
    ) -> Dict[str, List[FlowItem]]:
        groups: Dict[str, List[FlowItem]] = {}
        for original in items:
            try:
                item = original
                if self._preprocess is not None:
                    item = self._preprocess(original, session)
                    if not isinstance(item, FlowItem):
                        raise TypeError(
                            f"preprocess returned {type(item).__name__}, expected FlowItem"
                        )
                group = groups.setdefault(self._group_key(item), [])
            except Exception as exc:
                logger.error(
                    "Could not determine which bin to add item to; routing to failure",
                    extra={"item_id": original.item_id, "error": str(exc)},
                    exc_info=True,
                )
                session.transfer(original, REL_FAILURE)
                self._incr("grouping_failures")
                continue
            group.append(item)
        return groups

    def _unbound_bin(self, group_id: str, item: FlowItem, source: Session) -> Bin:
        bin_ = Bin.unbound(
            self._factory.create_session(), group_id=group_id, clock=self._clock
        )
        bin_.offer(item, source)
        bin_.mark_ready(ReadyReason.UNBOUND)
        return bin_

    def _migrate_bins(self) -> int:
        """Migration phase.  Returns the number of bins queued."""
        ready = self._manager.remove_ready_bins(True)
        self._ready.add_all(ready)
        added = len(ready)
        self._incr("bins_aged", sum(1 for b in ready if b.ready_reason is ReadyReason.AGED))

        # At capacity with nothing ready: no new item can be binned until a
        # bin leaves, so evict the oldest now rather than wait for it to age.
        if (
            added == 0
            and self._manager.get_bin_count() >= self._manager.policy.max_bin_count
        ):
            oldest = self._manager.remove_oldest_bin()
            if oldest is not None:
                self._ready.add(oldest)
                added += 1
                self._incr("bins_evicted")

        self._incr("bins_migrated", added)
        return added

    def _process_bins(self) -> TriggerResult:
        """Drain phase."""
        result = TriggerResult()
        while True:
            bin_ = self._ready.poll()
            if bin_ is None:
                break
            session = bin_.session

            try:
                outcome = self._processor.process(bin_)
            except BinProcessingError as exc:
                logger.error(
                    "Failed to process bundle; routing items to failure",
                    extra={
                        "group_id": bin_.group_id,
                        "entries": bin_.entry_count,
                        "error": str(exc),
                    },
                    exc_info=True,
                )
                try:
                    session.transfer(bin_.contents, REL_FAILURE)
                    session.commit()
                except FlowSessionError as session_exc:
                    self._roll_back(bin_, session_exc)
                    result.bins_rolled_back += 1
                    continue
                bin_.mark_processed()
                result.bins_failed += 1
                self._incr("bins_failed")
                continue
            except Exception as exc:
                self._roll_back(bin_, exc)
                result.bins_rolled_back += 1
                continue

            try:
                self._finalise(bin_, outcome)
            except Exception as exc:
                self._roll_back(bin_, exc)
                result.bins_rolled_back += 1
                continue

            bin_.mark_processed()
            result.bins_processed += 1
            self._incr("bins_processed")
            logger.info(
                "Bin processed",
                extra={
                    "group_id": bin_.group_id,
                    "entries": bin_.entry_count,
                    "bytes": bin_.size,
                    "reason": bin_.ready_reason.value if bin_.ready_reason else None,
                },
            )

        return result

    def _finalise(self, bin_: Bin, outcome: object) -> None:
        """Route a successfully processed bin to ``success`` and commit.

        Raises:
            BinningError: If the processor returned something other than a
                :class:`BinProcessingResult`, or reported ``committed``
                while its session still holds items.
        """
        if not isinstance(outcome, BinProcessingResult):
            raise BinningError(
                f"Processor returned {type(outcome).__name__}, "
                "expected BinProcessingResult"
            )
        session = bin_.session
        if outcome.committed:
            if len(session):
                raise BinningError(
                    f"Processor reported a commit but {len(session)} item(s) "
                    "are still held by the bin session"
                )
            return
        for item in bin_.contents:
            session.put_all_attributes(item, outcome.attributes)
        session.transfer(bin_.contents, REL_SUCCESS)
        session.commit()

    def _roll_back(self, bin_: Bin, exc: Exception) -> None:
        logger.error(
            "Failed to process bundle; rolling back session",
            extra={
                "group_id": bin_.group_id,
                "entries": bin_.entry_count,
                "error": str(exc),
            },
            exc_info=True,
        )
        bin_.session.rollback()
        bin_.mark_rolled_back()
        self._incr("bins_rolled_back")

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _incr(self, name: str, amount: int = 1) -> None:
        if amount:
            with self._stats_lock:
                self._counters[name] += amount

    def stats(self) -> Dict[str, int]:
        """Return engine counters plus current open and ready bin counts."""
        with self._stats_lock:
            snapshot = dict(self._counters)
        snapshot["open_bins"] = self._manager.get_bin_count()
        snapshot["ready_bins"] = self._ready.size()
        return snapshot


def _always_scheduled() -> bool:
    return True
