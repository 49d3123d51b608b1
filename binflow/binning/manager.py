"""
Thread-safe bin manager.

Owns the table of open bins organised by group key, the global bin
count, and the readiness and eviction policy.  All public methods
acquire an internal ``threading.Lock`` so overlapping engine
activations can share one manager.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from binflow.binning.bin import Bin, ReadyReason
from binflow.binning.policy import BinPolicy
from binflow.exceptions import BinningError
from binflow.flow.item import FlowItem
from binflow.flow.session import Session, SessionFactory

logger = logging.getLogger(__name__)


class BinManager:
    """Assigns items to per-group bins and decides when bins are ready.

    Threshold changes made through the setters only affect bins created
    afterwards; open bins keep the bounds they were created with.  The
    maximum bin age and bin count are read at migration and offer time.

    Args:
        policy: Initial thresholds.  Defaults to :class:`BinPolicy` defaults.
        clock: Monotonic clock in seconds, shared with created bins.
    """

    def __init__(
        self,
        policy: Optional[BinPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._policy = policy or BinPolicy()
        self._clock = clock
        self._groups: Dict[str, List[Bin]] = {}
        self._bin_count = 0

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    @property
    def policy(self) -> BinPolicy:
        with self._lock:
            return self._policy

    def apply_policy(self, policy: BinPolicy) -> None:
        """Replace every threshold at once."""
        with self._lock:
            self._policy = policy
        logger.info(
            "Bin policy applied",
            extra={"policy": policy.model_dump()},
        )

    def set_minimum_size(self, size: int) -> None:
        self._update_policy(min_size=size)

    def set_maximum_size(self, size: Optional[int]) -> None:
        self._update_policy(max_size=size)

    def set_minimum_entries(self, entries: int) -> None:
        self._update_policy(min_entries=entries)

    def set_maximum_entries(self, entries: Optional[int]) -> None:
        self._update_policy(max_entries=entries)

    def set_max_bin_age(self, seconds: Optional[float]) -> None:
        self._update_policy(max_bin_age=seconds)

    def set_max_bin_count(self, count: int) -> None:
        self._update_policy(max_bin_count=count)

    def _update_policy(self, **changes: object) -> None:
        with self._lock:
            self._policy = self._policy.model_copy(update=changes)

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def get_bin_count(self) -> int:
        """Return the number of currently open bins."""
        with self._lock:
            return self._bin_count

    def open_bins(self, group_id: str) -> Tuple[Bin, ...]:
        """Return a snapshot of the open bins for *group_id*."""
        with self._lock:
            return tuple(self._groups.get(group_id, ()))

    # ------------------------------------------------------------------
    # Offer
    # ------------------------------------------------------------------

    def offer(
        self,
        group_id: str,
        items: Iterable[FlowItem],
        session: Session,
        session_factory: SessionFactory,
    ) -> List[FlowItem]:
        """Place *items* into bins for *group_id*.

        Each item goes to the first open bin of the group that accepts
        it.  When none does, a new bin is opened with the current bounds,
        provided the global bin count is below ``max_bin_count``.

        Accepted items are migrated from *session* into their bin's own
        session.

        Args:
            group_id: Group key shared by all *items*.
            items: Items to place, in intake order.
            session: Session currently holding the items.
            session_factory: Source of sessions for newly opened bins.

        Returns:
            Items that could not be placed (capacity reached, or a single
            item larger than ``max_size``), in intake order.  They remain
            in *session*.

        Raises:
            BinningError: If the current policy is self-contradictory.
        """
        with self._lock:
            issues = self._policy.inconsistencies()
            if issues:
                raise BinningError(
                    "Refusing to bin items under an inconsistent policy: "
                    + "; ".join(issues)
                )

            bins = self._groups.get(group_id, [])
            unbound: List[FlowItem] = []

            for item in items:
                if any(b.offer(item, session) for b in bins):
                    continue

                if self._bin_count >= self._policy.max_bin_count:
                    unbound.append(item)
                    continue

                bin_ = self._new_bin(group_id, session_factory)
                if not bin_.offer(item, session):
                    unbound.append(item)
                    continue

                bins.append(bin_)
                self._groups[group_id] = bins
                self._bin_count += 1
                logger.debug(
                    "Bin opened",
                    extra={"group_id": group_id, "bin_count": self._bin_count},
                )

            if unbound:
                logger.debug(
                    "Items left unbound",
                    extra={
                        "group_id": group_id,
                        "unbound": len(unbound),
                        "bin_count": self._bin_count,
                    },
                )
            return unbound

    def _new_bin(self, group_id: str, session_factory: SessionFactory) -> Bin:
        policy = self._policy
        return Bin(
            session_factory.create_session(),
            min_size=policy.min_size,
            max_size=policy.max_size,
            min_entries=policy.min_entries,
            max_entries=policy.max_entries,
            group_id=group_id,
            clock=self._clock,
        )

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove_ready_bins(self, relax_fullness_constraint: bool = True) -> List[Bin]:
        """Atomically remove and return every ready bin, oldest first.

        Args:
            relax_fullness_constraint: When ``True`` a bin is ready if it
                is full enough (full, or both minimums met) or older than
                ``max_bin_age``.  When ``False`` only full bins are ready.

        Returns:
            The removed bins, each marked ``READY`` with its reason.
        """
        with self._lock:
            ready: List[Bin] = []
            for group_id in list(self._groups):
                remaining: List[Bin] = []
                for bin_ in self._groups[group_id]:
                    reason = self._ready_reason(bin_, relax_fullness_constraint)
                    if reason is None:
                        remaining.append(bin_)
                    else:
                        bin_.mark_ready(reason)
                        ready.append(bin_)
                if remaining:
                    self._groups[group_id] = remaining
                else:
                    del self._groups[group_id]

            self._bin_count -= len(ready)
            ready.sort(key=lambda b: b.creation_key)

        for bin_ in ready:
            logger.debug(
                "Bin ready",
                extra={
                    "group_id": bin_.group_id,
                    "reason": bin_.ready_reason.value,
                    "entries": bin_.entry_count,
                    "bytes": bin_.size,
                },
            )
        return ready

    def _ready_reason(self, bin_: Bin, relax: bool) -> Optional[ReadyReason]:
        if bin_.is_full():
            return ReadyReason.FULL
        if not relax:
            return None
        if bin_.is_full_enough():
            return ReadyReason.THRESHOLD
        if bin_.is_older_than(self._policy.max_bin_age):
            return ReadyReason.AGED
        return None

    def remove_oldest_bin(self) -> Optional[Bin]:
        """Evict the oldest open bin regardless of readiness.

        Returns:
            The evicted bin marked ``READY`` (reason ``EVICTED``), or
            ``None`` if no bins are open.
        """
        with self._lock:
            oldest: Optional[Bin] = None
            for bins in self._groups.values():
                for bin_ in bins:
                    if oldest is None or bin_.is_older_than_bin(oldest):
                        oldest = bin_
            if oldest is None:
                return None

            group_bins = self._groups[oldest.group_id]
            group_bins.remove(oldest)
            if not group_bins:
                del self._groups[oldest.group_id]
            self._bin_count -= 1
            oldest.mark_ready(ReadyReason.EVICTED)

        logger.info(
            "Evicted oldest bin",
            extra={
                "group_id": oldest.group_id,
                "entries": oldest.entry_count,
                "age_seconds": round(oldest.age(), 3),
            },
        )
        return oldest

    def purge(self) -> int:
        """Discard every open bin, rolling back its session.

        Safe to call repeatedly.

        Returns:
            Number of bins discarded.
        """
        with self._lock:
            purged = 0
            for bins in self._groups.values():
                for bin_ in bins:
                    bin_.session.rollback()
                    bin_.mark_rolled_back()
                    purged += 1
            self._groups.clear()
            self._bin_count = 0

        if purged:
            logger.info("Purged open bins", extra={"purged": purged})
        return purged
