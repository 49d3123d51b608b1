"""
A single accumulating bin.

A bin collects items for one group key, tracks their total size and
count against the bounds it was created with, and owns the session that
its items were migrated into.
"""

import itertools
import time
from enum import Enum
from typing import Callable, List, Optional, Tuple

from binflow.exceptions import BinningError
from binflow.flow.item import FlowItem
from binflow.flow.session import Session

# A bin that rejects more offers than this in a row is treated as full.
MAX_SUCCESSIVE_REJECTIONS = 5

_sequence = itertools.count()


class BinState(str, Enum):
    OPEN = "open"
    READY = "ready"
    PROCESSED = "processed"
    ROLLED_BACK = "rolled_back"


class ReadyReason(str, Enum):
    THRESHOLD = "threshold"
    FULL = "full"
    AGED = "aged"
    EVICTED = "evicted"
    UNBOUND = "unbound"


_TRANSITIONS = {
    BinState.OPEN: {BinState.READY, BinState.ROLLED_BACK},
    BinState.READY: {BinState.PROCESSED, BinState.ROLLED_BACK},
    BinState.PROCESSED: set(),
    BinState.ROLLED_BACK: set(),
}


class Bin:
    """An ordered, bounded batch of items sharing a group key.

    Bounds are fixed at construction.  ``None`` for ``max_size`` or
    ``max_entries`` means unbounded.

    Args:
        session: Session that exclusively owns the bin's items.
        min_size: Minimum total size in bytes to be full enough.
        max_size: Maximum total size in bytes.
        min_entries: Minimum entry count to be full enough.
        max_entries: Maximum entry count.
        group_id: Group key the bin was opened for.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        session: Session,
        min_size: int = 0,
        max_size: Optional[int] = None,
        min_entries: int = 1,
        max_entries: Optional[int] = None,
        group_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session = session
        self.min_size = min_size
        self.max_size = max_size
        self.min_entries = min_entries
        self.max_entries = max_entries
        self.group_id = group_id
        self._clock = clock
        self.created_at = clock()
        self._sequence = next(_sequence)

        self._contents: List[FlowItem] = []
        self._size = 0
        self._successive_rejections = 0
        self.state = BinState.OPEN
        self.ready_reason: Optional[ReadyReason] = None

    @classmethod
    def unbound(
        cls,
        session: Session,
        group_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "Bin":
        """Create a pass-through bin with relaxed bounds."""
        return cls(
            session,
            min_size=0,
            max_size=None,
            min_entries=0,
            max_entries=None,
            group_id=group_id,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def contents(self) -> Tuple[FlowItem, ...]:
        return tuple(self._contents)

    @property
    def size(self) -> int:
        return self._size

    @property
    def entry_count(self) -> int:
        return len(self._contents)

    @property
    def creation_key(self) -> Tuple[float, int]:
        """Sort key ordering bins by creation, ties broken by creation order."""
        return (self.created_at, self._sequence)

    def age(self) -> float:
        """Seconds since the bin was created."""
        return self._clock() - self.created_at

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def offer(self, item: FlowItem, source: Session) -> bool:
        """Append *item* if the bin's bounds allow it.

        On acceptance the item is migrated from *source* into the bin's
        own session.

        Returns:
            ``True`` if the item was added, ``False`` if it would exceed
            ``max_entries`` or ``max_size``.

        Raises:
            BinningError: If the bin is no longer open.
        """
        if self.state is not BinState.OPEN:
            raise BinningError(f"Cannot offer to a bin in state {self.state.value}")

        if (
            self.max_entries is not None and len(self._contents) >= self.max_entries
        ) or (
            self.max_size is not None and self._size + item.size > self.max_size
        ):
            self._successive_rejections += 1
            return False

        self._successive_rejections = 0
        source.migrate(self._session, [item])
        self._contents.append(item)
        self._size += item.size
        return True

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def is_full(self) -> bool:
        """Whether the bin has reached a maximum bound."""
        return (
            (self.max_size is not None and self._size >= self.max_size)
            or (self.max_entries is not None and len(self._contents) >= self.max_entries)
            or self._successive_rejections > MAX_SUCCESSIVE_REJECTIONS
        )

    def is_full_enough(self) -> bool:
        """Whether the bin is full or meets both minimum thresholds."""
        if self.is_full():
            return True
        return self._size >= self.min_size and len(self._contents) >= self.min_entries

    def is_older_than(self, max_age: Optional[float]) -> bool:
        """Whether the bin has existed longer than *max_age* seconds."""
        if max_age is None:
            return False
        return self.age() > max_age

    def is_older_than_bin(self, other: "Bin") -> bool:
        """Whether this bin was created before *other*."""
        return self.creation_key < other.creation_key

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mark_ready(self, reason: ReadyReason) -> None:
        self._transition(BinState.READY)
        self.ready_reason = reason

    def mark_processed(self) -> None:
        self._transition(BinState.PROCESSED)

    def mark_rolled_back(self) -> None:
        self._transition(BinState.ROLLED_BACK)

    def _transition(self, target: BinState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise BinningError(
                f"Illegal bin transition {self.state.value} -> {target.value}"
            )
        self.state = target

    def __repr__(self) -> str:
        return (
            f"Bin(group_id={self.group_id!r}, entries={self.entry_count}, "
            f"size={self._size}, state={self.state.value})"
        )
