"""
Transactional sessions over an in-memory item queue.

A :class:`Session` pulls items out of the upstream :class:`ItemQueue`
and holds them until it is committed or rolled back:

* ``commit()`` delivers every held item to the sink of the relationship
  it was transferred to.  Every held item must have a destination.
* ``rollback()`` returns every held item, with attribute changes
  discarded, to the front of the upstream queue in its original order.

Items can be handed from one session to another with ``migrate()``;
this is how binned items end up owned by the bin's own session.

The queue and sinks are thread-safe.  A single session is owned by one
activation at a time and is not locked.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional, Union

from binflow.exceptions import FlowSessionError
from binflow.flow.item import FlowItem

logger = logging.getLogger(__name__)

REL_SUCCESS = "success"
REL_FAILURE = "failure"


class ItemQueue:
    """Thread-safe FIFO of items waiting to be pulled by a session."""

    def __init__(self, items: Optional[Iterable[FlowItem]] = None) -> None:
        self._lock = threading.Lock()
        self._items: Deque[FlowItem] = deque(items or [])

    def put(self, item: FlowItem) -> None:
        with self._lock:
            self._items.append(item)

    def put_all(self, items: Iterable[FlowItem]) -> None:
        with self._lock:
            self._items.extend(items)

    def poll(self, max_count: int) -> List[FlowItem]:
        """Remove and return up to ``max_count`` items from the front."""
        with self._lock:
            count = min(max_count, len(self._items))
            return [self._items.popleft() for _ in range(count)]

    def requeue(self, items: List[FlowItem]) -> None:
        """Put *items* back at the front, preserving their order."""
        with self._lock:
            self._items.extendleft(reversed(items))

    def size(self) -> int:
        with self._lock:
            return len(self._items)


class Sink:
    """Thread-safe collector for items committed to one relationship."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._items: List[FlowItem] = []

    def receive(self, items: List[FlowItem]) -> None:
        with self._lock:
            self._items.extend(items)

    def items(self) -> List[FlowItem]:
        """Return a snapshot of everything received so far."""
        with self._lock:
            return list(self._items)

    def size(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class Session:
    """Unit of work over items pulled from an :class:`ItemQueue`.

    Args:
        source: Queue that ``get()`` pulls from and ``rollback()``
            returns to.
        sinks: Relationship name to sink mapping used by ``commit()``.
    """

    def __init__(self, source: ItemQueue, sinks: Dict[str, Sink]) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self._source = source
        self._sinks = sinks
        self._current: Dict[str, FlowItem] = {}
        self._originals: Dict[str, FlowItem] = {}
        self._destinations: Dict[str, str] = {}
        self.commit_count = 0
        self.rollback_count = 0

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def items(self) -> List[FlowItem]:
        """Current versions of every item held by this session."""
        return list(self._current.values())

    def __len__(self) -> int:
        return len(self._current)

    def __contains__(self, item: FlowItem) -> bool:
        return item.item_id in self._current

    # ------------------------------------------------------------------
    # Item operations
    # ------------------------------------------------------------------

    def get(self, max_count: int) -> List[FlowItem]:
        """Pull up to ``max_count`` items from the source into this session.

        Raises:
            FlowSessionError: If a pulled item shares its id with another
                pulled or held item.  The pulled items are put back at the
                front of the source first.
        """
        pulled = self._source.poll(max_count)
        seen = set(self._current)
        for item in pulled:
            if item.item_id in seen:
                self._source.requeue(pulled)
                logger.error(
                    "Duplicate item id pulled from source",
                    extra={"session_id": self.session_id, "item_id": item.item_id},
                )
                raise FlowSessionError(
                    f"Duplicate item id '{item.item_id}' pulled into session "
                    f"{self.session_id}"
                )
            seen.add(item.item_id)
        for item in pulled:
            self._current[item.item_id] = item
            self._originals[item.item_id] = item
        return pulled

    def migrate(self, target: "Session", items: Iterable[FlowItem]) -> None:
        """Move ownership of *items* to *target*.

        Raises:
            FlowSessionError: If an item is not held by this session.
        """
        if target is self:
            return
        for item in items:
            item_id = self._require(item)
            target._current[item_id] = self._current.pop(item_id)
            target._originals[item_id] = self._originals.pop(item_id)
            destination = self._destinations.pop(item_id, None)
            if destination is not None:
                target._destinations[item_id] = destination

    def transfer(
        self,
        items: Union[FlowItem, Iterable[FlowItem]],
        relationship: str,
    ) -> None:
        """Route one or more held items to *relationship* on commit.

        Raises:
            FlowSessionError: If the relationship is unknown or an item
                is not held by this session.
        """
        if relationship not in self._sinks:
            raise FlowSessionError(f"Unknown relationship '{relationship}'")
        if isinstance(items, FlowItem):
            items = [items]
        for item in items:
            self._destinations[self._require(item)] = relationship

    def put_all_attributes(
        self, item: FlowItem, attributes: Dict[str, str]
    ) -> FlowItem:
        """Merge *attributes* into a held item and return the new version."""
        item_id = self._require(item)
        updated = self._current[item_id].with_attributes(attributes)
        self._current[item_id] = updated
        return updated

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def commit(self) -> None:
        """Deliver held items to their sinks and release them.

        Raises:
            FlowSessionError: If any held item has no destination.  The
                session is left untouched in that case.
        """
        missing = [i for i in self._current if i not in self._destinations]
        if missing:
            raise FlowSessionError(
                f"{len(missing)} item(s) have no transfer relationship: "
                f"{missing[:5]}"
            )

        routed: Dict[str, List[FlowItem]] = {}
        for item_id, item in self._current.items():
            routed.setdefault(self._destinations[item_id], []).append(item)
        for relationship, items in routed.items():
            self._sinks[relationship].receive(items)

        logger.debug(
            "Session committed",
            extra={
                "session_id": self.session_id,
                "routed": {rel: len(items) for rel, items in routed.items()},
            },
        )
        self._clear()
        self.commit_count += 1

    def rollback(self) -> None:
        """Return held items to the source and release them."""
        originals = list(self._originals.values())
        if originals:
            self._source.requeue(originals)
        logger.debug(
            "Session rolled back",
            extra={"session_id": self.session_id, "returned": len(originals)},
        )
        self._clear()
        self.rollback_count += 1

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, item: FlowItem) -> str:
        if item.item_id not in self._current:
            raise FlowSessionError(
                f"Item '{item.item_id}' is not held by session {self.session_id}"
            )
        return item.item_id

    def _clear(self) -> None:
        self._current.clear()
        self._originals.clear()
        self._destinations.clear()


class SessionFactory:
    """Creates sessions bound to one source queue and one set of sinks.

    Args:
        source: The upstream item queue.
        sinks: Relationship sinks.  Defaults to ``success`` and ``failure``.
    """

    def __init__(
        self,
        source: ItemQueue,
        sinks: Optional[Dict[str, Sink]] = None,
    ) -> None:
        self.source = source
        self.sinks = sinks or {
            REL_SUCCESS: Sink(REL_SUCCESS),
            REL_FAILURE: Sink(REL_FAILURE),
        }

    def create_session(self) -> Session:
        return Session(self.source, self.sinks)

    def sink(self, relationship: str) -> Sink:
        return self.sinks[relationship]
