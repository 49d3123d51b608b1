"""Thread-safe FIFO of bins awaiting hand-off to the bin processor."""

import threading
from collections import deque
from typing import Deque, List, Optional

from binflow.binning.bin import Bin


class ReadyQueue:
    """Unbounded first-in first-out queue of ready bins.

    Nothing ever waits on this queue, so ``poll()`` returns ``None``
    instead of blocking when it is empty.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._bins: Deque[Bin] = deque()

    def add(self, bin_: Bin) -> None:
        with self._lock:
            self._bins.append(bin_)

    def add_all(self, bins: List[Bin]) -> None:
        with self._lock:
            self._bins.extend(bins)

    def poll(self) -> Optional[Bin]:
        """Remove and return the bin at the front, or ``None``."""
        with self._lock:
            return self._bins.popleft() if self._bins else None

    def drain(self) -> List[Bin]:
        """Remove and return every queued bin in FIFO order."""
        with self._lock:
            bins = list(self._bins)
            self._bins.clear()
            return bins

    def size(self) -> int:
        with self._lock:
            return len(self._bins)

    def __len__(self) -> int:
        return self.size()
