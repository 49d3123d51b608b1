"""
Bin processors: the pluggable consumer invoked once per ready bin.

A processor receives a ready :class:`~binflow.binning.bin.Bin` and
returns a :class:`BinProcessingResult`.  It may:

* return attributes, which the engine puts on every item before routing
  the bin to ``success`` and committing;
* finalise the bin's session itself and return ``committed=True``;
* raise :class:`~binflow.exceptions.BinProcessingError` for a
  recoverable failure (items routed to ``failure``, session committed);
* raise anything else, which rolls the session back.
"""

import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict

from pydantic import BaseModel, Field

from binflow.binning.bin import Bin


class BinProcessingResult(BaseModel):
    """Outcome of processing one bin.

    Attributes:
        attributes: Attributes to add to every item of the bin.
        committed: ``True`` if the processor already committed (or
            otherwise finalised) the bin's session.
    """

    attributes: Dict[str, str] = Field(default_factory=dict)
    committed: bool = False


class BinProcessor(ABC):
    """Capability interface for consuming ready bins."""

    @abstractmethod
    def process(self, bin_: Bin) -> BinProcessingResult:
        """Process one ready bin."""


class CallableBinProcessor(BinProcessor):
    """Adapt a plain function to the :class:`BinProcessor` interface."""

    def __init__(self, fn: Callable[[Bin], BinProcessingResult]) -> None:
        self._fn = fn

    def process(self, bin_: Bin) -> BinProcessingResult:
        return self._fn(bin_)


class BundleAttributesProcessor(BinProcessor):
    """Tag every item with the identity and shape of its bundle.

    Args:
        prefix: Attribute name prefix.
    """

    def __init__(self, prefix: str = "bundle") -> None:
        self._prefix = prefix

    def process(self, bin_: Bin) -> BinProcessingResult:
        p = self._prefix
        return BinProcessingResult(
            attributes={
                f"{p}.id": uuid.uuid4().hex,
                f"{p}.count": str(bin_.entry_count),
                f"{p}.size": str(bin_.size),
                f"{p}.group": bin_.group_id or "",
            }
        )
