"""Flow item model: the opaque unit moved between queues, bins and sinks."""

import uuid
from typing import Dict

from pydantic import BaseModel, Field


class FlowItem(BaseModel):
    """A single item travelling through the engine.

    The binning engine only ever reads ``size``; attributes and content
    belong to the group-key function and the bin processor.

    Attributes:
        item_id: Unique identifier, stable across attribute updates.
        size: Payload size in bytes.
        attributes: String key/value metadata.
        content: Raw payload bytes.  Excluded from serialisation.
    """

    item_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    size: int = Field(default=0, ge=0)
    attributes: Dict[str, str] = Field(default_factory=dict)
    content: bytes = Field(default=b"", exclude=True, repr=False)

    @classmethod
    def from_content(cls, content: bytes, **attributes: str) -> "FlowItem":
        """Build an item whose size is the length of *content*."""
        return cls(size=len(content), content=content, attributes=dict(attributes))

    def with_attributes(self, attributes: Dict[str, str]) -> "FlowItem":
        """Return a copy with *attributes* merged over the current ones."""
        merged = dict(self.attributes)
        merged.update(attributes)
        return self.model_copy(update={"attributes": merged})
