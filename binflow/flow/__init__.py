"""Flow items and transactional sessions."""

from binflow.flow.item import FlowItem
from binflow.flow.session import (
    REL_FAILURE,
    REL_SUCCESS,
    ItemQueue,
    Session,
    SessionFactory,
    Sink,
)

__all__ = [
    "FlowItem",
    "ItemQueue",
    "Session",
    "SessionFactory",
    "Sink",
    "REL_SUCCESS",
    "REL_FAILURE",
]
