"""
Message model for the in-process event bus.

A Message is a single tagged variant: a path-like name plus one FsdOp.
Filesystem-origin messages carry the affected path; the compaction ticker
publishes a symbolic name with the Compact op.
"""

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from fsd.watcher import WatchEvent, WatchOp


logger = logging.getLogger(__name__)

COMPACT_MESSAGE_NAME = "CompactNow"


class FsdOp(str, Enum):
    """Operation carried by a bus message."""
    CREATE = "Create"
    WRITE = "Write"
    REMOVE = "Remove"
    RENAME = "Rename"
    CHMOD = "Chmod"
    COMPACT = "Compact"
    INVALID = "Invalid"

    @classmethod
    def from_watch_op(cls, op: WatchOp) -> "FsdOp":
        """
        Collapse a watcher op bitset to exactly one FsdOp.

        Priority is Chmod < Create < Remove < Rename < Write; the highest
        bit present wins. A bitset with none of the known bits is Invalid.

        Args:
            op: Bitset reported by the watcher

        Returns:
            The selected FsdOp
        """
        for bit, fsd_op in _WATCH_OP_PRIORITY:
            if op & bit:
                return fsd_op
        return cls.INVALID


# Highest priority first
_WATCH_OP_PRIORITY = (
    (WatchOp.WRITE, FsdOp.WRITE),
    (WatchOp.RENAME, FsdOp.RENAME),
    (WatchOp.REMOVE, FsdOp.REMOVE),
    (WatchOp.CREATE, FsdOp.CREATE),
    (WatchOp.CHMOD, FsdOp.CHMOD),
)


class Message(BaseModel):
    """
    Event published on the broadcaster.

    Serializes to {"event_name": ..., "event_operation": ...}.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., alias="event_name", description="Filesystem path or symbolic label")
    operation: FsdOp = Field(..., alias="event_operation", description="Operation tag")

    @classmethod
    def from_watch_event(cls, event: WatchEvent) -> "Message":
        """Build a message from a raw watcher event."""
        return cls(name=event.path, operation=FsdOp.from_watch_op(event.op))

    @classmethod
    def compact(cls) -> "Message":
        """Build the message the compaction ticker publishes."""
        return cls(name=COMPACT_MESSAGE_NAME, operation=FsdOp.COMPACT)

    @classmethod
    def from_json(cls, data: str) -> "Message":
        return cls.model_validate_json(data)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @property
    def is_valid(self) -> bool:
        return self.operation is not FsdOp.INVALID

    def __str__(self) -> str:
        return self.to_json()
