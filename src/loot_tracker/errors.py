"""Error types and operator notices raised or recorded by the tracker."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TrackerError(Exception):
    """Base class for tracker errors."""


class FeedUnavailableError(TrackerError):
    """The kill-event feed could not be reached or returned an error."""


class ValuationUnavailableError(TrackerError):
    """The market price feed could not be reached or returned an error."""


class ImportFormatError(TrackerError, ValueError):
    """An export envelope could not be imported."""


class NoticeKind(str, Enum):
    TRANSPORT = "transport"
    GAP = "gap"
    SATURATED = "saturated"
    DUPLICATE = "duplicate"
    UNKNOWN_KILL = "unknown_kill"
    INACTIVE = "inactive"
    POLL_BUSY = "poll_busy"
    NAME_MISMATCH = "name_mismatch"
    ACTIVITY_RUNNING = "activity_running"


@dataclass(frozen=True, slots=True)
class Notice:
    """A non-fatal signal surfaced to the operator."""

    kind: NoticeKind
    message: str
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "createdAt": self.created_at.isoformat(),
        }
