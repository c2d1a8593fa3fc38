"""Provider-agnostic values exchanged between adapters and the sync use cases."""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .enums import ChangeKind, EventStatus


@dataclass(frozen=True)
class ExternalCalendar:
    external_calendar_id: str
    label: str
    is_primary: bool = False


@dataclass(frozen=True)
class ExternalEventChange:
    """One normalized change from a provider.

    Produced once by an adapter; the rest of the engine never looks at
    provider-native fields again. For DELETED changes only the identifiers and
    etag are meaningful.
    """
    kind: ChangeKind
    external_event_id: str
    external_calendar_id: str
    etag: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    location: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    all_day: bool = False
    timezone: Optional[str] = None
    status: EventStatus = EventStatus.CONFIRMED
    meeting_url: Optional[str] = None

    @property
    def deleted(self) -> bool:
        return self.kind is ChangeKind.DELETED

    @classmethod
    def removed(cls, external_event_id: str, external_calendar_id: str, etag: Optional[str] = None) -> "ExternalEventChange":
        return cls(
            kind=ChangeKind.DELETED,
            external_event_id=external_event_id,
            external_calendar_id=external_calendar_id,
            etag=etag,
            status=EventStatus.CANCELLED,
        )


@dataclass
class PullResult:
    changes: List[ExternalEventChange] = field(default_factory=list)
    next_cursor: Optional[str] = None
    cursor_invalidated: bool = False
    skipped: int = 0


@dataclass(frozen=True)
class PriorExternalState:
    external_event_id: str
    etag: Optional[str] = None


@dataclass(frozen=True)
class PushResult:
    external_event_id: str
    etag: Optional[str]
    external_calendar_id: str
    created: bool = False


@dataclass
class RunResult:
    provider: str
    pulled: int = 0
    pushed: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    def as_dict(self) -> dict:
        return {
            "provider": self.provider,
            "pulled": self.pulled,
            "pushed": self.pushed,
            "deleted": self.deleted,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }
