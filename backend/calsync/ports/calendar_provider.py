from __future__ import annotations
from typing import Protocol, List, Optional

from ..db import models
from ..domain.changes import ExternalCalendar, PriorExternalState, PullResult, PushResult


class CalendarProvider(Protocol):
    """Abstracts one provider family's calendar operations for testability.

    Implementations are bound to a single integration (its credentials) and
    translate between the provider wire format and the canonical event model.
    """

    provider: str

    def list_calendars(self) -> List[ExternalCalendar]:
        """Return writable external calendars."""
        ...

    def pull_events(self, external_calendar_id: str, cursor: Optional[str] = None) -> PullResult:
        """Return all changes since cursor (or the initial window when cursor is None).

        Follows pagination to exhaustion. When the provider reports the cursor is
        stale, returns PullResult(cursor_invalidated=True) with no changes.
        """
        ...

    def push_event(
        self,
        external_calendar_id: str,
        event: models.Event,
        prior: Optional[PriorExternalState] = None,
        source_hash: Optional[str] = None,
    ) -> PushResult:
        """Create (prior is None) or conditionally update an external event."""
        ...

    def delete_event(self, external_calendar_id: str, external_event_id: str) -> None:
        """Delete an external event; already-gone counts as success."""
        ...

    def fetch_etag(self, external_calendar_id: str, external_event_id: str) -> Optional[str]:
        """Current concurrency tag of an external event, None when it no longer exists."""
        ...
