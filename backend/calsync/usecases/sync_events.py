from __future__ import annotations
import logging
import threading
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..db import models
from ..domain.changes import ExternalEventChange, PullResult, RunResult
from ..domain.enums import EventCategory
from ..domain.timeutil import utcnow
from ..errors import BaseAppException, CredentialExpiredError
from ..metrics import SYNC_EVENT_OPS
from ..ports.calendar_provider import CalendarProvider
from ..repositories.calendar_repository import CalendarRepository, SqlAlchemyCalendarRepository, cursor_of
from ..repositories.correspondence_repository import (
    CorrespondenceRepository,
    SqlAlchemyCorrespondenceRepository,
    compute_content_hash,
)
from ..services.event_service import EventService

logger = logging.getLogger(__name__)


class PullEventsUseCase:
    """Inbound pass: apply provider changes to the internal store, one calendar at a time.

    A calendar's cursor is persisted only after its whole page sequence was
    applied, so an interrupted pass resumes from the previous cursor.
    """

    def __init__(
        self,
        provider: CalendarProvider,
        calendar_repo: CalendarRepository | None = None,
        correspondence_repo: CorrespondenceRepository | None = None,
    ):
        self.provider = provider
        self.calendar_repo = calendar_repo or SqlAlchemyCalendarRepository()
        self.correspondence_repo = correspondence_repo or SqlAlchemyCorrespondenceRepository()

    def execute(
        self,
        db: Session,
        integration: models.IntegrationAccount,
        calendars: List[models.ExternalCalendarMap],
        result: RunResult,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        for mapping in calendars:
            if not self._pull_calendar(db, integration, mapping, result, cancel_event):
                result.cancelled = True
                break
        return result

    def _pull_calendar(
        self,
        db: Session,
        integration: models.IntegrationAccount,
        mapping: models.ExternalCalendarMap,
        result: RunResult,
        cancel_event: Optional[threading.Event],
    ) -> bool:
        calendar_id = mapping.external_calendar_id
        cursor = cursor_of(mapping, integration.provider)
        page: PullResult = self.provider.pull_events(calendar_id, cursor)
        if page.cursor_invalidated:
            logger.info("cursor reset for %s calendar %s; re-pulling initial window", integration.provider, calendar_id)
            self.calendar_repo.clear_cursor(db, mapping)
            page = self.provider.pull_events(calendar_id, None)
            if page.cursor_invalidated:
                result.errors.append(f"{calendar_id}: provider rejected a fresh pull")
                return True

        result.skipped += page.skipped
        for change in page.changes:
            if cancel_event is not None and cancel_event.is_set():
                return False
            try:
                self._apply(db, integration, change, result)
                db.commit()
            except CredentialExpiredError:
                raise
            except (BaseAppException, SQLAlchemyError) as e:
                db.rollback()
                message = getattr(e, "message", None) or str(e)
                logger.warning("pull of %s failed: %s", change.external_event_id, message)
                result.errors.append(f"{change.external_event_id}: {message}")
                SYNC_EVENT_OPS.labels(provider=integration.provider, direction="pull", action="error").inc()
        self.calendar_repo.update_cursor(db, mapping, page.next_cursor, integration.provider)
        return True

    def _apply(self, db: Session, integration: models.IntegrationAccount, change: ExternalEventChange, result: RunResult) -> None:
        row = self.correspondence_repo.find_by_external_id(db, integration.id, change.external_event_id)
        event = db.get(models.Event, row.event_id) if row is not None else None

        if change.deleted:
            self._apply_deleted(db, integration, change, row, event, result)
            return

        if row is not None and event is not None:
            # Same ETag as last sync: the remote copy is what we already hold
            if change.etag is not None and row.etag == change.etag:
                self._count(integration, result, "skipped")
                return
            if event.deleted_at is not None:
                # Local delete wins; the push pass removes the remote copy
                self._count(integration, result, "skipped")
                return
            before = compute_content_hash(event)
            self._copy_fields(event, change)
            source_hash = compute_content_hash(event)
            if source_hash != before:
                event.updated_at = utcnow()
        else:
            now = utcnow()
            event = models.Event(
                user_id=integration.user_id,
                category=EventCategory.OTHER.value,
                created_at=now,
                updated_at=now,
            )
            self._copy_fields(event, change)
            db.add(event)
            db.flush()
            source_hash = compute_content_hash(event)

        self._mirror(event, integration, change)
        self.correspondence_repo.upsert(
            db, integration.id, event.id, change.external_event_id, change.external_calendar_id, change.etag, source_hash
        )
        self._count(integration, result, "upserted")
        result.pulled += 1

    def _apply_deleted(self, db, integration, change, row, event, result) -> None:
        if row is None or event is None:
            # Never synced to us; nothing to remove
            self._count(integration, result, "skipped")
            return
        if event.deleted_at is None:
            EventService.mark_deleted(event)
        elif row.source_hash == compute_content_hash(event):
            self._count(integration, result, "skipped")
            return
        etag = change.etag or row.etag
        self._mirror(event, integration, change, etag=etag)
        self.correspondence_repo.upsert(
            db, integration.id, event.id, row.external_event_id, row.external_calendar_id, etag, compute_content_hash(event)
        )
        self._count(integration, result, "deleted")
        result.deleted += 1

    @staticmethod
    def _copy_fields(event: models.Event, change: ExternalEventChange) -> None:
        event.title = change.title or "Event"
        event.description = change.description
        event.location = change.location
        event.start_at = change.start_at
        event.end_at = change.end_at
        event.all_day = 1 if change.all_day else 0
        event.timezone = change.timezone or event.timezone
        event.status = change.status.value
        # Links are provider-generated and cannot be written back; keep ours when absent
        event.meeting_url = change.meeting_url or event.meeting_url

    @staticmethod
    def _mirror(event: models.Event, integration: models.IntegrationAccount, change: ExternalEventChange, etag: Optional[str] = None) -> None:
        event.external_source = integration.provider
        event.external_calendar_id = change.external_calendar_id
        event.external_event_id = change.external_event_id
        event.external_etag = etag if etag is not None else change.etag

    def _count(self, integration: models.IntegrationAccount, result: RunResult, action: str) -> None:
        if action == "skipped":
            result.skipped += 1
        SYNC_EVENT_OPS.labels(provider=integration.provider, direction="pull", action=action).inc()
