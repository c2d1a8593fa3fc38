from __future__ import annotations
import logging
import threading
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import SyncSettings, get_settings
from ..db import models
from ..domain.changes import PriorExternalState, RunResult
from ..errors import BaseAppException, CredentialExpiredError
from ..metrics import SYNC_EVENT_OPS
from ..ports.calendar_provider import CalendarProvider
from ..repositories.correspondence_repository import (
    CorrespondenceRepository,
    SqlAlchemyCorrespondenceRepository,
    compute_content_hash,
)
from ..services.event_service import EventService

logger = logging.getLogger(__name__)


class PushEventsUseCase:
    """Outbound pass: propagate internal creates/updates/deletes to one provider."""

    def __init__(
        self,
        provider: CalendarProvider,
        correspondence_repo: CorrespondenceRepository | None = None,
        event_service: EventService | None = None,
        settings: Optional[SyncSettings] = None,
    ):
        self.provider = provider
        self.settings = settings or get_settings()
        self.correspondence_repo = correspondence_repo or SqlAlchemyCorrespondenceRepository()
        self.event_service = event_service or EventService(self.settings.default_timezone)

    def execute(
        self,
        db: Session,
        integration: models.IntegrationAccount,
        calendars: List[models.ExternalCalendarMap],
        primary: models.ExternalCalendarMap,
        result: RunResult,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        own_calendars = {c.external_calendar_id for c in calendars}
        events = self.event_service.list_for_push(db, integration.user_id, self.settings.push_batch_limit)
        for event in events:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            event_id = event.id
            try:
                self._push_one(db, integration, event, own_calendars, primary, result)
                db.commit()
            except CredentialExpiredError:
                raise
            except (BaseAppException, SQLAlchemyError) as e:
                db.rollback()
                message = getattr(e, "message", None) or str(e)
                logger.warning("push of event %s to %s failed: %s", event_id, integration.provider, message)
                result.errors.append(f"{event_id}: {message}")
                SYNC_EVENT_OPS.labels(provider=integration.provider, direction="push", action="error").inc()
        return result

    def _unchanged(self, integration, row: Optional[models.ExternalEventMap], event: models.Event, source_hash: str) -> bool:
        if row is None or row.source_hash != source_hash:
            return False
        # The mirrored ETag only speaks for the provider that wrote it last
        if event.external_source == integration.provider and event.external_event_id == row.external_event_id:
            return row.etag == event.external_etag
        return True

    def _push_one(self, db, integration, event, own_calendars, primary, result: RunResult) -> None:
        row = self.correspondence_repo.find_by_event_id(db, integration.id, event.id)
        source_hash = compute_content_hash(event)

        if event.deleted_at is not None:
            if row is None or self._unchanged(integration, row, event, source_hash):
                self._skip(integration, result)
                return
            self.provider.delete_event(row.external_calendar_id or primary.external_calendar_id, row.external_event_id)
            self.correspondence_repo.upsert(
                db, integration.id, event.id, row.external_event_id, row.external_calendar_id, row.etag, source_hash
            )
            self._mirror(event, integration, row.external_calendar_id, row.external_event_id, row.etag)
            SYNC_EVENT_OPS.labels(provider=integration.provider, direction="push", action="deleted").inc()
            result.deleted += 1
            return

        prior = PriorExternalState(row.external_event_id, row.etag) if row is not None else None
        if self._unchanged(integration, row, event, source_hash):
            if not self.settings.verify_remote_before_skip:
                self._skip(integration, result)
                return
            remote_etag = self.provider.fetch_etag(row.external_calendar_id or primary.external_calendar_id, row.external_event_id)
            if remote_etag is not None:
                self._skip(integration, result)
                return
            logger.info("event %s vanished from %s; recreating", event.id, integration.provider)
            prior = None

        if row is not None and row.external_calendar_id:
            target = row.external_calendar_id
        elif event.external_source == integration.provider and event.external_calendar_id in own_calendars:
            target = event.external_calendar_id
        else:
            target = primary.external_calendar_id

        pushed = self.provider.push_event(target, event, prior, source_hash)
        self.correspondence_repo.upsert(
            db, integration.id, event.id, pushed.external_event_id, pushed.external_calendar_id, pushed.etag, source_hash
        )
        self._mirror(event, integration, pushed.external_calendar_id, pushed.external_event_id, pushed.etag)
        action = "created" if pushed.created else "updated"
        SYNC_EVENT_OPS.labels(provider=integration.provider, direction="push", action=action).inc()
        result.pushed += 1

    @staticmethod
    def _mirror(event: models.Event, integration, external_calendar_id, external_event_id, etag) -> None:
        event.external_source = integration.provider
        event.external_calendar_id = external_calendar_id
        event.external_event_id = external_event_id
        event.external_etag = etag

    @staticmethod
    def _skip(integration, result: RunResult) -> None:
        result.skipped += 1
        SYNC_EVENT_OPS.labels(provider=integration.provider, direction="push", action="skipped").inc()
