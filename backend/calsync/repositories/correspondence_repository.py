from __future__ import annotations
import hashlib
import json
from typing import List, Optional, Protocol

from sqlalchemy.orm import Session

from ..db import models
from ..domain.timeutil import to_iso_z, utcnow


def compute_content_hash(event: models.Event) -> str:
    """SHA-256 over the user-visible content of an event.

    Identifiers, external mirror fields and timestamps are excluded so that
    bookkeeping writes never look like content changes.
    """
    canonical = {
        "title": event.title or "",
        "description": event.description or None,
        "location": event.location or None,
        "start": to_iso_z(event.start_at),
        "end": to_iso_z(event.end_at),
        "all_day": bool(event.all_day),
        "timezone": event.timezone or None,
        "status": event.status,
        "meeting_url": event.meeting_url or None,
        "category": event.category,
        "deleted": event.deleted_at is not None,
    }
    raw = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class CorrespondenceRepository(Protocol):
    def find_by_external_id(self, db: Session, integration_id: str, external_event_id: str) -> Optional[models.ExternalEventMap]: ...
    def find_by_event_id(self, db: Session, integration_id: str, event_id: str) -> Optional[models.ExternalEventMap]: ...
    def upsert(
        self,
        db: Session,
        integration_id: str,
        event_id: str,
        external_event_id: str,
        external_calendar_id: Optional[str],
        etag: Optional[str],
        source_hash: Optional[str],
    ) -> models.ExternalEventMap: ...


class SqlAlchemyCorrespondenceRepository:
    """Internal event <-> external event mapping, one row per (integration, event)."""

    def find_by_external_id(self, db: Session, integration_id: str, external_event_id: str) -> Optional[models.ExternalEventMap]:
        return (
            db.query(models.ExternalEventMap)
            .filter(
                models.ExternalEventMap.integration_id == integration_id,
                models.ExternalEventMap.external_event_id == external_event_id,
            )
            .first()
        )

    def find_by_event_id(self, db: Session, integration_id: str, event_id: str) -> Optional[models.ExternalEventMap]:
        return (
            db.query(models.ExternalEventMap)
            .filter(
                models.ExternalEventMap.integration_id == integration_id,
                models.ExternalEventMap.event_id == event_id,
            )
            .first()
        )

    def list_for_integration(self, db: Session, integration_id: str) -> List[models.ExternalEventMap]:
        return (
            db.query(models.ExternalEventMap)
            .filter(models.ExternalEventMap.integration_id == integration_id)
            .all()
        )

    def upsert(
        self,
        db: Session,
        integration_id: str,
        event_id: str,
        external_event_id: str,
        external_calendar_id: Optional[str],
        etag: Optional[str],
        source_hash: Optional[str],
    ) -> models.ExternalEventMap:
        row = self.find_by_event_id(db, integration_id, event_id)
        if row is None:
            row = models.ExternalEventMap(integration_id=integration_id, event_id=event_id)
            db.add(row)
        row.external_event_id = external_event_id
        row.external_calendar_id = external_calendar_id
        row.etag = etag
        row.source_hash = source_hash
        row.last_synced_at = utcnow()
        db.flush()
        return row
