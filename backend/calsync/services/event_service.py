from sqlalchemy.orm import Session
from datetime import datetime
from typing import List, Optional
from ..db import models
from ..domain.enums import EventCategory, EventStatus
from ..domain.timeutil import as_utc, utcnow
from ..errors import ConflictError, NotFoundError, ValidationAppError

_EDITABLE = {"title", "description", "location", "start_at", "end_at", "all_day", "timezone", "category", "status", "meeting_url"}


class EventService:
    """Canonical internal event store.

    Events are never hard-deleted: delete sets deleted_at, which is terminal,
    and bumps updated_at so the next push pass propagates it.
    """

    def __init__(self, default_timezone: str = "Europe/Lisbon"):
        self.default_timezone = default_timezone

    def _validate(self, start_at: datetime, end_at: datetime, category: str, status: str):
        if as_utc(end_at) < as_utc(start_at):
            raise ValidationAppError("INVALID_TIME_RANGE", "end_at must not be before start_at")
        if category not in {c.value for c in EventCategory}:
            raise ValidationAppError("INVALID_CATEGORY", f"unknown category: {category}")
        if status not in {s.value for s in EventStatus}:
            raise ValidationAppError("INVALID_STATUS", f"unknown status: {status}")

    def create_event(self, db: Session, user_id: str, title: str,
                     start_at: datetime, end_at: datetime, all_day: bool = False,
                     timezone: Optional[str] = None, category: str = EventCategory.OTHER.value,
                     status: str = EventStatus.CONFIRMED.value, description: Optional[str] = None,
                     location: Optional[str] = None, meeting_url: Optional[str] = None) -> models.Event:
        self._validate(start_at, end_at, category, status)
        now = utcnow()
        event = models.Event(
            user_id=user_id,
            title=title,
            description=description,
            location=location,
            start_at=as_utc(start_at),
            end_at=as_utc(end_at),
            all_day=1 if all_day else 0,
            timezone=timezone or self.default_timezone,
            category=category,
            status=status,
            meeting_url=meeting_url,
            created_at=now,
            updated_at=now,
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    def get_event(self, db: Session, event_id: str) -> models.Event:
        event = db.query(models.Event).filter(models.Event.id == event_id).first()
        if not event:
            raise NotFoundError("EVENT_NOT_FOUND", f"event {event_id} not found")
        return event

    def update_event(self, db: Session, event_id: str, **changes) -> models.Event:
        event = self.get_event(db, event_id)
        if event.deleted_at is not None:
            raise ConflictError("EVENT_DELETED", "deleted events cannot be modified")
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValidationAppError("INVALID_FIELD", f"unknown fields: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            if name in ("start_at", "end_at") and value is not None:
                value = as_utc(value)
            if name == "all_day":
                value = 1 if value else 0
            setattr(event, name, value)
        self._validate(event.start_at, event.end_at, event.category, event.status)
        event.updated_at = utcnow()
        db.commit()
        db.refresh(event)
        return event

    def delete_event(self, db: Session, event_id: str) -> models.Event:
        event = self.get_event(db, event_id)
        if event.deleted_at is None:
            self.mark_deleted(event)
            db.commit()
        return event

    @staticmethod
    def mark_deleted(event: models.Event) -> None:
        now = utcnow()
        event.deleted_at = now
        event.status = EventStatus.CANCELLED.value
        event.updated_at = now

    def list_for_push(self, db: Session, user_id: str, limit: int) -> List[models.Event]:
        """Most recently modified first, deleted events included."""
        return (
            db.query(models.Event)
            .filter(models.Event.user_id == user_id)
            .order_by(models.Event.updated_at.desc(), models.Event.id)
            .limit(limit)
            .all()
        )
