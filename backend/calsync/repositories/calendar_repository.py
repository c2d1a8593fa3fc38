from __future__ import annotations
from typing import List, Optional, Protocol, Sequence

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from ..db import models
from ..domain.changes import ExternalCalendar
from ..domain.enums import Provider
from ..domain.timeutil import utcnow
from ..errors import NotFoundError, ProviderRequestError
from ..ports.calendar_provider import CalendarProvider


class CalendarRepository(Protocol):
    def list_for_integration(self, db: Session, integration_id: str) -> List[models.ExternalCalendarMap]:
        ...

    def ensure_calendars(
        self, db: Session, integration: models.IntegrationAccount, provider: CalendarProvider
    ) -> List[models.ExternalCalendarMap]:
        ...

    def get_primary(self, db: Session, integration: models.IntegrationAccount) -> Optional[models.ExternalCalendarMap]:
        ...

    def update_cursor(self, db: Session, mapping: models.ExternalCalendarMap, next_cursor: Optional[str], provider: str) -> None:
        ...

    def clear_cursor(self, db: Session, mapping: models.ExternalCalendarMap) -> None:
        ...

    def set_primary(self, db: Session, integration: models.IntegrationAccount, external_calendar_id: str) -> models.ExternalCalendarMap:
        ...


def cursor_of(mapping: models.ExternalCalendarMap, provider: str) -> Optional[str]:
    if provider == Provider.MICROSOFT.value:
        return mapping.last_delta_link
    return mapping.last_sync_token


class SqlAlchemyCalendarRepository:
    """External calendar registry: one row per discovered calendar of an integration."""

    def list_for_integration(self, db: Session, integration_id: str) -> List[models.ExternalCalendarMap]:
        return (
            db.query(models.ExternalCalendarMap)
            .filter(models.ExternalCalendarMap.integration_id == integration_id)
            .order_by(models.ExternalCalendarMap.created_at, models.ExternalCalendarMap.id)
            .all()
        )

    def find(self, db: Session, integration_id: str, external_calendar_id: str) -> Optional[models.ExternalCalendarMap]:
        return (
            db.query(models.ExternalCalendarMap)
            .filter(
                models.ExternalCalendarMap.integration_id == integration_id,
                models.ExternalCalendarMap.external_calendar_id == external_calendar_id,
            )
            .first()
        )

    def ensure_calendars(
        self, db: Session, integration: models.IntegrationAccount, provider: CalendarProvider
    ) -> List[models.ExternalCalendarMap]:
        """Return the integration's calendars, discovering them on first use."""
        existing = self.list_for_integration(db, integration.id)
        if existing:
            return existing
        discovered = provider.list_calendars()
        if not discovered:
            raise ProviderRequestError(f"no writable external calendar found for {integration.provider}")
        self.upsert_discovered(db, integration, discovered)
        db.commit()
        return self.list_for_integration(db, integration.id)

    def upsert_discovered(
        self, db: Session, integration: models.IntegrationAccount, calendars: Sequence[ExternalCalendar]
    ) -> List[models.ExternalCalendarMap]:
        """Add new calendars and refresh labels; an existing primary choice is kept."""
        now = utcnow()
        rows = {m.external_calendar_id: m for m in self.list_for_integration(db, integration.id)}
        has_primary = any(m.is_primary == 1 for m in rows.values())
        for cal in calendars:
            row = rows.get(cal.external_calendar_id)
            if row is None:
                row = models.ExternalCalendarMap(
                    integration_id=integration.id,
                    external_calendar_id=cal.external_calendar_id,
                    label=cal.label or "Calendar",
                    is_primary=0,
                    created_at=now,
                    updated_at=now,
                )
                db.add(row)
                rows[cal.external_calendar_id] = row
            else:
                row.label = cal.label or row.label
                row.updated_at = now
        if not has_primary and calendars:
            chosen = next((c for c in calendars if c.is_primary), calendars[0])
            rows[chosen.external_calendar_id].is_primary = 1
        db.flush()
        return list(rows.values())

    def get_primary(self, db: Session, integration: models.IntegrationAccount) -> Optional[models.ExternalCalendarMap]:
        calendars = self.list_for_integration(db, integration.id)
        for cal in calendars:
            if cal.is_primary == 1:
                return cal
        return calendars[0] if calendars else None

    def update_cursor(self, db: Session, mapping: models.ExternalCalendarMap, next_cursor: Optional[str], provider: str) -> None:
        now = utcnow()
        if provider == Provider.MICROSOFT.value:
            mapping.last_delta_link = next_cursor
        else:
            mapping.last_sync_token = next_cursor
        mapping.last_sync_at = now
        mapping.updated_at = now
        db.commit()

    def clear_cursor(self, db: Session, mapping: models.ExternalCalendarMap) -> None:
        mapping.last_sync_token = None
        mapping.last_delta_link = None
        mapping.updated_at = utcnow()
        db.commit()

    def set_primary(self, db: Session, integration: models.IntegrationAccount, external_calendar_id: str) -> models.ExternalCalendarMap:
        """Flag one calendar primary and clear the others in a single statement."""
        target = self.find(db, integration.id, external_calendar_id)
        if target is None:
            raise NotFoundError("CALENDAR_NOT_FOUND", f"calendar {external_calendar_id} is not linked to this integration")
        table = models.ExternalCalendarMap
        db.execute(
            update(table)
            .where(table.integration_id == integration.id)
            .values(
                is_primary=case((table.external_calendar_id == external_calendar_id, 1), else_=0),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(target)
        return target
