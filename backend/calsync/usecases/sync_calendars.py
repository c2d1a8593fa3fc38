from __future__ import annotations
from dataclasses import dataclass
from typing import List

from sqlalchemy.orm import Session

from ..db import models
from ..ports.calendar_provider import CalendarProvider
from ..repositories.calendar_repository import CalendarRepository, SqlAlchemyCalendarRepository


@dataclass
class SyncCalendarsResult:
    synced_calendars: int
    calendars: List[models.ExternalCalendarMap]


class SyncCalendarsUseCase:
    """Re-run calendar discovery: new calendars are added, labels refreshed, primary kept."""

    def __init__(
        self,
        provider: CalendarProvider,
        calendar_repo: CalendarRepository | None = None,
    ):
        self.provider = provider
        self.calendar_repo = calendar_repo or SqlAlchemyCalendarRepository()

    def execute(self, db: Session, integration: models.IntegrationAccount) -> SyncCalendarsResult:
        externals = self.provider.list_calendars()
        self.calendar_repo.upsert_discovered(db, integration, externals)
        db.commit()
        calendars = self.calendar_repo.list_for_integration(db, integration.id)
        return SyncCalendarsResult(synced_calendars=len(externals), calendars=calendars)
