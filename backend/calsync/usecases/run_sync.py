"""Sync orchestration: one run per (user, provider), idle -> running -> success | error."""
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..adapters.factory import get_calendar_provider
from ..config import SyncSettings, get_settings
from ..db import models
from ..domain.changes import RunResult
from ..domain.enums import Provider, SyncMode
from ..errors import (
    BaseAppException,
    CredentialExpiredError,
    NotFoundError,
    ProviderRequestError,
    SyncAlreadyRunningError,
    ValidationAppError,
)
from ..metrics import SYNC_RUN_COUNT, SYNC_RUN_DURATION
from ..ports.calendar_provider import CalendarProvider
from ..repositories.calendar_repository import SqlAlchemyCalendarRepository
from ..repositories.correspondence_repository import SqlAlchemyCorrespondenceRepository
from ..repositories.integration_repository import SqlAlchemyIntegrationRepository
from ..services.credential_store import CredentialStore
from ..services.event_service import EventService
from .push_events import PushEventsUseCase
from .sync_calendars import SyncCalendarsResult, SyncCalendarsUseCase
from .sync_events import PullEventsUseCase

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., CalendarProvider]


class SyncOrchestrator:
    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        credential_store: Optional[CredentialStore] = None,
        provider_factory: Optional[ProviderFactory] = None,
        integrations: Optional[SqlAlchemyIntegrationRepository] = None,
        calendar_repo: Optional[SqlAlchemyCalendarRepository] = None,
        correspondence_repo: Optional[SqlAlchemyCorrespondenceRepository] = None,
    ):
        self.settings = settings or get_settings()
        self.integrations = integrations or SqlAlchemyIntegrationRepository()
        self.credential_store = credential_store or CredentialStore(settings=self.settings, integrations=self.integrations)
        self.provider_factory = provider_factory or get_calendar_provider
        self.calendar_repo = calendar_repo or SqlAlchemyCalendarRepository()
        self.correspondence_repo = correspondence_repo or SqlAlchemyCorrespondenceRepository()

    def _integration(self, db: Session, user_id: str, provider: str) -> models.IntegrationAccount:
        try:
            provider = Provider(provider).value
        except ValueError:
            raise ValidationAppError("UNSUPPORTED_PROVIDER", f"unsupported provider: {provider}")
        integration = self.integrations.get(db, user_id, provider)
        if integration is None:
            raise NotFoundError("INTEGRATION_NOT_FOUND", f"{provider} is not connected for this user")
        return integration

    def run_sync(
        self,
        db: Session,
        user_id: str,
        provider: str,
        mode: str = SyncMode.FULL.value,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunResult:
        try:
            mode = SyncMode(mode).value
        except ValueError:
            raise ValidationAppError("INVALID_MODE", f"mode must be 'full' or 'push', got {mode!r}")
        integration = self._integration(db, user_id, provider)
        if not self.integrations.claim_run(db, integration, self.settings.stale_run_seconds):
            raise SyncAlreadyRunningError()

        result = RunResult(provider=integration.provider)
        started = time.monotonic()
        logger.info("sync run started: user=%s provider=%s mode=%s", user_id, integration.provider, mode)
        try:
            adapter = self.provider_factory(db, integration, self.credential_store, settings=self.settings)
            calendars = self.calendar_repo.ensure_calendars(db, integration, adapter)
            primary = self.calendar_repo.get_primary(db, integration)
            if primary is None:
                raise ProviderRequestError(f"no external calendar for {integration.provider}")

            if mode != SyncMode.PUSH.value:
                PullEventsUseCase(adapter, self.calendar_repo, self.correspondence_repo).execute(
                    db, integration, calendars, result, cancel_event
                )
            if not result.cancelled:
                PushEventsUseCase(
                    adapter, self.correspondence_repo, EventService(self.settings.default_timezone), self.settings
                ).execute(db, integration, calendars, primary, result, cancel_event)
        except CredentialExpiredError as e:
            db.rollback()
            self.integrations.mark_error(db, integration, e.message, needs_reconnect=True)
            SYNC_RUN_COUNT.labels(provider=integration.provider, outcome="error").inc()
            logger.error("sync run aborted for %s: %s", integration.provider, e.message)
            raise
        except Exception as e:
            db.rollback()
            message = e.message if isinstance(e, BaseAppException) else str(e)
            self.integrations.mark_error(db, integration, message)
            SYNC_RUN_COUNT.labels(provider=integration.provider, outcome="error").inc()
            logger.error("sync run aborted for %s: %s", integration.provider, message)
            raise
        finally:
            SYNC_RUN_DURATION.labels(provider=integration.provider).observe(time.monotonic() - started)

        self.integrations.mark_success(db, integration)
        outcome = "cancelled" if result.cancelled else ("partial" if result.errors else "success")
        SYNC_RUN_COUNT.labels(provider=integration.provider, outcome=outcome).inc()
        logger.info(
            "sync run finished: provider=%s pulled=%d pushed=%d deleted=%d skipped=%d errors=%d",
            result.provider, result.pulled, result.pushed, result.deleted, result.skipped, len(result.errors),
        )
        return result

    def run_sync_all_connected(self, db: Session, user_id: str, mode: str = SyncMode.FULL.value) -> List[RunResult]:
        results: List[RunResult] = []
        for integration in self.integrations.list_connected(db, user_id):
            provider = integration.provider
            try:
                results.append(self.run_sync(db, user_id, provider, mode))
            except BaseAppException as e:
                results.append(RunResult(provider=provider, errors=[e.message]))
            except Exception as e:
                logger.exception("sync run for %s failed unexpectedly", provider)
                results.append(RunResult(provider=provider, errors=[str(e) or type(e).__name__]))
        return results

    def refresh_calendars(self, db: Session, user_id: str, provider: str) -> SyncCalendarsResult:
        integration = self._integration(db, user_id, provider)
        adapter = self.provider_factory(db, integration, self.credential_store, settings=self.settings)
        return SyncCalendarsUseCase(adapter, self.calendar_repo).execute(db, integration)


def run_sync(
    db: Session,
    user_id: str,
    provider: str,
    mode: str = SyncMode.FULL.value,
    cancel_event: Optional[threading.Event] = None,
) -> RunResult:
    return SyncOrchestrator().run_sync(db, user_id, provider, mode, cancel_event)


def run_sync_all_connected(db: Session, user_id: str, mode: str = SyncMode.FULL.value) -> List[RunResult]:
    return SyncOrchestrator().run_sync_all_connected(db, user_id, mode)


def refresh_calendars(db: Session, user_id: str, provider: str) -> SyncCalendarsResult:
    return SyncOrchestrator().refresh_calendars(db, user_id, provider)
