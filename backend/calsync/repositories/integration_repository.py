from __future__ import annotations
from datetime import timedelta
from typing import List, Optional, Protocol

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from ..db import models
from ..domain.enums import Provider, SyncStatus
from ..domain.timeutil import utcnow


class IntegrationRepository(Protocol):
    def get(self, db: Session, user_id: str, provider: str) -> Optional[models.IntegrationAccount]: ...
    def list_connected(self, db: Session, user_id: str) -> List[models.IntegrationAccount]: ...
    def claim_run(self, db: Session, integration: models.IntegrationAccount, stale_after_seconds: int) -> bool: ...
    def mark_success(self, db: Session, integration: models.IntegrationAccount) -> None: ...
    def mark_error(self, db: Session, integration: models.IntegrationAccount, message: str, needs_reconnect: bool = False) -> None: ...


class SqlAlchemyIntegrationRepository:
    def get(self, db: Session, user_id: str, provider: str) -> Optional[models.IntegrationAccount]:
        return (
            db.query(models.IntegrationAccount)
            .filter(
                models.IntegrationAccount.user_id == user_id,
                models.IntegrationAccount.provider == provider,
            )
            .first()
        )

    def get_by_id(self, db: Session, integration_id: str, for_update: bool = False) -> Optional[models.IntegrationAccount]:
        q = db.query(models.IntegrationAccount).filter(models.IntegrationAccount.id == integration_id)
        if for_update:
            q = q.with_for_update()
        return q.populate_existing().first()

    def list_connected(self, db: Session, user_id: str) -> List[models.IntegrationAccount]:
        return (
            db.query(models.IntegrationAccount)
            .filter(
                models.IntegrationAccount.user_id == user_id,
                models.IntegrationAccount.provider.in_([p.value for p in Provider]),
            )
            .order_by(models.IntegrationAccount.provider)
            .all()
        )

    def claim_run(self, db: Session, integration: models.IntegrationAccount, stale_after_seconds: int) -> bool:
        """Atomically flip the integration to 'running'.

        Succeeds only when no other run holds the claim, or the holder's claim is
        older than stale_after_seconds (a crashed worker).
        """
        now = utcnow()
        stale_before = now - timedelta(seconds=stale_after_seconds)
        table = models.IntegrationAccount
        stmt = (
            update(table)
            .where(table.id == integration.id)
            .where(
                or_(
                    table.sync_status != SyncStatus.RUNNING.value,
                    table.sync_started_at.is_(None),
                    table.sync_started_at < stale_before,
                )
            )
            .values(sync_status=SyncStatus.RUNNING.value, sync_started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        res = db.execute(stmt)
        db.commit()
        db.refresh(integration)
        return res.rowcount == 1

    def mark_success(self, db: Session, integration: models.IntegrationAccount) -> None:
        now = utcnow()
        integration.sync_status = SyncStatus.SUCCESS.value
        integration.sync_error = None
        integration.sync_started_at = None
        integration.last_sync_at = now
        integration.updated_at = now
        db.commit()

    def mark_error(self, db: Session, integration: models.IntegrationAccount, message: str, needs_reconnect: bool = False) -> None:
        integration.sync_status = SyncStatus.ERROR.value
        integration.sync_error = message or "Sync failed"
        integration.sync_started_at = None
        if needs_reconnect:
            integration.needs_reconnect = 1
        integration.updated_at = utcnow()
        db.commit()
