from fastapi import APIRouter, Depends, Query, Response
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session
from ..config import get_settings
from ..db.session import get_db
from ..domain.enums import Provider, SyncMode
from ..errors import NotFoundError
from ..repositories.calendar_repository import SqlAlchemyCalendarRepository
from ..repositories.integration_repository import SqlAlchemyIntegrationRepository
from ..services.credential_store import CredentialStore
from ..usecases.run_sync import SyncOrchestrator

router = APIRouter(prefix="/users/{user_id}", tags=["calendar-sync"])

integrations = SqlAlchemyIntegrationRepository()
calendar_repo = SqlAlchemyCalendarRepository()


def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator()


def get_credential_store() -> CredentialStore:
    return CredentialStore()


class PrimaryCalendarIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    external_calendar_id: str = Field(alias="externalCalendarId", min_length=1)


def _calendar_out(c):
    return {
        "externalCalendarId": c.external_calendar_id,
        "label": c.label,
        "isPrimary": c.is_primary == 1,
        "lastSyncAt": c.last_sync_at,
    }


@router.post("/calendar-sync")
def run_calendar_sync(
    user_id: str,
    provider: Optional[Provider] = Query(default=None),
    mode: SyncMode = Query(default=SyncMode.FULL),
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Run one provider when given, otherwise every connected provider in turn."""
    if provider is not None:
        result = orchestrator.run_sync(db, user_id, provider.value, mode.value)
        return {"results": [result.as_dict()]}
    results = orchestrator.run_sync_all_connected(db, user_id, mode.value)
    return {"results": [r.as_dict() for r in results]}


@router.get("/integrations")
def list_integrations(user_id: str, db: Session = Depends(get_db)):
    settings = get_settings()
    rows = {i.provider: i for i in integrations.list_connected(db, user_id)}
    out = []
    for provider in Provider:
        i = rows.get(provider.value)
        missing = settings.missing_provider_env(provider.value)
        entry = {
            "provider": provider.value,
            "connected": i is not None,
            "configured": not missing,
            "missingEnv": missing,
        }
        if i is not None:
            entry.update({
                "id": i.id,
                "syncStatus": i.sync_status,
                "syncError": i.sync_error,
                "lastSyncAt": i.last_sync_at,
                "expiresAt": i.expires_at,
                "needsReconnect": i.needs_reconnect == 1,
                "calendars": [_calendar_out(c) for c in calendar_repo.list_for_integration(db, i.id)],
            })
        out.append(entry)
    return {"integrations": out}


@router.post("/integrations/{provider}/calendars/refresh")
def refresh_integration_calendars(
    user_id: str,
    provider: Provider,
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    res = orchestrator.refresh_calendars(db, user_id, provider.value)
    return {"syncedCalendars": res.synced_calendars, "calendars": [_calendar_out(c) for c in res.calendars]}


@router.put("/integrations/{provider}/primary-calendar")
def set_primary_calendar(
    user_id: str,
    provider: Provider,
    payload: PrimaryCalendarIn,
    db: Session = Depends(get_db),
):
    integration = integrations.get(db, user_id, provider.value)
    if integration is None:
        raise NotFoundError("INTEGRATION_NOT_FOUND", f"{provider.value} is not connected for this user")
    calendar_repo.set_primary(db, integration, payload.external_calendar_id)
    return {"calendars": [_calendar_out(c) for c in calendar_repo.list_for_integration(db, integration.id)]}


@router.delete("/integrations/{provider}", status_code=204)
def disconnect_integration(
    user_id: str,
    provider: Provider,
    db: Session = Depends(get_db),
    credential_store: CredentialStore = Depends(get_credential_store),
):
    if not credential_store.disconnect_integration(db, user_id, provider.value):
        raise NotFoundError("INTEGRATION_NOT_FOUND", f"{provider.value} is not connected for this user")
    return Response(status_code=204)
