"""HTTP surface of the sync engine, with the provider replaced by a fake."""
from datetime import datetime, timedelta, timezone

import pytest

from calsync.api.integrations import get_orchestrator
from calsync.config import SyncSettings
from calsync.db import models
from calsync.domain.changes import ExternalCalendar
from calsync.main import app
from calsync.services.credential_store import CredentialStore, TokenPayload
from calsync.services.encryption_service import EncryptionService
from calsync.services.lock_store import MemoryLockStore
from calsync.usecases.run_sync import SyncOrchestrator
from fakes import FakeProvider


@pytest.fixture
def fake():
    return FakeProvider()


@pytest.fixture
def connected(db, user):
    store = CredentialStore(settings=SyncSettings(), lock_store=MemoryLockStore(), encryption=EncryptionService())
    store.upsert_integration(
        db, "u1", "google",
        TokenPayload(access_token="a", refresh_token="r", expires_at=datetime.now(timezone.utc) + timedelta(hours=1)),
    )
    return store


@pytest.fixture
def api(client, fake):
    app.dependency_overrides[get_orchestrator] = lambda: SyncOrchestrator(
        settings=SyncSettings(), credential_store=object(), provider_factory=lambda *a, **k: fake
    )
    yield client
    app.dependency_overrides.clear()


def test_run_sync_endpoint_returns_result(api, connected, db, fake):
    db.add(models.Event(
        user_id="u1", title="Kickoff",
        start_at=datetime(2025, 5, 2, 9, tzinfo=timezone.utc), end_at=datetime(2025, 5, 2, 10, tzinfo=timezone.utc),
    ))
    db.commit()
    r = api.post("/users/u1/calendar-sync", params={"provider": "google", "mode": "push"})
    assert r.status_code == 200, r.text
    result = r.json()["results"][0]
    assert result["provider"] == "google"
    assert result["pushed"] == 1
    assert result["errors"] == []


def test_run_sync_all_connected(api, connected):
    r = api.post("/users/u1/calendar-sync")
    assert r.status_code == 200
    assert [x["provider"] for x in r.json()["results"]] == ["google"]


def test_run_sync_unknown_integration_is_404(api, user):
    r = api.post("/users/u1/calendar-sync", params={"provider": "microsoft"})
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "INTEGRATION_NOT_FOUND"


def test_run_sync_while_running_is_409(api, connected, db):
    integration = db.query(models.IntegrationAccount).one()
    integration.sync_status = "running"
    integration.sync_started_at = datetime.now(timezone.utc)
    db.commit()
    r = api.post("/users/u1/calendar-sync", params={"provider": "google"})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "SYNC_ALREADY_RUNNING"


def test_invalid_mode_is_rejected(api, connected):
    r = api.post("/users/u1/calendar-sync", params={"provider": "google", "mode": "sideways"})
    assert r.status_code == 422


def test_list_integrations_reports_status_and_config(api, connected, monkeypatch):
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_ID", "gid")
    monkeypatch.setenv("GOOGLE_CALENDAR_CLIENT_SECRET", "gsecret")
    monkeypatch.delenv("MICROSOFT_CALENDAR_CLIENT_ID", raising=False)
    monkeypatch.delenv("MICROSOFT_CALENDAR_CLIENT_SECRET", raising=False)
    api.post("/users/u1/calendar-sync", params={"provider": "google"})
    r = api.get("/users/u1/integrations")
    assert r.status_code == 200
    by_provider = {i["provider"]: i for i in r.json()["integrations"]}
    google = by_provider["google"]
    assert google["connected"] and google["configured"]
    assert google["syncStatus"] == "success"
    assert [c["externalCalendarId"] for c in google["calendars"] if c["isPrimary"]] == ["cal_1"]
    assert by_provider["microsoft"]["connected"] is False
    assert "MICROSOFT_CALENDAR_CLIENT_ID" in by_provider["microsoft"]["missingEnv"]


def test_set_primary_calendar(api, connected):
    api.post("/users/u1/calendar-sync", params={"provider": "google"})
    r = api.put("/users/u1/integrations/google/primary-calendar", json={"externalCalendarId": "cal_2"})
    assert r.status_code == 200
    primaries = [c["externalCalendarId"] for c in r.json()["calendars"] if c["isPrimary"]]
    assert primaries == ["cal_2"]

    r = api.put("/users/u1/integrations/google/primary-calendar", json={"externalCalendarId": "missing"})
    assert r.status_code == 404


def test_refresh_calendars(api, connected, fake):
    api.post("/users/u1/calendar-sync", params={"provider": "google"})
    fake.calendars.append(ExternalCalendar("cal_3", "Travel", False))
    r = api.post("/users/u1/integrations/google/calendars/refresh")
    assert r.status_code == 200
    assert {c["externalCalendarId"] for c in r.json()["calendars"]} == {"cal_1", "cal_2", "cal_3"}


def test_disconnect(api, connected, db):
    r = api.delete("/users/u1/integrations/google")
    assert r.status_code == 204
    assert db.query(models.IntegrationAccount).count() == 0
    assert api.delete("/users/u1/integrations/google").status_code == 404


def test_health_and_metrics(api):
    r = api.get("/healthz")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["lockBackend"] in {"memory", "redis"}
    metrics = api.get("/metrics").text
    assert "calsync_requests_total" in metrics
