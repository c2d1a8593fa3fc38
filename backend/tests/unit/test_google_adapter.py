"""Google adapter against a mocked discovery client."""
import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from googleapiclient.errors import HttpError

from calsync.adapters.google_calendar_provider import GoogleCalendarProvider
from calsync.config import SyncSettings
from calsync.domain.changes import PriorExternalState
from calsync.errors import ProviderRequestError, TransientProviderError

SETTINGS = SyncSettings(provider_max_attempts=3)


def http_error(status, reason=None, headers=None):
    resp = httplib2.Response({"status": status, **(headers or {})})
    body = {"error": {"code": status, "message": "x", "errors": [{"reason": reason}] if reason else []}}
    return HttpError(resp, json.dumps(body).encode())


def no_wait(retry_state):
    return 0


@pytest.fixture
def service():
    with patch("calsync.adapters.google_calendar_provider.build") as mock_build:
        svc = MagicMock()
        mock_build.return_value = svc
        yield svc


@pytest.fixture
def credential_store():
    store = MagicMock()
    store.get_valid_access_token.return_value = "tok-1"
    store.force_refresh.return_value = "tok-2"
    return store


def make_provider(credential_store):
    integration = SimpleNamespace(id="int-1", provider="google")
    return GoogleCalendarProvider(MagicMock(), integration, credential_store, settings=SETTINGS, retry_wait=no_wait)


def _event(**kw):
    base = dict(
        id="ev1", title="Kickoff", description=None, location="Room 2",
        start_at=datetime(2025, 5, 2, 9, 0, tzinfo=timezone.utc),
        end_at=datetime(2025, 5, 2, 10, 0, tzinfo=timezone.utc),
        all_day=0, timezone="Europe/Lisbon", status="confirmed", meeting_url=None, category="meeting",
    )
    base.update(kw)
    return SimpleNamespace(**base)


def test_list_calendars_requests_writable_only(service, credential_store):
    service.calendarList.return_value.list.return_value.execute.return_value = {
        "items": [
            {"id": "primary@x", "summary": "Me", "primary": True},
            {"id": "team@x", "summary": "Team"},
            {"summary": "broken"},
        ]
    }
    cals = make_provider(credential_store).list_calendars()
    assert [c.external_calendar_id for c in cals] == ["primary@x", "team@x"]
    assert cals[0].is_primary
    assert service.calendarList.return_value.list.call_args.kwargs["minAccessRole"] == "writer"


def test_initial_pull_follows_pages_and_returns_sync_token(service, credential_store):
    events = service.events.return_value
    events.list.return_value.execute.side_effect = [
        {"items": [{"id": "a", "summary": "A", "start": {"date": "2025-04-10"}, "end": {"date": "2025-04-11"}}], "nextPageToken": "p2"},
        {"items": [{"id": "b", "status": "cancelled"}, {"summary": "no id"}], "nextSyncToken": "sync-1"},
    ]
    res = make_provider(credential_store).pull_events("cal_1")
    assert [c.external_event_id for c in res.changes] == ["a", "b"]
    assert res.changes[1].deleted
    assert res.skipped == 1
    assert res.next_cursor == "sync-1"
    first_call = events.list.call_args_list[0].kwargs
    assert first_call["showDeleted"] is True
    assert first_call["singleEvents"] is False
    assert "timeMin" in first_call and "syncToken" not in first_call
    assert events.list.call_args_list[1].kwargs["pageToken"] == "p2"


def test_expired_sync_token_reports_invalidated_cursor(service, credential_store):
    service.events.return_value.list.return_value.execute.side_effect = http_error(410)
    res = make_provider(credential_store).pull_events("cal_1", cursor="old-token")
    assert res.cursor_invalidated
    assert res.changes == []


def test_unauthorized_triggers_one_forced_refresh(service, credential_store):
    service.events.return_value.list.return_value.execute.side_effect = [
        http_error(401),
        {"items": [], "nextSyncToken": "sync-2"},
    ]
    res = make_provider(credential_store).pull_events("cal_1", cursor="tok")
    assert res.next_cursor == "sync-2"
    credential_store.force_refresh.assert_called_once()
    assert credential_store.force_refresh.call_args.args[2] == "tok-1"


def test_transient_errors_are_retried_then_surface(service, credential_store):
    service.events.return_value.delete.return_value.execute.side_effect = http_error(503)
    with pytest.raises(TransientProviderError):
        make_provider(credential_store).delete_event("cal_1", "ev")
    assert service.events.return_value.delete.return_value.execute.call_count == 3


def test_rate_limit_403_is_transient_but_other_403_is_not(service, credential_store):
    execute = service.events.return_value.get.return_value.execute
    execute.side_effect = [http_error(403, "rateLimitExceeded"), {"id": "ev", "etag": '"e9"'}]
    assert make_provider(credential_store).fetch_etag("cal_1", "ev") == '"e9"'
    execute.side_effect = http_error(403, "forbidden")
    with pytest.raises(ProviderRequestError):
        make_provider(credential_store).fetch_etag("cal_1", "ev")


def test_create_inserts_with_private_properties(service, credential_store):
    service.events.return_value.insert.return_value.execute.return_value = {"id": "g-new", "etag": '"e1"'}
    res = make_provider(credential_store).push_event("cal_1", _event(), None, source_hash="h1")
    assert res.created and res.external_event_id == "g-new" and res.etag == '"e1"'
    body = service.events.return_value.insert.call_args.kwargs["body"]
    assert body["extendedProperties"]["private"]["calsync_hash"] == "h1"
    assert body["start"]["timeZone"] == "Europe/Lisbon"


def test_update_is_conditional_on_etag(service, credential_store):
    patch_request = service.events.return_value.patch.return_value
    patch_request.headers = {}
    patch_request.execute.return_value = {"id": "g1", "etag": '"e2"'}
    res = make_provider(credential_store).push_event("cal_1", _event(), PriorExternalState("g1", '"e1"'))
    assert patch_request.headers["If-Match"] == '"e1"'
    assert not res.created and res.etag == '"e2"'
    service.events.return_value.insert.assert_not_called()


def test_update_of_missing_event_recreates_once(service, credential_store):
    patch_request = service.events.return_value.patch.return_value
    patch_request.headers = {}
    patch_request.execute.side_effect = http_error(404)
    service.events.return_value.insert.return_value.execute.return_value = {"id": "g-re", "etag": '"e3"'}
    res = make_provider(credential_store).push_event("cal_1", _event(), PriorExternalState("g-gone", '"e1"'))
    assert res.created and res.external_event_id == "g-re"
    assert service.events.return_value.insert.call_count == 1


def test_delete_of_missing_event_is_success(service, credential_store):
    service.events.return_value.delete.return_value.execute.side_effect = http_error(410)
    make_provider(credential_store).delete_event("cal_1", "gone")


def test_fetch_etag_of_cancelled_event_is_none(service, credential_store):
    service.events.return_value.get.return_value.execute.return_value = {"id": "g", "status": "cancelled", "etag": '"x"'}
    assert make_provider(credential_store).fetch_etag("cal_1", "g") is None
