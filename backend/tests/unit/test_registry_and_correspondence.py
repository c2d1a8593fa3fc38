import threading
from datetime import datetime, timezone

import pytest

from calsync.db import models
from calsync.db.session import SessionLocal
from calsync.domain.changes import ExternalCalendar
from calsync.errors import NotFoundError, ProviderRequestError
from calsync.repositories.calendar_repository import SqlAlchemyCalendarRepository, cursor_of
from calsync.repositories.correspondence_repository import (
    SqlAlchemyCorrespondenceRepository,
    compute_content_hash,
)
from calsync.services.event_service import EventService
from fakes import FakeProvider


def make_integration(db, provider="google"):
    integration = models.IntegrationAccount(user_id="u1", provider=provider)
    db.add(integration)
    db.commit()
    return integration


class TestCalendarRegistry:
    def test_discovery_marks_provider_default_primary(self, db, user):
        integration = make_integration(db)
        repo = SqlAlchemyCalendarRepository()
        fake = FakeProvider(calendars=[ExternalCalendar("a", "A"), ExternalCalendar("b", "B", True)])
        cals = repo.ensure_calendars(db, integration, fake)
        assert {c.external_calendar_id for c in cals} == {"a", "b"}
        assert repo.get_primary(db, integration).external_calendar_id == "b"
        # Second call reuses stored calendars without another discovery
        repo.ensure_calendars(db, integration, fake)
        assert fake.calls.count(("list_calendars",)) == 1

    def test_first_calendar_is_primary_when_none_flagged(self, db, user):
        integration = make_integration(db)
        repo = SqlAlchemyCalendarRepository()
        repo.ensure_calendars(db, integration, FakeProvider(calendars=[ExternalCalendar("a", "A"), ExternalCalendar("b", "B")]))
        assert repo.get_primary(db, integration).external_calendar_id == "a"

    def test_discovery_without_calendars_fails(self, db, user):
        integration = make_integration(db)
        with pytest.raises(ProviderRequestError):
            SqlAlchemyCalendarRepository().ensure_calendars(db, integration, FakeProvider(calendars=[]))

    def test_set_primary_leaves_exactly_one(self, db, user):
        integration = make_integration(db)
        repo = SqlAlchemyCalendarRepository()
        repo.ensure_calendars(db, integration, FakeProvider())
        repo.set_primary(db, integration, "cal_2")
        repo.set_primary(db, integration, "cal_2")
        flags = {c.external_calendar_id: c.is_primary for c in repo.list_for_integration(db, integration.id)}
        assert flags == {"cal_1": 0, "cal_2": 1}

    def test_concurrent_set_primary_leaves_exactly_one(self, db, user):
        integration = make_integration(db)
        repo = SqlAlchemyCalendarRepository()
        repo.ensure_calendars(db, integration, FakeProvider())
        barrier = threading.Barrier(2)
        errors = []

        def choose(calendar_id):
            session = SessionLocal()
            try:
                own = session.get(models.IntegrationAccount, integration.id)
                barrier.wait(timeout=5)
                repo.set_primary(session, own, calendar_id)
            except Exception as e:  # surfaced below
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=choose, args=(c,)) for c in ("cal_1", "cal_2")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert errors == []
        db.expire_all()
        flags = [c.is_primary for c in repo.list_for_integration(db, integration.id)]
        assert sorted(flags) == [0, 1]

    def test_set_primary_unknown_calendar_changes_nothing(self, db, user):
        integration = make_integration(db)
        repo = SqlAlchemyCalendarRepository()
        repo.ensure_calendars(db, integration, FakeProvider())
        with pytest.raises(NotFoundError):
            repo.set_primary(db, integration, "nope")
        assert repo.get_primary(db, integration).external_calendar_id == "cal_1"

    def test_cursor_column_depends_on_provider_family(self, db, user):
        repo = SqlAlchemyCalendarRepository()
        google = make_integration(db, "google")
        ms = make_integration(db, "microsoft")
        g_map = repo.ensure_calendars(db, google, FakeProvider())[0]
        m_map = repo.ensure_calendars(db, ms, FakeProvider(provider="microsoft"))[0]
        repo.update_cursor(db, g_map, "sync-1", "google")
        repo.update_cursor(db, m_map, "https://graph/delta", "microsoft")
        assert (g_map.last_sync_token, g_map.last_delta_link) == ("sync-1", None)
        assert (m_map.last_sync_token, m_map.last_delta_link) == (None, "https://graph/delta")
        assert cursor_of(m_map, "microsoft") == "https://graph/delta"
        repo.clear_cursor(db, g_map)
        assert cursor_of(g_map, "google") is None

    def test_rediscovery_keeps_primary_and_refreshes_labels(self, db, user):
        integration = make_integration(db)
        repo = SqlAlchemyCalendarRepository()
        repo.ensure_calendars(db, integration, FakeProvider())
        repo.set_primary(db, integration, "cal_2")
        repo.upsert_discovered(db, integration, [
            ExternalCalendar("cal_1", "Renamed", True),
            ExternalCalendar("cal_3", "New"),
        ])
        db.commit()
        rows = {c.external_calendar_id: c for c in repo.list_for_integration(db, integration.id)}
        assert set(rows) == {"cal_1", "cal_2", "cal_3"}
        assert rows["cal_1"].label == "Renamed"
        assert repo.get_primary(db, integration).external_calendar_id == "cal_2"


class TestCorrespondence:
    def _event(self, db):
        return EventService().create_event(
            db, "u1", "Kickoff",
            datetime(2025, 5, 2, 9, 0, tzinfo=timezone.utc),
            datetime(2025, 5, 2, 10, 0, tzinfo=timezone.utc),
            category="meeting",
        )

    def test_hash_ignores_bookkeeping_fields(self, db, user):
        event = self._event(db)
        before = compute_content_hash(event)
        event.external_etag = '"e1"'
        event.external_event_id = "ext"
        event.updated_at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert compute_content_hash(event) == before
        assert len(before) == 64

    def test_hash_tracks_content_and_deletion(self, db, user):
        svc = EventService()
        event = self._event(db)
        h1 = compute_content_hash(event)
        svc.update_event(db, event.id, location="Studio 4")
        h2 = compute_content_hash(event)
        svc.delete_event(db, event.id)
        h3 = compute_content_hash(event)
        assert len({h1, h2, h3}) == 3

    def test_hash_is_stable_across_reload(self, db, user):
        event = self._event(db)
        h = compute_content_hash(event)
        db.expire_all()
        assert compute_content_hash(db.get(models.Event, event.id)) == h

    def test_upsert_is_keyed_by_integration_and_event(self, db, user):
        integration = make_integration(db)
        event = self._event(db)
        repo = SqlAlchemyCorrespondenceRepository()
        repo.upsert(db, integration.id, event.id, "ext-1", "cal_1", '"e1"', "h1")
        repo.upsert(db, integration.id, event.id, "ext-2", "cal_1", '"e2"', "h2")
        db.commit()
        rows = repo.list_for_integration(db, integration.id)
        assert len(rows) == 1 and rows[0].external_event_id == "ext-2"
        assert repo.find_by_external_id(db, integration.id, "ext-2").event_id == event.id
        assert repo.find_by_external_id(db, integration.id, "ext-1") is None
