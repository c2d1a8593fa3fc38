from datetime import date, datetime, timezone
from types import SimpleNamespace

from calsync.adapters.schemas import (
    google_calendar_from,
    google_event_body,
    graph_calendar_from,
    graph_event_body,
    normalize_google_event,
    normalize_graph_event,
)
from calsync.domain.enums import ChangeKind, EventStatus
from calsync.domain.timeutil import all_day_dates, all_day_span, iana_timezone, parse_instant


def _event(**kw):
    base = dict(
        id="ev1",
        title="Kickoff",
        description=None,
        location=None,
        start_at=datetime(2025, 5, 2, 9, 0, tzinfo=timezone.utc),
        end_at=datetime(2025, 5, 2, 10, 0, tzinfo=timezone.utc),
        all_day=0,
        timezone="Europe/Lisbon",
        status="confirmed",
        meeting_url=None,
        category="meeting",
    )
    base.update(kw)
    return SimpleNamespace(**base)


def test_all_day_span_single_day():
    start, end = all_day_span(date(2025, 4, 10), date(2025, 4, 11))
    assert start == datetime(2025, 4, 10, 0, 0, tzinfo=timezone.utc)
    assert end == datetime(2025, 4, 10, 23, 59, tzinfo=timezone.utc)


def test_all_day_span_missing_end_defaults_to_one_day():
    start, end = all_day_span(date(2025, 4, 10), None)
    assert end == datetime(2025, 4, 10, 23, 59, tzinfo=timezone.utc)


def test_all_day_multi_day_round_trip():
    start, end = all_day_span(date(2025, 4, 10), date(2025, 4, 13))
    assert all_day_dates(start, end) == (date(2025, 4, 10), date(2025, 4, 13))


def test_all_day_dates_accepts_naive_values_as_utc():
    assert all_day_dates(datetime(2025, 4, 10), datetime(2025, 4, 10, 23, 59)) == (date(2025, 4, 10), date(2025, 4, 11))


def test_parse_instant_graph_precision():
    parsed = parse_instant("2025-05-02T09:00:00.0000000")
    assert parsed == datetime(2025, 5, 2, 9, 0, tzinfo=timezone.utc)
    assert parse_instant("not a date") is None
    assert parse_instant(None) is None


def test_google_all_day_event():
    change = normalize_google_event(
        {"id": "g1", "etag": '"1"', "summary": "Shoot", "start": {"date": "2025-04-10"}, "end": {"date": "2025-04-11"}},
        "cal_1",
        "Europe/Lisbon",
    )
    assert change.all_day is True
    assert change.start_at == datetime(2025, 4, 10, 0, 0, tzinfo=timezone.utc)
    assert change.end_at == datetime(2025, 4, 10, 23, 59, tzinfo=timezone.utc)
    assert change.timezone == "Europe/Lisbon"


def test_google_timed_event_with_offset_and_tentative():
    change = normalize_google_event(
        {
            "id": "g2",
            "status": "tentative",
            "summary": "Review",
            "start": {"dateTime": "2025-05-02T10:00:00+01:00", "timeZone": "Europe/Lisbon"},
            "end": {"dateTime": "2025-05-02T11:00:00+01:00"},
            "created": "2025-05-01T08:00:00.000Z",
            "updated": "2025-05-01T09:30:00.000Z",
        },
        "cal_1",
        "UTC",
    )
    assert change.start_at == datetime(2025, 5, 2, 9, 0, tzinfo=timezone.utc)
    assert change.status is EventStatus.TENTATIVE
    assert change.kind is ChangeKind.UPDATED
    assert change.timezone == "Europe/Lisbon"


def test_google_cancelled_is_deleted_change():
    change = normalize_google_event({"id": "g3", "status": "cancelled"}, "cal_1", "UTC")
    assert change.deleted
    assert change.external_event_id == "g3"


def test_google_payload_without_id_is_dropped():
    assert normalize_google_event({"summary": "no id"}, "cal_1", "UTC") is None
    assert normalize_google_event({"id": "g4", "start": {}, "end": {}}, "cal_1", "UTC") is None


def test_graph_removed_and_cancelled_are_deleted():
    removed = normalize_graph_event({"id": "m1", "@removed": {"reason": "deleted"}}, "cal", "UTC")
    cancelled = normalize_graph_event({"id": "m2", "isCancelled": True, "subject": "x"}, "cal", "UTC")
    assert removed.deleted and cancelled.deleted


def test_graph_timed_event_is_read_as_utc():
    change = normalize_graph_event(
        {
            "id": "m3",
            "@odata.etag": 'W/"abc"',
            "subject": "Kickoff",
            "body": {"contentType": "text", "content": "agenda"},
            "bodyPreview": "agenda...",
            "location": {"displayName": "Room 1"},
            "start": {"dateTime": "2025-05-02T09:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2025-05-02T10:00:00.0000000", "timeZone": "UTC"},
            "originalStartTimeZone": "Europe/Lisbon",
        },
        "cal",
        "UTC",
    )
    assert change.etag == 'W/"abc"'
    assert change.start_at == datetime(2025, 5, 2, 9, 0, tzinfo=timezone.utc)
    assert change.description == "agenda"
    assert change.location == "Room 1"
    assert change.timezone == "Europe/Lisbon"


def test_graph_all_day_without_timezone_label_uses_default():
    change = normalize_graph_event(
        {
            "id": "m4",
            "isAllDay": True,
            "start": {"dateTime": "2025-04-10T00:00:00.0000000"},
            "end": {"dateTime": "2025-04-11T00:00:00.0000000"},
        },
        "cal",
        "Europe/Lisbon",
    )
    assert change.end_at == datetime(2025, 4, 10, 23, 59, tzinfo=timezone.utc)
    assert change.timezone == "Europe/Lisbon"


def test_google_body_all_day_uses_exclusive_end_date():
    start, end = all_day_span(date(2025, 4, 10), date(2025, 4, 12))
    body = google_event_body(_event(all_day=1, start_at=start, end_at=end), "UTC", source_hash="h")
    assert body["start"] == {"date": "2025-04-10"}
    assert body["end"] == {"date": "2025-04-12"}
    assert body["extendedProperties"]["private"] == {
        "calsync_origin": "calsync",
        "calsync_event_id": "ev1",
        "calsync_hash": "h",
    }


def test_graph_body_uses_event_wall_time():
    body = graph_event_body(_event(location="Studio"), "UTC")
    # 09:00Z is 10:00 in Lisbon during summer time
    assert body["start"] == {"dateTime": "2025-05-02T10:00:00", "timeZone": "Europe/Lisbon"}
    assert body["location"] == {"displayName": "Studio"}
    assert body["body"]["contentType"] == "text"


def test_graph_body_unknown_zone_falls_back_to_utc():
    body = graph_event_body(_event(timezone="Mars/Olympus"), "UTC")
    assert body["start"] == {"dateTime": "2025-05-02T09:00:00", "timeZone": "UTC"}


def test_calendar_entries():
    assert graph_calendar_from({"id": "c1", "name": "Shared", "canEdit": False}) is None
    default = graph_calendar_from({"id": "c2", "name": "Calendar", "isDefaultCalendar": True, "canEdit": True})
    assert default.is_primary and default.label == "Calendar"
    g = google_calendar_from({"id": "primary@x", "summary": "Me", "summaryOverride": "Mine", "primary": True})
    assert g.label == "Mine" and g.is_primary


def test_iana_timezone_maps_windows_names():
    assert iana_timezone("GMT Standard Time", "UTC") == "Europe/London"
    assert iana_timezone("Pacific Standard Time", "UTC") == "America/Los_Angeles"
    assert iana_timezone("Europe/Lisbon", "UTC") == "Europe/Lisbon"
    assert iana_timezone("tzone://Microsoft/Custom", "Europe/Lisbon") == "Europe/Lisbon"
    assert iana_timezone(None, "Europe/Lisbon") == "Europe/Lisbon"


def test_graph_windows_zone_becomes_iana_before_reaching_google():
    change = normalize_graph_event(
        {
            "id": "m5",
            "subject": "Standup",
            "start": {"dateTime": "2025-05-02T09:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2025-05-02T09:15:00.0000000", "timeZone": "UTC"},
            "originalStartTimeZone": "GMT Standard Time",
        },
        "cal",
        "Europe/Lisbon",
    )
    assert change.timezone == "Europe/London"
    body = google_event_body(_event(timezone=change.timezone, start_at=change.start_at, end_at=change.end_at), "UTC")
    assert body["start"] == {"dateTime": "2025-05-02T09:00:00Z", "timeZone": "Europe/London"}


def test_graph_custom_zone_uses_default():
    change = normalize_graph_event(
        {
            "id": "m6",
            "start": {"dateTime": "2025-05-02T09:00:00"},
            "end": {"dateTime": "2025-05-02T10:00:00"},
            "originalStartTimeZone": "tzone://Microsoft/Custom",
        },
        "cal",
        "Europe/Lisbon",
    )
    assert change.timezone == "Europe/Lisbon"


def test_google_unknown_zone_label_uses_default():
    change = normalize_google_event(
        {
            "id": "g6",
            "start": {"dateTime": "2025-05-02T09:00:00Z", "timeZone": "Nowhere/Special"},
            "end": {"dateTime": "2025-05-02T10:00:00Z"},
        },
        "cal_1",
        "Europe/Lisbon",
    )
    assert change.timezone == "Europe/Lisbon"


def test_google_date_only_event_without_end_is_one_day():
    change = normalize_google_event({"id": "g7", "summary": "Holiday", "start": {"date": "2025-04-10"}}, "cal_1", "Europe/Lisbon")
    assert change.all_day is True
    assert change.start_at == datetime(2025, 4, 10, 0, 0, tzinfo=timezone.utc)
    assert change.end_at == datetime(2025, 4, 10, 23, 59, tzinfo=timezone.utc)


def test_meeting_links_are_read_from_both_providers():
    hangout = normalize_google_event(
        {"id": "g8", "start": {"dateTime": "2025-05-02T09:00:00Z"}, "end": {"dateTime": "2025-05-02T10:00:00Z"},
         "hangoutLink": "https://meet.google.com/abc-defg-hij"},
        "cal_1", "UTC",
    )
    conference = normalize_google_event(
        {"id": "g9", "start": {"dateTime": "2025-05-02T09:00:00Z"}, "end": {"dateTime": "2025-05-02T10:00:00Z"},
         "conferenceData": {"entryPoints": [
             {"entryPointType": "phone", "uri": "tel:+351"},
             {"entryPointType": "video", "uri": "https://zoom.us/j/1"},
         ]}},
        "cal_1", "UTC",
    )
    teams = normalize_graph_event(
        {"id": "m7", "start": {"dateTime": "2025-05-02T09:00:00"}, "end": {"dateTime": "2025-05-02T10:00:00"},
         "onlineMeeting": {"joinUrl": "https://teams.microsoft.com/l/meetup-join/1"}},
        "cal", "UTC",
    )
    assert hangout.meeting_url == "https://meet.google.com/abc-defg-hij"
    assert conference.meeting_url == "https://zoom.us/j/1"
    assert teams.meeting_url == "https://teams.microsoft.com/l/meetup-join/1"


def test_graph_body_does_not_write_read_only_meeting_url():
    body = graph_event_body(_event(meeting_url="https://meet.example/x"), "UTC")
    assert "onlineMeetingUrl" not in body
