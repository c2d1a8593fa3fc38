"""Strict wire schemas and translation for both provider families.

Each provider payload is validated against one pydantic model; anything that
does not validate (or lacks a stable id) normalizes to None and is counted as
skipped by the caller.
"""
from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..db import models
from ..domain.changes import ExternalCalendar, ExternalEventChange
from ..domain.enums import ChangeKind, EventStatus
from ..domain.timeutil import all_day_dates, all_day_span, as_utc, iana_timezone, parse_date, parse_instant, to_iso_z

logger = logging.getLogger(__name__)

ORIGIN_TAG = "calsync"


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# --- Google (sync-token family) ---

class GoogleEventTime(_Wire):
    date: Optional[str] = None
    dateTime: Optional[str] = None
    timeZone: Optional[str] = None


class GoogleEntryPoint(_Wire):
    entryPointType: Optional[str] = None
    uri: Optional[str] = None


class GoogleConferenceData(_Wire):
    entryPoints: List[GoogleEntryPoint] = Field(default_factory=list)


class GoogleEventPayload(_Wire):
    id: str = Field(min_length=1)
    status: str = "confirmed"
    etag: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[GoogleEventTime] = None
    end: Optional[GoogleEventTime] = None
    created: Optional[str] = None
    updated: Optional[str] = None
    hangoutLink: Optional[str] = None
    conferenceData: Optional[GoogleConferenceData] = None


class GoogleCalendarListEntry(_Wire):
    id: str = Field(min_length=1)
    summary: Optional[str] = None
    summaryOverride: Optional[str] = None
    primary: bool = False
    accessRole: Optional[str] = None


# --- Microsoft Graph (delta-link family) ---

class GraphDateTime(_Wire):
    dateTime: Optional[str] = None
    timeZone: Optional[str] = None


class GraphBody(_Wire):
    contentType: Optional[str] = None
    content: Optional[str] = None


class GraphLocation(_Wire):
    displayName: Optional[str] = None


class GraphOnlineMeeting(_Wire):
    joinUrl: Optional[str] = None


class GraphEventPayload(_Wire):
    id: str = Field(min_length=1)
    etag: Optional[str] = Field(default=None, alias="@odata.etag")
    removed: Optional[Dict[str, Any]] = Field(default=None, alias="@removed")
    subject: Optional[str] = None
    bodyPreview: Optional[str] = None
    body: Optional[GraphBody] = None
    location: Optional[GraphLocation] = None
    start: Optional[GraphDateTime] = None
    end: Optional[GraphDateTime] = None
    isAllDay: bool = False
    isCancelled: bool = False
    showAs: Optional[str] = None
    originalStartTimeZone: Optional[str] = None
    onlineMeeting: Optional[GraphOnlineMeeting] = None
    onlineMeetingUrl: Optional[str] = None
    createdDateTime: Optional[str] = None
    lastModifiedDateTime: Optional[str] = None


class GraphCalendarEntry(_Wire):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    isDefaultCalendar: bool = False
    canEdit: Optional[bool] = None


def _kind(created: Optional[str], updated: Optional[str]) -> ChangeKind:
    created_at = parse_instant(created)
    updated_at = parse_instant(updated)
    if created_at and updated_at and abs((updated_at - created_at).total_seconds()) < 1:
        return ChangeKind.CREATED
    return ChangeKind.UPDATED


def _validate(model: type[_Wire], item: Dict[str, Any], provider: str) -> Optional[_Wire]:
    try:
        return model.model_validate(item)
    except ValidationError as e:
        logger.warning("dropping %s payload %r: %s", provider, item.get("id") if isinstance(item, dict) else None, e.error_count())
        return None


def _google_meeting_url(payload: GoogleEventPayload) -> Optional[str]:
    if payload.hangoutLink:
        return payload.hangoutLink
    if payload.conferenceData:
        for entry in payload.conferenceData.entryPoints:
            if entry.entryPointType == "video" and entry.uri:
                return entry.uri
    return None


def normalize_google_event(item: Dict[str, Any], external_calendar_id: str, default_timezone: str) -> Optional[ExternalEventChange]:
    payload = _validate(GoogleEventPayload, item, "google")
    if payload is None:
        return None
    if payload.status.lower() == "cancelled":
        return ExternalEventChange.removed(payload.id, external_calendar_id, payload.etag)

    start = payload.start or GoogleEventTime()
    end = payload.end or GoogleEventTime()
    all_day = start.date is not None
    if all_day:
        start_day = parse_date(start.date)
        if start_day is None:
            return None
        start_at, end_at = all_day_span(start_day, parse_date(end.date))
    else:
        start_at = parse_instant(start.dateTime, assume_utc=False)
        end_at = parse_instant(end.dateTime, assume_utc=False)
        if start_at is None or end_at is None:
            return None

    status = EventStatus.TENTATIVE if payload.status.lower() == "tentative" else EventStatus.CONFIRMED
    return ExternalEventChange(
        kind=_kind(payload.created, payload.updated),
        external_event_id=payload.id,
        external_calendar_id=external_calendar_id,
        etag=payload.etag,
        title=payload.summary or "Event",
        description=payload.description,
        location=payload.location,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        timezone=iana_timezone(start.timeZone or end.timeZone, default_timezone),
        meeting_url=_google_meeting_url(payload),
        status=status,
    )


def normalize_graph_event(item: Dict[str, Any], external_calendar_id: str, default_timezone: str) -> Optional[ExternalEventChange]:
    payload = _validate(GraphEventPayload, item, "microsoft")
    if payload is None:
        return None
    if payload.removed is not None or payload.isCancelled:
        return ExternalEventChange.removed(payload.id, external_calendar_id, payload.etag)

    start = payload.start or GraphDateTime()
    end = payload.end or GraphDateTime()
    if payload.isAllDay:
        start_day = parse_date(start.dateTime)
        if start_day is None:
            return None
        start_at, end_at = all_day_span(start_day, parse_date(end.dateTime))
    else:
        # Requests ask for outlook.timezone="UTC", so offset-less values are UTC
        start_at = parse_instant(start.dateTime)
        end_at = parse_instant(end.dateTime)
        if start_at is None or end_at is None:
            return None

    description = payload.bodyPreview
    if payload.body and payload.body.contentType == "text" and payload.body.content is not None:
        description = payload.body.content

    return ExternalEventChange(
        kind=_kind(payload.createdDateTime, payload.lastModifiedDateTime),
        external_event_id=payload.id,
        external_calendar_id=external_calendar_id,
        etag=payload.etag,
        title=payload.subject or "Event",
        description=description or None,
        location=(payload.location.displayName or None) if payload.location else None,
        start_at=start_at,
        end_at=end_at,
        all_day=payload.isAllDay,
        timezone=iana_timezone(payload.originalStartTimeZone, default_timezone),
        meeting_url=(payload.onlineMeeting.joinUrl if payload.onlineMeeting else None) or payload.onlineMeetingUrl,
        status=EventStatus.TENTATIVE if payload.showAs == "tentative" else EventStatus.CONFIRMED,
    )


# --- outbound bodies ---

def google_event_body(event: models.Event, default_timezone: str, source_hash: Optional[str] = None) -> Dict[str, Any]:
    private = {"calsync_origin": ORIGIN_TAG, "calsync_event_id": str(event.id)}
    if source_hash:
        private["calsync_hash"] = source_hash
    body: Dict[str, Any] = {
        "summary": event.title,
        "description": event.description or None,
        "location": event.location or None,
        "status": "tentative" if event.status == EventStatus.TENTATIVE.value else (
            "cancelled" if event.status == EventStatus.CANCELLED.value else "confirmed"
        ),
        "extendedProperties": {"private": private},
    }
    if event.all_day:
        start_day, end_day = all_day_dates(event.start_at, event.end_at)
        body["start"] = {"date": start_day.isoformat()}
        body["end"] = {"date": end_day.isoformat()}
    else:
        tz = event.timezone or default_timezone
        body["start"] = {"dateTime": to_iso_z(event.start_at), "timeZone": tz}
        body["end"] = {"dateTime": to_iso_z(event.end_at), "timeZone": tz}
    return body


def _wall_clock(value: datetime, tz_name: str) -> tuple[str, str]:
    """Render value as local wall time in tz_name; falls back to UTC for unknown zones."""
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S"), "UTC"
    return as_utc(value).astimezone(zone).strftime("%Y-%m-%dT%H:%M:%S"), tz_name


def graph_event_body(event: models.Event, default_timezone: str) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "subject": event.title,
        "body": {"contentType": "text", "content": event.description or ""},
        "location": {"displayName": event.location} if event.location else None,
        "isAllDay": bool(event.all_day),
        "showAs": "tentative" if event.status == EventStatus.TENTATIVE.value else "busy",
    }
    if event.all_day:
        # Midnight UTC on both ends so reads (in UTC) recover the same dates
        start_day, end_day = all_day_dates(event.start_at, event.end_at)
        body["start"] = {"dateTime": f"{start_day.isoformat()}T00:00:00", "timeZone": "UTC"}
        body["end"] = {"dateTime": f"{end_day.isoformat()}T00:00:00", "timeZone": "UTC"}
    else:
        tz = event.timezone or default_timezone
        start_local, start_tz = _wall_clock(event.start_at, tz)
        end_local, end_tz = _wall_clock(event.end_at, tz)
        body["start"] = {"dateTime": start_local, "timeZone": start_tz}
        body["end"] = {"dateTime": end_local, "timeZone": end_tz}
    return body


# --- calendar lists ---

def google_calendar_from(item: Dict[str, Any]) -> Optional[ExternalCalendar]:
    entry = _validate(GoogleCalendarListEntry, item, "google")
    if entry is None:
        return None
    return ExternalCalendar(
        external_calendar_id=entry.id,
        label=entry.summaryOverride or entry.summary or "Google Calendar",
        is_primary=entry.primary,
    )


def graph_calendar_from(item: Dict[str, Any]) -> Optional[ExternalCalendar]:
    """None for invalid entries and for calendars the user cannot write to."""
    entry = _validate(GraphCalendarEntry, item, "microsoft")
    if entry is None or entry.canEdit is False:
        return None
    return ExternalCalendar(
        external_calendar_id=entry.id,
        label=entry.name or "Outlook Calendar",
        is_primary=entry.isDefaultCalendar,
    )
