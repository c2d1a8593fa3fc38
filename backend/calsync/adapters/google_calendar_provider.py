from __future__ import annotations
import json
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import google_auth_httplib2
import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from ..config import SyncSettings, get_settings
from ..db import models
from ..domain.changes import ExternalCalendar, PriorExternalState, PullResult, PushResult
from ..domain.enums import Provider
from ..domain.timeutil import to_iso_z, utcnow
from ..errors import (
    CredentialExpiredError,
    CursorInvalidatedError,
    ProviderRequestError,
    RemoteNotFoundError,
    TransientProviderError,
)
from ..services.credential_store import CredentialStore
from .retry import call_with_retry, parse_retry_after
from .schemas import google_calendar_from, google_event_body, normalize_google_event

logger = logging.getLogger(__name__)

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class _Unauthorized(Exception):
    pass


def _error_reason(e: HttpError) -> Optional[str]:
    try:
        payload = json.loads(e.content.decode("utf-8") if isinstance(e.content, bytes) else e.content)
        errors = payload.get("error", {}).get("errors") or []
        return errors[0].get("reason") if errors else None
    except (ValueError, AttributeError, TypeError):
        return None


def translate_http_error(e: HttpError, cursor_request: bool = False) -> Exception:
    status = int(e.resp.status)
    if status == 401:
        return _Unauthorized()
    if cursor_request and status == 410:
        return CursorInvalidatedError("Google sync token expired")
    if status in (404, 410):
        return RemoteNotFoundError(f"Google resource gone ({status})", provider_status=status)
    reason = _error_reason(e)
    if status == 429 or status >= 500 or (status == 403 and reason in _RATE_LIMIT_REASONS):
        return TransientProviderError(
            f"Google API {status}{f' {reason}' if reason else ''}",
            retry_after=parse_retry_after(e.resp.get("retry-after")),
        )
    return ProviderRequestError(f"Google API {status}: {reason or e.reason}", provider_status=status)


class GoogleCalendarProvider:
    """Google Calendar v3 adapter (sync-token family), bound to one integration."""

    provider = Provider.GOOGLE.value

    def __init__(
        self,
        db: Session,
        integration: models.IntegrationAccount,
        credential_store: CredentialStore,
        settings: Optional[SyncSettings] = None,
        retry_wait: Optional[Callable] = None,
    ):
        self.db = db
        self.integration = integration
        self.credential_store = credential_store
        self.settings = settings or get_settings()
        self._retry_wait = retry_wait
        self._token = credential_store.get_valid_access_token(db, integration)
        self._service = self._build_service(self._token)

    def _build_service(self, token: str):
        http = google_auth_httplib2.AuthorizedHttp(
            Credentials(token=token), http=httplib2.Http(timeout=self.settings.provider_timeout_seconds)
        )
        return build("calendar", "v3", http=http, cache_discovery=False)

    def _send(self, make_request: Callable[[Any], Any], cursor_request: bool) -> Dict[str, Any]:
        try:
            return make_request(self._service).execute() or {}
        except HttpError as e:
            raise translate_http_error(e, cursor_request) from e
        except (OSError, httplib2.HttpLib2Error) as e:
            raise TransientProviderError(f"Google API unreachable: {e}") from e

    def _call(self, make_request: Callable[[Any], Any], cursor_request: bool = False) -> Dict[str, Any]:
        refreshed = False

        def attempt() -> Dict[str, Any]:
            nonlocal refreshed
            try:
                return self._send(make_request, cursor_request)
            except _Unauthorized:
                if refreshed:
                    raise CredentialExpiredError("Google rejected a freshly refreshed access token")
                refreshed = True
                logger.info("Google answered 401 for integration %s; forcing token refresh", self.integration.id)
                self._token = self.credential_store.force_refresh(self.db, self.integration, self._token)
                self._service = self._build_service(self._token)
            try:
                return self._send(make_request, cursor_request)
            except _Unauthorized:
                raise CredentialExpiredError("Google rejected a freshly refreshed access token")

        return call_with_retry(attempt, self.settings.provider_max_attempts, self._retry_wait)

    def list_calendars(self) -> List[ExternalCalendar]:
        calendars: List[ExternalCalendar] = []
        page_token: Optional[str] = None
        while True:
            res = self._call(
                lambda s, pt=page_token: s.calendarList().list(minAccessRole="writer", pageToken=pt)
            )
            for item in res.get("items", []):
                calendar = google_calendar_from(item)
                if calendar is not None:
                    calendars.append(calendar)
            page_token = res.get("nextPageToken")
            if not page_token:
                return calendars

    def pull_events(self, external_calendar_id: str, cursor: Optional[str] = None) -> PullResult:
        result = PullResult()
        time_min = None if cursor else to_iso_z(utcnow() - timedelta(days=self.settings.initial_window_days))
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "calendarId": external_calendar_id,
                "showDeleted": True,
                "singleEvents": False,
                "maxResults": 250,
            }
            if cursor:
                params["syncToken"] = cursor
            else:
                params["timeMin"] = time_min
            if page_token:
                params["pageToken"] = page_token
            try:
                res = self._call(lambda s, p=params: s.events().list(**p), cursor_request=bool(cursor))
            except CursorInvalidatedError:
                logger.info("Google sync token for calendar %s invalidated", external_calendar_id)
                return PullResult(cursor_invalidated=True)
            for item in res.get("items", []):
                change = normalize_google_event(item, external_calendar_id, self.settings.default_timezone)
                if change is None:
                    result.skipped += 1
                else:
                    result.changes.append(change)
            page_token = res.get("nextPageToken")
            if not page_token:
                result.next_cursor = res.get("nextSyncToken") or cursor
                return result

    def push_event(
        self,
        external_calendar_id: str,
        event: models.Event,
        prior: Optional[PriorExternalState] = None,
        source_hash: Optional[str] = None,
    ) -> PushResult:
        body = google_event_body(event, self.settings.default_timezone, source_hash)
        if prior is not None:
            try:
                res = self._call(lambda s: self._patch_request(s, external_calendar_id, prior, body))
                return PushResult(res.get("id") or prior.external_event_id, res.get("etag"), external_calendar_id)
            except RemoteNotFoundError:
                logger.warning(
                    "Google event %s missing on calendar %s; recreating", prior.external_event_id, external_calendar_id
                )
        res = self._call(lambda s: s.events().insert(calendarId=external_calendar_id, body=body))
        if not res.get("id"):
            raise ProviderRequestError("Google insert returned no event id")
        return PushResult(res["id"], res.get("etag"), external_calendar_id, created=True)

    @staticmethod
    def _patch_request(service, external_calendar_id: str, prior: PriorExternalState, body: Dict[str, Any]):
        req = service.events().patch(calendarId=external_calendar_id, eventId=prior.external_event_id, body=body)
        if prior.etag:
            req.headers["If-Match"] = prior.etag
        return req

    def delete_event(self, external_calendar_id: str, external_event_id: str) -> None:
        try:
            self._call(lambda s: s.events().delete(calendarId=external_calendar_id, eventId=external_event_id))
        except RemoteNotFoundError:
            logger.info("Google event %s already gone", external_event_id)

    def fetch_etag(self, external_calendar_id: str, external_event_id: str) -> Optional[str]:
        try:
            res = self._call(lambda s: s.events().get(calendarId=external_calendar_id, eventId=external_event_id))
        except RemoteNotFoundError:
            return None
        if res.get("status") == "cancelled":
            return None
        return res.get("etag")
