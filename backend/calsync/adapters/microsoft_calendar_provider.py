from __future__ import annotations
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

import requests
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
from .schemas import graph_calendar_from, graph_event_body, normalize_graph_event

logger = logging.getLogger(__name__)

GRAPH_ROOT = "https://graph.microsoft.com/v1.0"
# Delta window end for calendarView; Graph requires a bounded range
FORWARD_WINDOW = timedelta(days=730)
_RESYNC_CODES = {"syncStateNotFound", "resyncRequired", "SyncStateNotFound", "ResyncRequired"}


class _Unauthorized(Exception):
    pass


def _error_code(resp: requests.Response) -> Optional[str]:
    try:
        return (resp.json().get("error") or {}).get("code")
    except (ValueError, AttributeError):
        return None


class MicrosoftCalendarProvider:
    """Microsoft Graph calendar adapter (delta-link family), bound to one integration."""

    provider = Provider.MICROSOFT.value

    def __init__(
        self,
        db: Session,
        integration: models.IntegrationAccount,
        credential_store: CredentialStore,
        settings: Optional[SyncSettings] = None,
        session: Optional[requests.Session] = None,
        retry_wait: Optional[Callable] = None,
    ):
        self.db = db
        self.integration = integration
        self.credential_store = credential_store
        self.settings = settings or get_settings()
        self.session = session or requests.Session()
        self._retry_wait = retry_wait
        self._token = credential_store.get_valid_access_token(db, integration)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }
        if extra:
            headers.update(extra)
        return headers

    def _send(self, method: str, url: str, cursor_request: bool, json_body=None, headers=None) -> requests.Response:
        try:
            resp = self.session.request(
                method,
                url,
                json=json_body,
                headers=self._headers(headers),
                timeout=self.settings.provider_timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientProviderError(f"Microsoft Graph unreachable: {e}") from e
        if resp.status_code < 400:
            return resp
        status = resp.status_code
        if status == 401:
            raise _Unauthorized()
        code = _error_code(resp)
        if cursor_request and (status == 410 or code in _RESYNC_CODES):
            raise CursorInvalidatedError(f"Microsoft delta link invalidated ({code or status})")
        if status in (404, 410):
            raise RemoteNotFoundError(f"Microsoft resource gone ({status})", provider_status=status)
        if status == 429 or status >= 500:
            raise TransientProviderError(
                f"Microsoft Graph {status}", retry_after=parse_retry_after(resp.headers.get("Retry-After"))
            )
        raise ProviderRequestError(f"Microsoft Graph {status}: {code or resp.reason}", provider_status=status)

    def _request(self, method: str, url: str, cursor_request: bool = False, json_body=None, headers=None) -> requests.Response:
        refreshed = False

        def attempt() -> requests.Response:
            nonlocal refreshed
            try:
                return self._send(method, url, cursor_request, json_body, headers)
            except _Unauthorized:
                if refreshed:
                    raise CredentialExpiredError("Microsoft rejected a freshly refreshed access token")
                refreshed = True
                logger.info("Graph answered 401 for integration %s; forcing token refresh", self.integration.id)
                self._token = self.credential_store.force_refresh(self.db, self.integration, self._token)
            try:
                return self._send(method, url, cursor_request, json_body, headers)
            except _Unauthorized:
                raise CredentialExpiredError("Microsoft rejected a freshly refreshed access token")

        return call_with_retry(attempt, self.settings.provider_max_attempts, self._retry_wait)

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    def _events_url(self, external_calendar_id: str) -> str:
        return f"{GRAPH_ROOT}/me/calendars/{quote(external_calendar_id, safe='')}/events"

    def list_calendars(self) -> List[ExternalCalendar]:
        calendars: List[ExternalCalendar] = []
        url: Optional[str] = f"{GRAPH_ROOT}/me/calendars?$top=100"
        while url:
            data = self._json(self._request("GET", url))
            for item in data.get("value", []):
                calendar = graph_calendar_from(item)
                if calendar is not None:
                    calendars.append(calendar)
            url = data.get("@odata.nextLink")
        return calendars

    def pull_events(self, external_calendar_id: str, cursor: Optional[str] = None) -> PullResult:
        result = PullResult()
        if cursor:
            url = cursor
        else:
            now = utcnow()
            start = to_iso_z(now - timedelta(days=self.settings.initial_window_days))
            end = to_iso_z(now + FORWARD_WINDOW)
            url = (
                f"{GRAPH_ROOT}/me/calendars/{quote(external_calendar_id, safe='')}/calendarView/delta"
                f"?startDateTime={start}&endDateTime={end}"
            )
        headers = {"Prefer": 'outlook.timezone="UTC", odata.maxpagesize=100'}
        while True:
            try:
                data = self._json(self._request("GET", url, cursor_request=bool(cursor), headers=headers))
            except CursorInvalidatedError:
                logger.info("Microsoft delta link for calendar %s invalidated", external_calendar_id)
                return PullResult(cursor_invalidated=True)
            for item in data.get("value", []):
                change = normalize_graph_event(item, external_calendar_id, self.settings.default_timezone)
                if change is None:
                    result.skipped += 1
                else:
                    result.changes.append(change)
            next_link = data.get("@odata.nextLink")
            if not next_link:
                result.next_cursor = data.get("@odata.deltaLink") or cursor
                return result
            url = next_link

    def push_event(
        self,
        external_calendar_id: str,
        event: models.Event,
        prior: Optional[PriorExternalState] = None,
        source_hash: Optional[str] = None,
    ) -> PushResult:
        body = graph_event_body(event, self.settings.default_timezone)
        if prior is not None:
            url = f"{GRAPH_ROOT}/me/events/{quote(prior.external_event_id, safe='')}"
            headers = {"If-Match": prior.etag} if prior.etag else None
            try:
                resp = self._request("PATCH", url, json_body=body, headers=headers)
                data = self._json(resp)
                return PushResult(
                    data.get("id") or prior.external_event_id,
                    data.get("@odata.etag") or resp.headers.get("ETag"),
                    external_calendar_id,
                )
            except RemoteNotFoundError:
                logger.warning(
                    "Microsoft event %s missing on calendar %s; recreating", prior.external_event_id, external_calendar_id
                )
        resp = self._request("POST", self._events_url(external_calendar_id), json_body=body)
        data = self._json(resp)
        if not data.get("id"):
            raise ProviderRequestError("Microsoft create returned no event id")
        return PushResult(
            data["id"], data.get("@odata.etag") or resp.headers.get("ETag"), external_calendar_id, created=True
        )

    def delete_event(self, external_calendar_id: str, external_event_id: str) -> None:
        try:
            self._request("DELETE", f"{GRAPH_ROOT}/me/events/{quote(external_event_id, safe='')}")
        except RemoteNotFoundError:
            logger.info("Microsoft event %s already gone", external_event_id)

    def fetch_etag(self, external_calendar_id: str, external_event_id: str) -> Optional[str]:
        try:
            resp = self._request("GET", f"{GRAPH_ROOT}/me/events/{quote(external_event_id, safe='')}?$select=id,isCancelled")
        except RemoteNotFoundError:
            return None
        data = self._json(resp)
        if data.get("isCancelled"):
            return None
        return data.get("@odata.etag") or resp.headers.get("ETag")
