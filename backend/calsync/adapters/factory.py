from __future__ import annotations
from typing import Optional

from sqlalchemy.orm import Session

from ..config import SyncSettings
from ..db import models
from ..domain.enums import Provider
from ..errors import ValidationAppError
from ..ports.calendar_provider import CalendarProvider
from ..services.credential_store import CredentialStore
from .google_calendar_provider import GoogleCalendarProvider
from .microsoft_calendar_provider import MicrosoftCalendarProvider


def get_calendar_provider(
    db: Session,
    integration: models.IntegrationAccount,
    credential_store: CredentialStore,
    settings: Optional[SyncSettings] = None,
) -> CalendarProvider:
    """Adapter for the integration's provider family, authorized with a valid access token."""
    if integration.provider == Provider.GOOGLE.value:
        return GoogleCalendarProvider(db, integration, credential_store, settings=settings)
    if integration.provider == Provider.MICROSOFT.value:
        return MicrosoftCalendarProvider(db, integration, credential_store, settings=settings)
    raise ValidationAppError("UNSUPPORTED_PROVIDER", f"unsupported provider: {integration.provider}")
