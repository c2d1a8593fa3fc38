"""OAuth credential store for calendar integrations.

Persists token pairs encrypted, hands out access tokens that are valid for at
least a short safety margin, and performs the refresh-token grant when they
are not. Refresh is single-flighted per integration: concurrent callers wait
on the same lock and reuse the token the first one obtained.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import msal
import requests
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from prometheus_client import Counter
from sqlalchemy.orm import Session

from ..config import SyncSettings, get_settings
from ..db import models
from ..domain.enums import Provider, SyncStatus
from ..domain.timeutil import as_utc, utcnow
from ..errors import BaseAppException, CredentialExpiredError, TransientProviderError
from ..repositories.integration_repository import SqlAlchemyIntegrationRepository
from .encryption_service import EncryptionService, get_encryption_service
from .lock_store import LockStore, LockTimeout, get_lock_store

logger = logging.getLogger(__name__)

TOKEN_REFRESH_COUNT = Counter(
    "calsync_token_refresh_total", "OAuth refresh-token exchanges", ["provider", "outcome"]
)

# Refresh-token error codes meaning the grant itself is gone (user must reconnect)
_FATAL_GRANT_ERRORS = {"invalid_grant", "interaction_required", "consent_required", "unauthorized_client"}


class OAuthError(BaseAppException):
    def __init__(self, code: str, message: str):
        super().__init__(code, message, http_status=400)


@dataclass
class TokenPayload:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class CredentialStore:
    """Token persistence + refresh for google / microsoft integrations."""

    GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
    GOOGLE_SCOPES = ["https://www.googleapis.com/auth/calendar"]
    # offline_access is reserved in msal and added implicitly
    MICROSOFT_SCOPES = ["Calendars.ReadWrite"]
    # Subtracted from provider-reported lifetimes so stored expiry errs early
    EXPIRY_SKEW = timedelta(seconds=60)

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        lock_store: Optional[LockStore] = None,
        encryption: Optional[EncryptionService] = None,
        integrations: Optional[SqlAlchemyIntegrationRepository] = None,
    ):
        self.settings = settings or get_settings()
        self.lock_store = lock_store or get_lock_store()
        self.encryption = encryption or get_encryption_service()
        self.integrations = integrations or SqlAlchemyIntegrationRepository()

    # --- persistence ---

    def upsert_integration(self, db: Session, user_id: str, provider: str, token: TokenPayload) -> models.IntegrationAccount:
        """Store or overwrite the token pair for (user, provider). Tokens are written encrypted only."""
        provider = Provider(provider).value
        integration = self.integrations.get(db, user_id, provider)
        now = utcnow()
        if integration is None:
            integration = models.IntegrationAccount(user_id=user_id, provider=provider, created_at=now)
            db.add(integration)
        integration.access_token_encrypted = self.encryption.encrypt(token.access_token)
        integration.refresh_token_encrypted = (
            self.encryption.encrypt(token.refresh_token) if token.refresh_token else None
        )
        integration.access_token = None
        integration.refresh_token = None
        integration.expires_at = as_utc(token.expires_at) if token.expires_at else None
        integration.scopes = list(token.scopes or [])
        integration.provider_metadata = dict(token.metadata or {})
        integration.sync_status = SyncStatus.IDLE.value
        integration.sync_error = None
        integration.needs_reconnect = 0
        integration.updated_at = now
        db.commit()
        return integration

    def disconnect_integration(self, db: Session, user_id: str, provider: str) -> bool:
        integration = self.integrations.get(db, user_id, provider)
        if integration is None:
            return False
        db.query(models.ExternalEventMap).filter(
            models.ExternalEventMap.integration_id == integration.id
        ).delete(synchronize_session=False)
        db.query(models.ExternalCalendarMap).filter(
            models.ExternalCalendarMap.integration_id == integration.id
        ).delete(synchronize_session=False)
        db.delete(integration)
        db.commit()
        return True

    def read_token(self, integration: models.IntegrationAccount, kind: str) -> Optional[str]:
        """Encrypted column first; legacy clear-text column only as a migration fallback."""
        encrypted = integration.access_token_encrypted if kind == "access" else integration.refresh_token_encrypted
        legacy = integration.access_token if kind == "access" else integration.refresh_token
        if encrypted:
            try:
                return self.encryption.decrypt(encrypted)
            except ValueError:
                logger.warning("integration %s: %s token failed to decrypt", integration.id, kind)
        if legacy:
            logger.warning("integration %s: using legacy clear-text %s token", integration.id, kind)
        return legacy or None

    # --- access tokens ---

    def get_valid_access_token(self, db: Session, integration: models.IntegrationAccount) -> str:
        token = self.read_token(integration, "access")
        if token and not self._expiring(integration):
            return token
        return self._refresh(db, integration, rejected_token=token)

    def force_refresh(self, db: Session, integration: models.IntegrationAccount, rejected_token: Optional[str]) -> str:
        """Refresh after the provider rejected rejected_token (HTTP 401)."""
        return self._refresh(db, integration, rejected_token=rejected_token)

    def _expiring(self, integration: models.IntegrationAccount) -> bool:
        if integration.expires_at is None:
            return False
        margin = timedelta(seconds=self.settings.token_safety_margin_seconds)
        return as_utc(integration.expires_at) <= utcnow() + margin

    def _refresh(self, db: Session, integration: models.IntegrationAccount, rejected_token: Optional[str]) -> str:
        try:
            with self.lock_store.hold(f"token-refresh:{integration.id}"):
                fresh = self.integrations.get_by_id(db, integration.id, for_update=True)
                if fresh is None:
                    raise CredentialExpiredError("integration no longer exists")
                current = self.read_token(fresh, "access")
                if current and current != rejected_token and not self._expiring(fresh):
                    # Another caller refreshed while we waited
                    db.commit()
                    return current
                return self._exchange_and_store(db, fresh)
        except LockTimeout:
            raise TransientProviderError("timed out waiting for token refresh")

    def _exchange_and_store(self, db: Session, integration: models.IntegrationAccount) -> str:
        provider = integration.provider
        refresh_token = self.read_token(integration, "refresh")
        if not refresh_token:
            TOKEN_REFRESH_COUNT.labels(provider=provider, outcome="expired").inc()
            integration.needs_reconnect = 1
            db.commit()
            raise CredentialExpiredError(f"{provider} integration has no refresh token")
        try:
            if provider == Provider.GOOGLE.value:
                access, rotated, expires_at = self._exchange_google(refresh_token, integration.scopes)
            else:
                access, rotated, expires_at = self._exchange_microsoft(refresh_token)
        except CredentialExpiredError:
            TOKEN_REFRESH_COUNT.labels(provider=provider, outcome="expired").inc()
            integration.needs_reconnect = 1
            db.commit()
            raise
        except TransientProviderError:
            TOKEN_REFRESH_COUNT.labels(provider=provider, outcome="transient").inc()
            db.rollback()
            raise

        integration.access_token_encrypted = self.encryption.encrypt(access)
        if rotated and rotated != refresh_token:
            integration.refresh_token_encrypted = self.encryption.encrypt(rotated)
        elif not integration.refresh_token_encrypted:
            # migrate a legacy clear-text refresh token
            integration.refresh_token_encrypted = self.encryption.encrypt(refresh_token)
        integration.access_token = None
        integration.refresh_token = None
        integration.expires_at = expires_at
        integration.updated_at = utcnow()
        db.commit()
        TOKEN_REFRESH_COUNT.labels(provider=provider, outcome="success").inc()
        logger.info("refreshed %s access token for integration %s", provider, integration.id)
        return access

    def _exchange_google(self, refresh_token: str, scopes: Optional[List[str]]) -> Tuple[str, Optional[str], datetime]:
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            raise OAuthError("OAUTH_CONFIG_MISSING", "Google OAuth credentials not configured")
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.GOOGLE_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=scopes or self.GOOGLE_SCOPES,
        )
        try:
            credentials.refresh(GoogleRequest())
        except google_auth_exceptions.RefreshError as e:
            if getattr(e, "retryable", False):
                raise TransientProviderError(f"Google token refresh failed: {e}")
            raise CredentialExpiredError(f"Google refresh token rejected: {e}")
        except google_auth_exceptions.TransportError as e:
            raise TransientProviderError(f"Google token endpoint unreachable: {e}")
        if not credentials.token:
            raise TransientProviderError("Google token refresh returned no access token")
        if credentials.expiry:
            expires_at = as_utc(credentials.expiry) - self.EXPIRY_SKEW
        else:
            expires_at = utcnow() + timedelta(seconds=3600) - self.EXPIRY_SKEW
        return credentials.token, credentials.refresh_token, expires_at

    def _exchange_microsoft(self, refresh_token: str) -> Tuple[str, Optional[str], datetime]:
        if not self.settings.microsoft_client_id or not self.settings.microsoft_client_secret:
            raise OAuthError("OAUTH_CONFIG_MISSING", "Microsoft OAuth credentials not configured")
        try:
            app = msal.ConfidentialClientApplication(
                self.settings.microsoft_client_id,
                authority=f"https://login.microsoftonline.com/{self.settings.microsoft_tenant_id}",
                client_credential=self.settings.microsoft_client_secret,
            )
            result = app.acquire_token_by_refresh_token(refresh_token, scopes=self.MICROSOFT_SCOPES)
        except requests.RequestException as e:
            raise TransientProviderError(f"Microsoft token endpoint unreachable: {e}")

        if "error" in result:
            detail = result.get("error_description") or result.get("error")
            if result.get("error") in _FATAL_GRANT_ERRORS:
                raise CredentialExpiredError(f"Microsoft refresh token rejected: {detail}")
            raise TransientProviderError(f"Microsoft token refresh failed: {detail}")
        access = result.get("access_token")
        if not access:
            raise TransientProviderError("Microsoft token refresh returned no access token")
        expires_in = int(result.get("expires_in") or 3600)
        expires_at = utcnow() + timedelta(seconds=expires_in) - self.EXPIRY_SKEW
        return access, result.get("refresh_token"), expires_at
