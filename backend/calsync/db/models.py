from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, JSON, Text, UniqueConstraint
from datetime import datetime, timezone
from .session import Base
import uuid


def gen_uuid():
    return str(uuid.uuid4())

def _now():
    return datetime.now(timezone.utc)

class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=gen_uuid)
    email = Column(String, unique=True, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class IntegrationAccount(Base):
    __tablename__ = "integration_accounts"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_integration_accounts_user_provider"),)
    id = Column(String, primary_key=True, default=gen_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String, nullable=False, index=True)  # 'google' | 'microsoft'
    scopes = Column(JSON, nullable=True)  # list of scopes (stored as JSON array in SQLite)
    # Legacy clear-text columns: read-only fallback for rows written before encryption, blanked on every write
    access_token = Column(String, nullable=True)
    refresh_token = Column(String, nullable=True)
    access_token_encrypted = Column(String, nullable=True)
    refresh_token_encrypted = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    provider_metadata = Column("metadata", JSON, nullable=True)
    sync_status = Column(String, nullable=False, default="idle", index=True)
    sync_error = Column(Text, nullable=True)
    sync_started_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    needs_reconnect = Column(Integer, nullable=False, default=0)  # 0/1 as boolean
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class ExternalCalendarMap(Base):
    __tablename__ = "external_calendar_maps"
    __table_args__ = (
        UniqueConstraint("integration_id", "external_calendar_id", name="uq_external_calendar_maps_integration_calendar"),
    )
    id = Column(String, primary_key=True, default=gen_uuid)
    integration_id = Column(String, ForeignKey("integration_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    external_calendar_id = Column(String, nullable=False)
    label = Column(String, nullable=False, default="Calendar")
    is_primary = Column(Integer, nullable=False, default=0, index=True)  # 0/1 as boolean
    last_sync_token = Column(Text, nullable=True)  # sync-token family (google)
    last_delta_link = Column(Text, nullable=True)  # delta-link family (microsoft)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class Event(Base):
    __tablename__ = "calendar_events"
    id = Column(String, primary_key=True, default=gen_uuid)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String, nullable=True)
    start_at = Column(DateTime(timezone=True), nullable=False, index=True)
    end_at = Column(DateTime(timezone=True), nullable=False)
    all_day = Column(Integer, nullable=False, default=0)  # 0/1 as boolean
    timezone = Column(String, nullable=False, default="Europe/Lisbon")
    category = Column(String, nullable=False, default="other", index=True)
    status = Column(String, nullable=False, default="confirmed")
    meeting_url = Column(String, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)
    # Mirror of the latest known external_event_maps row, for fast reads
    external_source = Column(String, nullable=True)
    external_calendar_id = Column(String, nullable=True)
    external_event_id = Column(String, nullable=True, index=True)
    external_etag = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)


class ExternalEventMap(Base):
    __tablename__ = "external_event_maps"
    __table_args__ = (
        UniqueConstraint("integration_id", "event_id", name="uq_external_event_maps_integration_event"),
        UniqueConstraint("integration_id", "external_event_id", name="uq_external_event_maps_integration_external"),
    )
    id = Column(String, primary_key=True, default=gen_uuid)
    integration_id = Column(String, ForeignKey("integration_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(String, ForeignKey("calendar_events.id", ondelete="CASCADE"), nullable=False, index=True)
    external_event_id = Column(String, nullable=False)
    external_calendar_id = Column(String, nullable=True)
    etag = Column(String, nullable=True)
    source_hash = Column(String, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=False, default=_now)
