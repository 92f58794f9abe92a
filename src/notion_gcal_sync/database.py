"""Database models and operations for sync state management."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    create_engine, Column, String, DateTime, Boolean, Text, Integer, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
import pytz

from .config import Settings

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class SyncedItemDB(Base):
    """Cross-reference link between a Notion page and a Google event."""

    __tablename__ = 'synced_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    notion_page_id = Column(String(64), nullable=False)
    google_event_id = Column(String(1024), nullable=False)

    # Content tracking
    last_synced_hash = Column(String(64), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    sync_direction = Column(String(20), nullable=True)  # 'notion_to_google', 'google_to_notion'
    field_mapping_snapshot = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    # Both sides unique: the link is a bijection
    __table_args__ = (
        UniqueConstraint('notion_page_id', name='uq_synced_item_notion_page'),
        UniqueConstraint('google_event_id', name='uq_synced_item_google_event'),
        Index('idx_synced_item_last_sync', 'last_synced_at'),
    )


class DedupRecordDB(Base):
    """Short-lived record of a notification that was already processed."""

    __tablename__ = 'dedup_records'

    key = Column(String(512), primary_key=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_dedup_expires', 'expires_at'),
    )


class SyncLogEntryDB(Base):
    """Activity log entry, one per terminal sync outcome."""

    __tablename__ = 'sync_log_entries'

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(32), nullable=False, unique=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    source = Column(String(20), nullable=False)
    webhook_event_type = Column(String(100), nullable=True)
    operation = Column(String(20), nullable=True)
    direction = Column(String(20), nullable=False)
    item_title = Column(String(500), nullable=True)
    item_id = Column(String(1024), nullable=False)
    status = Column(String(20), nullable=False)
    error = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    skipped = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index('idx_sync_log_timestamp', 'timestamp'),
        Index('idx_sync_log_status', 'status'),
    )


class HistoricalSyncProgressDB(Base):
    """Progress of a single-flight batch job, one row per job."""

    __tablename__ = 'historical_sync_progress'

    id = Column(Integer, primary_key=True)
    status = Column(String(20), nullable=False, default='idle')
    days_requested = Column(Integer, nullable=True)
    items_total = Column(Integer, nullable=False, default=0)
    items_processed = Column(Integer, nullable=False, default=0)
    created = Column(Integer, nullable=False, default=0)
    updated = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    errors = Column(Text, nullable=True)  # JSON list
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    fields = Column(Text, nullable=True)  # JSON list, field backfill only
    error = Column(Text, nullable=True)


class ConfigDB(Base):
    """Database model for configuration storage."""

    __tablename__ = 'config'

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index('idx_config_updated', 'updated_at'),
    )


# Keys stored in ConfigDB
GOOGLE_SYNC_TOKEN_KEY = 'google_sync_token'
GOOGLE_CHANNEL_ID_KEY = 'google_channel_id'
GOOGLE_RESOURCE_ID_KEY = 'google_resource_id'
GOOGLE_CHANNEL_EXPIRATION_KEY = 'google_channel_expiration'
GOOGLE_CHANNEL_ADDRESS_KEY = 'google_channel_address'
NOTION_VERIFICATION_TOKEN_KEY = 'notion_verification_token'


class DatabaseManager:
    """Database manager for sync state."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def reset_all(self) -> None:
        """Drop and recreate every table."""
        Base.metadata.drop_all(bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def get_config(self, key: str) -> Optional[str]:
        """Read a stored configuration value."""
        with self.get_session() as session:
            row = session.get(ConfigDB, key)
            return row.value if row else None

    def set_config(self, key: str, value: Optional[str]) -> None:
        """Store a configuration value (None deletes it)."""
        with self.get_session() as session:
            row = session.get(ConfigDB, key)
            if value is None:
                if row is not None:
                    session.delete(row)
            elif row is None:
                session.add(ConfigDB(key=key, value=value))
            else:
                row.value = value
                row.updated_at = _utcnow()
            session.commit()
