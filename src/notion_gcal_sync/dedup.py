"""Notification deduplication gate."""

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from .config import Settings
from .database import DatabaseManager, DedupRecordDB
from .locking import KeyedLocks
from .models import Notification, utc_now

logger = logging.getLogger(__name__)


class DeduplicationGate:
    """Suppress redundant deliveries of the same notification.

    The expired-row purge and the insert run in one transaction against the
    primary key of ``dedup_records``, so two concurrent deliveries of one key
    cannot both pass, even across processes sharing the database.
    """

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager
        self.ttl = timedelta(seconds=settings.dedup_ttl_seconds)
        self._locks = KeyedLocks()
        self.logger = logger.getChild('gate')

    async def should_process(self, notification: Notification) -> bool:
        """Check-and-set the notification's dedup key.

        Args:
            notification: Incoming webhook notification

        Returns:
            True if the notification is new and must be processed
        """
        key = notification.dedup_key()
        if key is None:
            self.logger.debug("Notification carries no delivery identity, processing without dedup")
            return True

        async with self._locks.hold(key):
            return self._claim(key)

    def _claim(self, key: str) -> bool:
        now = utc_now()
        with self.db_manager.get_session() as session:
            session.query(DedupRecordDB).filter(
                DedupRecordDB.key == key,
                DedupRecordDB.expires_at <= now
            ).delete(synchronize_session=False)
            session.add(DedupRecordDB(key=key, expires_at=now + self.ttl, created_at=now))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                self.logger.info(f"Duplicate notification suppressed: {key}")
                return False
        return True

    def purge_expired(self) -> int:
        """Delete expired dedup records.

        Returns:
            Number of records removed
        """
        with self.db_manager.get_session() as session:
            removed = session.query(DedupRecordDB).filter(
                DedupRecordDB.expires_at <= utc_now()
            ).delete(synchronize_session=False)
            session.commit()
        if removed:
            self.logger.debug(f"Purged {removed} expired dedup records")
        return removed
