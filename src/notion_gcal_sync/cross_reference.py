"""Persistent one-to-one mapping between Notion pages and Google events."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from .database import DatabaseManager, SyncedItemDB
from .errors import ConflictError
from .locking import KeyedLocks
from .models import EventSource, FieldMapping, SyncDirection, SyncedItem, ensure_utc, utc_now

logger = logging.getLogger(__name__)


def _to_model(row: SyncedItemDB) -> SyncedItem:
    return SyncedItem(
        notion_page_id=row.notion_page_id,
        google_event_id=row.google_event_id,
        last_synced_hash=row.last_synced_hash,
        last_synced_at=ensure_utc(row.last_synced_at),
        sync_direction=SyncDirection(row.sync_direction) if row.sync_direction else None,
    )


class CrossReferenceStore:
    """Bijective link store backed by the ``synced_items`` table."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self._locks = KeyedLocks()
        self.logger = logger.getChild('store')

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        """Hold the per-item lock for ``key`` for the duration of the block."""
        async with self._locks.hold(key):
            yield

    async def link(
        self,
        notion_page_id: str,
        google_event_id: str,
        content_hash: Optional[str] = None,
        direction: Optional[SyncDirection] = None,
        field_mapping: Optional[FieldMapping] = None
    ) -> SyncedItem:
        """Record that a page and an event represent the same item.

        Re-linking an existing identical pair refreshes its sync metadata.

        Raises:
            ConflictError: If either id is already linked to a different counterpart
        """
        with self.db_manager.get_session() as session:
            self._check_conflicts(session, notion_page_id, google_event_id)
            row = self._find_pair(session, notion_page_id, google_event_id)
            if row is None:
                row = SyncedItemDB(notion_page_id=notion_page_id, google_event_id=google_event_id)
                session.add(row)
            self._apply_sync_metadata(row, content_hash, direction, field_mapping)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                # Lost a race against another writer
                self._check_conflicts(session, notion_page_id, google_event_id)
                row = self._find_pair(session, notion_page_id, google_event_id)
                if row is None:
                    raise ConflictError(
                        f"Link {notion_page_id} <-> {google_event_id} violates the one-to-one mapping"
                    )
            item = _to_model(row)

        self.logger.debug(f"Linked Notion page {notion_page_id} <-> Google event {google_event_id}")
        return item

    @staticmethod
    def _find_pair(session, notion_page_id: str, google_event_id: str) -> Optional[SyncedItemDB]:
        return session.query(SyncedItemDB).filter(
            SyncedItemDB.notion_page_id == notion_page_id,
            SyncedItemDB.google_event_id == google_event_id
        ).first()

    def _check_conflicts(self, session, notion_page_id: str, google_event_id: str) -> None:
        by_page = session.query(SyncedItemDB).filter(
            SyncedItemDB.notion_page_id == notion_page_id
        ).first()
        if by_page is not None and by_page.google_event_id != google_event_id:
            raise ConflictError(
                f"Notion page {notion_page_id} is already linked to Google event {by_page.google_event_id}"
            )
        by_event = session.query(SyncedItemDB).filter(
            SyncedItemDB.google_event_id == google_event_id
        ).first()
        if by_event is not None and by_event.notion_page_id != notion_page_id:
            raise ConflictError(
                f"Google event {google_event_id} is already linked to Notion page {by_event.notion_page_id}"
            )

    @staticmethod
    def _apply_sync_metadata(row, content_hash, direction, field_mapping) -> None:
        if content_hash is not None:
            row.last_synced_hash = content_hash
            row.last_synced_at = utc_now()
        if direction is not None:
            row.sync_direction = direction.value
        if field_mapping is not None:
            row.field_mapping_snapshot = field_mapping.model_dump_json()

    async def get_by_page(self, notion_page_id: str) -> Optional[SyncedItem]:
        with self.db_manager.get_session() as session:
            row = session.query(SyncedItemDB).filter(
                SyncedItemDB.notion_page_id == notion_page_id
            ).first()
            return _to_model(row) if row else None

    async def get_by_event(self, google_event_id: str) -> Optional[SyncedItem]:
        with self.db_manager.get_session() as session:
            row = session.query(SyncedItemDB).filter(
                SyncedItemDB.google_event_id == google_event_id
            ).first()
            return _to_model(row) if row else None

    async def get(self, source: EventSource, item_id: str) -> Optional[SyncedItem]:
        """Look up the link of an item identified by its origin system."""
        if source == EventSource.NOTION:
            return await self.get_by_page(item_id)
        return await self.get_by_event(item_id)

    async def lookup_counterpart(self, source: EventSource, item_id: str) -> Optional[str]:
        """Return the ID on the other system, if the item is linked."""
        item = await self.get(source, item_id)
        if item is None:
            return None
        if source == EventSource.NOTION:
            return item.google_event_id
        return item.notion_page_id

    async def record_sync(
        self,
        notion_page_id: str,
        content_hash: str,
        direction: SyncDirection,
        field_mapping: Optional[FieldMapping] = None
    ) -> None:
        """Store the content hash of the last successful propagation."""
        with self.db_manager.get_session() as session:
            row = session.query(SyncedItemDB).filter(
                SyncedItemDB.notion_page_id == notion_page_id
            ).first()
            if row is None:
                return
            self._apply_sync_metadata(row, content_hash, direction, field_mapping)
            session.commit()

    async def unlink(self, item_id: str) -> bool:
        """Remove the link containing ``item_id`` (either side).

        Returns:
            True if a link was removed
        """
        with self.db_manager.get_session() as session:
            removed = session.query(SyncedItemDB).filter(
                or_(
                    SyncedItemDB.notion_page_id == item_id,
                    SyncedItemDB.google_event_id == item_id
                )
            ).delete(synchronize_session=False)
            session.commit()
        if removed:
            self.logger.debug(f"Unlinked {item_id}")
        return bool(removed)

    async def count(self) -> int:
        with self.db_manager.get_session() as session:
            return session.query(SyncedItemDB).count()
