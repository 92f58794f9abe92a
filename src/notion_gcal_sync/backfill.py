"""Refill newly enabled fields on Notion pages that are already linked.

When a field such as attendees or the conference link is switched on after
pages were synced, those pages only pick it up on their next change. The
field backfill walks the linked Google events and writes just the requested
fields onto their pages.
"""

import logging
import time
from datetime import timedelta
from typing import Any, List, Tuple

from .activity import ActivityLogger
from .config import Settings
from .cross_reference import CrossReferenceStore
from .database import DatabaseManager
from .errors import ConcurrencyError, SyncError, ValidationError
from .executor import SyncExecutor
from .field_mapping import FieldMappingResolver
from .historical import BatchJob, HistoricalProgressStore, record_error
from .models import (
    CalendarEvent, EventSource, FieldMapping, HistoricalSyncProgress, SyncDirection, SyncLogEntry,
    SyncOperation, SyncStatus, utc_now
)
from .services.base import BaseCalendarService, BaseNotionService

logger = logging.getLogger(__name__)

BACKFILL_ROW_ID = 2
BACKFILL_EVENT_TYPE = 'backfill'

# Fields that can be enabled after pages were synced
BACKFILL_FIELDS = (
    'reminders',
    'attendees',
    'organizer',
    'conference_link',
    'recurrence',
    'color',
    'visibility',
)


class FieldBackfillOrchestrator(BatchJob):
    """Write selected fields from Google onto every linked Notion page."""

    label = "Field backfill"

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        notion_service: BaseNotionService,
        google_service: BaseCalendarService,
        cross_reference: CrossReferenceStore,
        resolver: FieldMappingResolver,
        executor: SyncExecutor,
        activity: ActivityLogger
    ):
        super().__init__(
            settings, HistoricalProgressStore(db_manager, BACKFILL_ROW_ID), logger.getChild('backfill')
        )
        self.notion_service = notion_service
        self.google_service = google_service
        self.cross_reference = cross_reference
        self.resolver = resolver
        self.executor = executor
        self.activity = activity

    def _validate_fields(self, fields: Any, mapping: FieldMapping) -> List[str]:
        if isinstance(fields, str) or not isinstance(fields, (list, tuple)) or not fields:
            raise ValidationError("At least one field is required")
        unknown = [name for name in fields if name not in BACKFILL_FIELDS]
        if unknown:
            raise ValidationError(
                f"Cannot backfill {', '.join(map(str, unknown))}; choose from {', '.join(BACKFILL_FIELDS)}"
            )
        disabled = [name for name in fields if not mapping.get(name).enabled]
        if disabled:
            raise ValidationError(f"Fields not enabled in the field mapping: {', '.join(disabled)}")
        return list(dict.fromkeys(fields))

    async def start(self, fields: List[str], wait: bool = False) -> HistoricalSyncProgress:
        """Start a backfill of ``fields``.

        Args:
            fields: Logical field names from ``BACKFILL_FIELDS``, all enabled
            wait: Run in the foreground instead of a background task

        Raises:
            ValidationError: If no field is given or a field cannot be backfilled
            ConcurrencyError: If a backfill is already running
        """
        mapping = self.settings.field_mapping.snapshot()
        fields = self._validate_fields(fields, mapping)
        if not self.progress_store.try_start(fields=fields):
            raise ConcurrencyError("A field backfill is already running")

        self.logger.info(f"Field backfill started for {', '.join(fields)}")

        async def process(item: Tuple[CalendarEvent, str], progress: HistoricalSyncProgress) -> None:
            await self._process(item, progress, fields, mapping)

        return await self._launch(self._run_batches(self._linked_events, process), wait)

    async def _linked_events(self) -> List[Tuple[CalendarEvent, str]]:
        now = utc_now()
        events = await self.google_service.list_events(
            now - timedelta(days=self.settings.max_historical_days),
            now + timedelta(days=self.settings.manual_sync_days)
        )
        linked = []
        for event in events:
            page_id = (
                await self.cross_reference.lookup_counterpart(EventSource.GOOGLE, event.id)
                or event.notion_page_id
            )
            if page_id:
                linked.append((event, page_id))
        self.logger.info(f"Field backfill: {len(linked)} of {len(events)} events are linked")
        return linked

    async def _process(
        self,
        item: Tuple[CalendarEvent, str],
        progress: HistoricalSyncProgress,
        fields: List[str],
        mapping: FieldMapping
    ) -> None:
        event, page_id = item
        progress.items_processed += 1
        properties = self.resolver.field_properties(event, mapping, fields)
        if not properties:
            progress.skipped += 1
            return

        started = time.monotonic()
        try:
            async with self.cross_reference.lock(page_id):
                await self.executor.call(
                    f"backfill page {page_id}",
                    lambda: self.notion_service.update_page(page_id, properties)
                )
        except Exception as e:
            if not isinstance(e, SyncError):
                self.logger.exception(f"Unexpected error backfilling page {page_id}")
            result = await self.executor.record_item_failure(
                EventSource.GOOGLE, event.id, e, SyncOperation.UPDATE, BACKFILL_EVENT_TYPE, event.title
            )
            record_error(progress, event.title or event.id, result.error_message)
            return

        progress.updated += 1
        await self.activity.record(SyncLogEntry(
            source=EventSource.GOOGLE,
            webhook_event_type=BACKFILL_EVENT_TYPE,
            operation=SyncOperation.UPDATE,
            direction=SyncDirection.GOOGLE_TO_NOTION,
            item_title=event.title,
            item_id=event.id,
            status=SyncStatus.SUCCESS,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        ))
