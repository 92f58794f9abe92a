"""Historical backfill of past Google Calendar events into Notion."""

import asyncio
import contextlib
import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .classifier import ChangeClassifier
from .config import Settings
from .cross_reference import CrossReferenceStore
from .database import DatabaseManager, HistoricalSyncProgressDB
from .errors import ConcurrencyError, ValidationError
from .executor import SyncExecutor
from .models import (
    ACTIVE_HISTORICAL_STATES, CalendarEvent, EventSource, HistoricalSyncPreview, HistoricalSyncProgress,
    HistoricalSyncStatus, SyncOperation, ensure_utc, utc_now
)
from .services.base import BaseCalendarService

logger = logging.getLogger(__name__)

PROGRESS_ROW_ID = 1
MAX_RECORDED_ERRORS = 100
HISTORICAL_EVENT_TYPE = 'historical'
_ACTIVE = [state.value for state in ACTIVE_HISTORICAL_STATES]


class HistoricalProgressStore:
    """Single-row progress record with compare-and-set transitions."""

    def __init__(self, db_manager: DatabaseManager, row_id: int = PROGRESS_ROW_ID):
        self.db_manager = db_manager
        self.row_id = row_id

    def _ensure_row(self, session) -> HistoricalSyncProgressDB:
        row = session.get(HistoricalSyncProgressDB, self.row_id)
        if row is None:
            row = HistoricalSyncProgressDB(id=self.row_id, status=HistoricalSyncStatus.IDLE.value, errors='[]')
            session.add(row)
            session.commit()
        return row

    def get(self) -> HistoricalSyncProgress:
        with self.db_manager.get_session() as session:
            row = self._ensure_row(session)
            return HistoricalSyncProgress(
                status=HistoricalSyncStatus(row.status),
                days_requested=row.days_requested,
                items_total=row.items_total,
                items_processed=row.items_processed,
                created=row.created,
                updated=row.updated,
                skipped=row.skipped,
                failed=row.failed,
                errors=json.loads(row.errors or '[]'),
                fields=json.loads(row.fields or '[]'),
                started_at=ensure_utc(row.started_at),
                completed_at=ensure_utc(row.completed_at),
                error=row.error,
            )

    def try_start(self, days: Optional[int] = None, fields: Optional[List[str]] = None) -> bool:
        """Atomically move from any idle/terminal state to running."""
        with self.db_manager.get_session() as session:
            self._ensure_row(session)
            claimed = session.query(HistoricalSyncProgressDB).filter(
                HistoricalSyncProgressDB.id == self.row_id,
                HistoricalSyncProgressDB.status.notin_(_ACTIVE)
            ).update({
                'status': HistoricalSyncStatus.RUNNING.value,
                'days_requested': days,
                'fields': json.dumps(fields or []),
                'items_total': 0,
                'items_processed': 0,
                'created': 0,
                'updated': 0,
                'skipped': 0,
                'failed': 0,
                'errors': '[]',
                'started_at': utc_now(),
                'completed_at': None,
                'error': None,
            }, synchronize_session=False)
            session.commit()
            return claimed == 1

    def transition(self, expected: List[HistoricalSyncStatus], target: HistoricalSyncStatus, **fields: Any) -> bool:
        """Compare-and-set the status, optionally writing extra columns."""
        values: Dict[str, Any] = {'status': target.value, **fields}
        if target in (HistoricalSyncStatus.COMPLETED, HistoricalSyncStatus.CANCELLED, HistoricalSyncStatus.FAILED):
            values['completed_at'] = utc_now()
        with self.db_manager.get_session() as session:
            self._ensure_row(session)
            changed = session.query(HistoricalSyncProgressDB).filter(
                HistoricalSyncProgressDB.id == self.row_id,
                HistoricalSyncProgressDB.status.in_([state.value for state in expected])
            ).update(values, synchronize_session=False)
            session.commit()
            return changed == 1

    def update_counters(self, progress: HistoricalSyncProgress) -> None:
        with self.db_manager.get_session() as session:
            session.query(HistoricalSyncProgressDB).filter(
                HistoricalSyncProgressDB.id == self.row_id
            ).update({
                'items_total': progress.items_total,
                'items_processed': progress.items_processed,
                'created': progress.created,
                'updated': progress.updated,
                'skipped': progress.skipped,
                'failed': progress.failed,
                'errors': json.dumps(progress.errors),
            }, synchronize_session=False)
            session.commit()

    def reset(self) -> None:
        with self.db_manager.get_session() as session:
            row = self._ensure_row(session)
            row.status = HistoricalSyncStatus.IDLE.value
            row.days_requested = None
            row.fields = '[]'
            row.items_total = row.items_processed = 0
            row.created = row.updated = row.skipped = row.failed = 0
            row.errors = '[]'
            row.started_at = row.completed_at = None
            row.error = None
            session.commit()


def record_error(progress: HistoricalSyncProgress, label: str, message: Optional[str]) -> None:
    progress.failed += 1
    if len(progress.errors) < MAX_RECORDED_ERRORS:
        progress.errors.append(f"{label}: {message}")


class BatchJob:
    """Single-flight job that walks a list of items in batches.

    The progress row is the single source of truth, also for cancellation
    requests coming from other processes. Every run ends in ``completed``,
    ``cancelled`` or ``failed``, including when its task is cancelled.
    """

    label = "Batch job"

    def __init__(self, settings: Settings, progress_store: HistoricalProgressStore, job_logger: logging.Logger):
        self.settings = settings
        self.progress_store = progress_store
        self.logger = job_logger
        self._task: Optional[asyncio.Task] = None

    async def _launch(self, run: Awaitable[None], wait: bool) -> HistoricalSyncProgress:
        if wait:
            await run
        else:
            self._task = asyncio.create_task(run)
        return self.progress_store.get()

    async def wait(self) -> HistoricalSyncProgress:
        """Wait for the background run started by this process."""
        if self._task is not None and not self._task.cancelled():
            await self._task
        return self.progress_store.get()

    async def shutdown(self) -> None:
        """Cancel the background run started by this process, if any, and wait for it."""
        task = self._task
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def progress(self) -> HistoricalSyncProgress:
        return self.progress_store.get()

    def cancel(self) -> HistoricalSyncProgress:
        """Request cancellation; the run stops before its next batch."""
        if self.progress_store.transition([HistoricalSyncStatus.RUNNING], HistoricalSyncStatus.CANCELLING):
            self.logger.info(f"{self.label} cancellation requested")
        return self.progress_store.get()

    def reset(self, force: bool = False) -> HistoricalSyncProgress:
        """Clear progress back to idle.

        Raises:
            ConcurrencyError: If a run is active and ``force`` is not set
        """
        if self.progress_store.get().is_active and not force:
            raise ConcurrencyError(f"Cannot reset while a {self.label.lower()} is running")
        self.progress_store.reset()
        return self.progress_store.get()

    async def _run_batches(
        self,
        load: Callable[[], Awaitable[Sequence[Any]]],
        process: Callable[[Any, HistoricalSyncProgress], Awaitable[None]]
    ) -> None:
        progress = self.progress_store.get()
        try:
            items = await load()
            progress.items_total = len(items)
            self.progress_store.update_counters(progress)
            batch_size = self.settings.historical_batch_size

            for offset in range(0, len(items), batch_size):
                if self.progress_store.get().status == HistoricalSyncStatus.CANCELLING:
                    break
                for item in items[offset:offset + batch_size]:
                    await process(item, progress)
                self.progress_store.update_counters(progress)
                self.logger.debug(f"{self.label} processed {progress.items_processed}/{progress.items_total}")
        except asyncio.CancelledError:
            self.progress_store.update_counters(progress)
            self.progress_store.transition(
                list(ACTIVE_HISTORICAL_STATES), HistoricalSyncStatus.CANCELLED,
                error="Interrupted before completion"
            )
            self.logger.warning(f"{self.label} interrupted after {progress.items_processed} items")
            raise
        except Exception as e:
            self.logger.exception(f"{self.label} failed: {e}")
            self.progress_store.update_counters(progress)
            self.progress_store.transition(
                list(ACTIVE_HISTORICAL_STATES), HistoricalSyncStatus.FAILED, error=str(e)
            )
            return

        # A cancel that lands during the last batch still ends as cancelled
        if self.progress_store.transition([HistoricalSyncStatus.CANCELLING], HistoricalSyncStatus.CANCELLED):
            self.logger.info(f"{self.label} cancelled after {progress.items_processed} items")
        elif self.progress_store.transition([HistoricalSyncStatus.RUNNING], HistoricalSyncStatus.COMPLETED):
            self.logger.info(
                f"{self.label} completed: {progress.created} created, {progress.updated} updated, "
                f"{progress.skipped} skipped, {progress.failed} failed"
            )


class HistoricalSyncOrchestrator(BatchJob):
    """Walk Google Calendar backwards and push every event through the normal pipeline."""

    label = "Historical sync"

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        google_service: BaseCalendarService,
        cross_reference: CrossReferenceStore,
        classifier: ChangeClassifier,
        executor: SyncExecutor
    ):
        super().__init__(settings, HistoricalProgressStore(db_manager), logger.getChild('historical'))
        self.google_service = google_service
        self.cross_reference = cross_reference
        self.classifier = classifier
        self.executor = executor

    def _validate_days(self, days: Any) -> int:
        if isinstance(days, bool) or not isinstance(days, int):
            raise ValidationError(f"days must be an integer, got {days!r}")
        if days < 1 or days > self.settings.max_historical_days:
            raise ValidationError(
                f"days must be between 1 and {self.settings.max_historical_days}, got {days}"
            )
        return days

    async def _fetch_window(self, days: int) -> List[CalendarEvent]:
        now = utc_now()
        return await self.google_service.list_events(now - timedelta(days=days), now)

    async def preview(self, days: int) -> HistoricalSyncPreview:
        """Count what a run over ``days`` would touch without changing anything."""
        days = self._validate_days(days)
        events = await self._fetch_window(days)
        preview = HistoricalSyncPreview(days=days, total=len(events))
        for event in events:
            if event.recurring_event_id:
                preview.recurring_instances += 1
            if event.notion_page_id or await self.cross_reference.get_by_event(event.id) is not None:
                preview.already_synced += 1
            else:
                preview.new_events += 1
        return preview

    async def start(self, days: int, wait: bool = False) -> HistoricalSyncProgress:
        """Start a run.

        Args:
            days: Size of the window ending now, 1..max_historical_days
            wait: Run in the foreground instead of a background task

        Raises:
            ValidationError: If ``days`` is out of range
            ConcurrencyError: If a run is already in progress
        """
        days = self._validate_days(days)
        if not self.progress_store.try_start(days):
            raise ConcurrencyError("A historical sync is already running")

        self.logger.info(f"Historical sync started for the last {days} days")
        return await self._launch(self._run_batches(lambda: self._fetch_window(days), self._process), wait)

    async def _process(self, event: CalendarEvent, progress: HistoricalSyncProgress) -> None:
        progress.items_processed += 1
        try:
            change = await self.classifier.classify_calendar_event(event, HISTORICAL_EVENT_TYPE)
        except Exception as e:
            result = await self.executor.record_item_failure(
                EventSource.GOOGLE, event.id, e,
                webhook_event_type=HISTORICAL_EVENT_TYPE, item_title=event.title
            )
        else:
            result = await self.executor.apply(change)

        if not result.success:
            record_error(progress, event.title or event.id, result.error_message)
        elif result.skipped:
            progress.skipped += 1
        elif result.operation == SyncOperation.CREATE:
            progress.created += 1
        else:
            progress.updated += 1
