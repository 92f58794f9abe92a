"""Activity log and metrics aggregation."""

import logging
from typing import Any, Dict, List, Optional, Union

from .config import Settings
from .database import DatabaseManager, SyncLogEntryDB
from .errors import ValidationError
from .models import (
    EventSource, SyncDirection, SyncLogEntry, SyncMetrics, SyncOperation, SyncStatus,
    TimeWindow, ensure_utc, utc_now
)

logger = logging.getLogger(__name__)

HEALTHY_SUCCESS_RATIO = 10


def is_healthy(total_success: int, total_failures: int) -> bool:
    """Healthy when nothing failed or successes outnumber failures 10:1."""
    return total_failures == 0 or total_success >= total_failures * HEALTHY_SUCCESS_RATIO


def _to_model(row: SyncLogEntryDB) -> SyncLogEntry:
    return SyncLogEntry(
        id=row.id,
        timestamp=ensure_utc(row.timestamp),
        source=EventSource(row.source),
        webhook_event_type=row.webhook_event_type,
        operation=SyncOperation(row.operation) if row.operation else None,
        direction=SyncDirection(row.direction),
        item_title=row.item_title or "",
        item_id=row.item_id,
        status=SyncStatus(row.status),
        error=row.error,
        processing_time_ms=row.processing_time_ms,
        skipped=row.skipped,
    )


class ActivityLogger:
    """Append-only log of sync outcomes with a rolling cap."""

    def __init__(self, settings: Settings, db_manager: DatabaseManager):
        self.settings = settings
        self.db_manager = db_manager
        self.max_entries = settings.max_log_entries
        self.logger = logger.getChild('log')

    async def record(self, entry: SyncLogEntry) -> None:
        """Append an entry and trim the log to its capacity."""
        with self.db_manager.get_session() as session:
            session.add(SyncLogEntryDB(
                id=entry.id,
                timestamp=entry.timestamp,
                source=entry.source.value,
                webhook_event_type=entry.webhook_event_type,
                operation=entry.operation.value if entry.operation else None,
                direction=entry.direction.value,
                item_title=(entry.item_title or "")[:500],
                item_id=entry.item_id,
                status=entry.status.value,
                error=entry.error,
                processing_time_ms=entry.processing_time_ms,
                skipped=entry.skipped,
            ))
            session.flush()

            cutoff = session.query(SyncLogEntryDB.seq).order_by(
                SyncLogEntryDB.seq.desc()
            ).offset(self.max_entries).limit(1).scalar()
            if cutoff is not None:
                session.query(SyncLogEntryDB).filter(
                    SyncLogEntryDB.seq <= cutoff
                ).delete(synchronize_session=False)
            session.commit()

        level = logging.INFO if entry.status == SyncStatus.SUCCESS else logging.WARNING
        self.logger.log(
            level,
            f"{entry.direction.value} {entry.operation.value if entry.operation else '-'} "
            f"'{entry.item_title}' ({entry.item_id}): {entry.status.value}"
            + (" [skipped]" if entry.skipped else "")
            + (f" - {entry.error}" if entry.error else "")
        )

    async def recent_logs(self, limit: Optional[int] = None) -> List[SyncLogEntry]:
        """Return log entries, newest first."""
        with self.db_manager.get_session() as session:
            query = session.query(SyncLogEntryDB).order_by(SyncLogEntryDB.seq.desc())
            if limit is not None:
                query = query.limit(limit)
            return [_to_model(row) for row in query.all()]

    async def get_entry(self, entry_id: str) -> Optional[SyncLogEntry]:
        with self.db_manager.get_session() as session:
            row = session.query(SyncLogEntryDB).filter(SyncLogEntryDB.id == entry_id).first()
            return _to_model(row) if row else None

    async def metrics(self, window: Union[TimeWindow, str] = TimeWindow.DAY, recent: int = 20) -> SyncMetrics:
        """Aggregate the log over a time window.

        Args:
            window: One of 24h, 7d, 30d, 90d
            recent: Number of newest in-window entries to include

        Raises:
            ValidationError: If the window is unknown
        """
        try:
            window = TimeWindow(window)
        except ValueError:
            raise ValidationError(
                f"Unknown metrics window {window!r}; expected one of {[w.value for w in TimeWindow]}"
            )

        since = utc_now() - window.delta
        entries = [entry for entry in await self.recent_logs() if entry.timestamp >= since]

        metrics = SyncMetrics(window=window)
        for entry in entries:
            if entry.status == SyncStatus.SUCCESS:
                metrics.total_success += 1
                if entry.direction == SyncDirection.NOTION_TO_GOOGLE:
                    if metrics.last_sync_notion_to_google is None:
                        metrics.last_sync_notion_to_google = entry.timestamp
                elif metrics.last_sync_google_to_notion is None:
                    metrics.last_sync_google_to_notion = entry.timestamp
            else:
                metrics.total_failures += 1
            if entry.operation is not None:
                metrics.operation_counts[entry.operation.value] += 1

        metrics.recent_logs = entries[:recent]
        metrics.healthy = is_healthy(metrics.total_success, metrics.total_failures)
        return metrics

    async def status(self) -> Dict[str, Any]:
        """Health summary over the last 24 hours."""
        metrics = await self.metrics(TimeWindow.DAY, recent=1)
        last_entry = metrics.recent_logs[0] if metrics.recent_logs else None
        return {
            'healthy': metrics.healthy,
            'total_success': metrics.total_success,
            'total_failures': metrics.total_failures,
            'last_sync_notion_to_google': metrics.last_sync_notion_to_google,
            'last_sync_google_to_notion': metrics.last_sync_google_to_notion,
            'last_activity': last_entry.timestamp if last_entry else None,
        }

    async def clear(self) -> None:
        with self.db_manager.get_session() as session:
            session.query(SyncLogEntryDB).delete(synchronize_session=False)
            session.commit()
