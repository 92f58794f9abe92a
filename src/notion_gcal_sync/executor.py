"""Apply normalized changes to the target system."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential
)

from .activity import ActivityLogger
from .classifier import NOTION_EVENT_OPERATIONS
from .config import Settings
from .cross_reference import CrossReferenceStore
from .errors import NotFoundError, SyncError, TransientRemoteError, ValidationError
from .field_mapping import FieldMappingResolver
from .models import (
    DocumentNotification, EventSource, FieldMapping, NormalizedChange, Notification,
    SyncDirection, SyncedItem, SyncLogEntry, SyncOperation, SyncResult, SyncStatus
)
from .services.base import BaseCalendarService, BaseNotionService

logger = logging.getLogger(__name__)


class SyncExecutor:
    """Propagate one change and record exactly one log entry for it.

    Each change moves through ``received -> resolving-link ->
    creating|updating|deleting -> committed|failed`` while holding the
    per-item lock of the Cross-Reference Store.
    """

    def __init__(
        self,
        settings: Settings,
        notion_service: BaseNotionService,
        google_service: BaseCalendarService,
        cross_reference: CrossReferenceStore,
        resolver: FieldMappingResolver,
        activity: ActivityLogger
    ):
        self.settings = settings
        self.notion_service = notion_service
        self.google_service = google_service
        self.cross_reference = cross_reference
        self.resolver = resolver
        self.activity = activity
        self.logger = logger.getChild('executor')

    async def apply(self, change: NormalizedChange) -> SyncResult:
        """Apply a change to the other system.

        Args:
            change: Normalized change from the classifier

        Returns:
            Sync result; failures are reported, not raised
        """
        started = time.monotonic()
        mapping = self.settings.field_mapping.snapshot()
        self._transition(change, 'received')

        lock_key = await self._lock_key(change)
        async with self.cross_reference.lock(lock_key):
            try:
                result = await self._apply_locked(change, mapping)
                self._transition(change, 'committed')
            except Exception as e:
                if not isinstance(e, SyncError):
                    self.logger.exception(f"Unexpected error applying {change.operation.value} for {change.item_id}")
                self._transition(change, 'failed')
                result = SyncResult(
                    operation=change.operation,
                    direction=change.direction,
                    item_id=change.item_id,
                    item_title=change.title,
                    success=False,
                    error_message=f"{type(e).__name__}: {e}",
                )

        await self.activity.record(SyncLogEntry(
            source=change.source,
            webhook_event_type=change.webhook_event_type,
            operation=result.operation,
            direction=change.direction,
            item_title=result.item_title or change.title,
            item_id=change.item_id,
            status=SyncStatus.SUCCESS if result.success else SyncStatus.FAILURE,
            error=result.error_message,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            skipped=result.skipped,
        ))
        return result

    async def record_failure(self, notification: Notification, error: BaseException) -> SyncResult:
        """Log a notification that failed before it produced any change."""
        if isinstance(notification, DocumentNotification):
            item_id = notification.page_id
            event_type = notification.event_type
            operation = NOTION_EVENT_OPERATIONS.get(event_type)
        else:
            item_id = notification.resource_id or notification.channel_id
            event_type = notification.resource_state
            operation = None
        return await self.record_item_failure(notification.source, item_id, error, operation, event_type)

    async def record_item_failure(
        self,
        source: EventSource,
        item_id: str,
        error: BaseException,
        operation: Optional[SyncOperation] = None,
        webhook_event_type: Optional[str] = None,
        item_title: str = ""
    ) -> SyncResult:
        """Log a single item that failed outside :meth:`apply`."""
        direction = SyncDirection.from_source(source)
        message = f"{type(error).__name__}: {error}"
        await self.activity.record(SyncLogEntry(
            source=source,
            webhook_event_type=webhook_event_type,
            operation=operation,
            direction=direction,
            item_title=item_title,
            item_id=item_id,
            status=SyncStatus.FAILURE,
            error=message,
        ))
        return SyncResult(
            operation=operation,
            direction=direction,
            item_id=item_id,
            item_title=item_title,
            success=False,
            error_message=message,
        )

    def _transition(self, change: NormalizedChange, state: str) -> None:
        self.logger.debug(f"[{change.direction.value}] {change.item_id}: {state}")

    async def _lock_key(self, change: NormalizedChange) -> str:
        """Key changes by Notion page so both directions of one item serialize."""
        if change.source == EventSource.NOTION:
            return f"page:{change.item_id}"
        link = await self.cross_reference.get_by_event(change.item_id)
        if link is not None:
            return f"page:{link.notion_page_id}"
        if change.counterpart_id:
            return f"page:{change.counterpart_id}"
        return f"event:{change.item_id}"

    async def _apply_locked(self, change: NormalizedChange, mapping: FieldMapping) -> SyncResult:
        self._transition(change, 'resolving-link')
        if change.operation == SyncOperation.DELETE:
            self._transition(change, 'deleting')
            return await self._delete(change)

        if change.event is None:
            raise ValidationError(f"{change.operation.value} for {change.item_id} carries no payload")

        link = await self._resolve_link(change)
        operation = change.operation
        if operation == SyncOperation.CREATE and link is not None:
            self.logger.info(f"{change.item_id} is already linked, downgrading create to update")
            operation = SyncOperation.UPDATE
        elif operation == SyncOperation.UPDATE and link is None:
            self.logger.info(f"{change.item_id} has no counterpart, upgrading update to create")
            operation = SyncOperation.CREATE

        if operation == SyncOperation.CREATE:
            self._transition(change, 'creating')
            return await self._create(change, mapping)
        self._transition(change, 'updating')
        return await self._update(change, link, mapping)

    async def _resolve_link(self, change: NormalizedChange) -> Optional[SyncedItem]:
        link = await self.cross_reference.get(change.source, change.item_id)
        if link is not None or not change.counterpart_id:
            return link

        # The item carries a marker the store does not know yet: adopt it
        if change.source == EventSource.NOTION:
            page_id, event_id = change.item_id, change.counterpart_id
        else:
            page_id, event_id = change.counterpart_id, change.item_id
        return await self.cross_reference.link(page_id, event_id, direction=change.direction)

    async def _create(self, change: NormalizedChange, mapping: FieldMapping) -> SyncResult:
        content_hash = change.event.content_hash(mapping.enabled_fields())

        if change.source == EventSource.NOTION:
            event = change.event.model_copy(update={'id': None, 'notion_page_id': change.item_id})
            created = await self.call(
                "create Google event", lambda: self.google_service.create_event(event)
            )
            page_id, event_id = change.item_id, created.id
            await self.cross_reference.link(page_id, event_id, content_hash, change.direction, mapping)
            write_back = self.resolver.cross_reference_properties(event_id, mapping)
            if write_back:
                await self.call(
                    "write event ID to Notion", lambda: self.notion_service.update_page(page_id, write_back)
                )
            counterpart_id = event_id
        else:
            properties = self.resolver.event_to_properties(change.event, mapping)
            page = await self.call(
                "create Notion page", lambda: self.notion_service.create_page(properties)
            )
            page_id, event_id = page.id, change.item_id
            await self.cross_reference.link(page_id, event_id, content_hash, change.direction, mapping)
            await self.call(
                "write page ID to Google", lambda: self.google_service.set_notion_page_id(event_id, page_id)
            )
            counterpart_id = page_id

        return SyncResult(
            operation=SyncOperation.CREATE,
            direction=change.direction,
            item_id=change.item_id,
            counterpart_id=counterpart_id,
            item_title=change.title,
            success=True,
        )

    async def _update(self, change: NormalizedChange, link: SyncedItem, mapping: FieldMapping) -> SyncResult:
        content_hash = change.event.content_hash(mapping.enabled_fields())
        counterpart_id = (
            link.google_event_id if change.source == EventSource.NOTION else link.notion_page_id
        )

        if link.last_synced_hash == content_hash:
            self.logger.debug(f"{change.item_id} unchanged since last sync, skipping")
            return SyncResult(
                operation=SyncOperation.UPDATE,
                direction=change.direction,
                item_id=change.item_id,
                counterpart_id=counterpart_id,
                item_title=change.title,
                success=True,
                skipped=True,
            )

        try:
            if change.source == EventSource.NOTION:
                event = change.event.model_copy(update={'notion_page_id': link.notion_page_id})
                await self.call(
                    "update Google event",
                    lambda: self.google_service.update_event(link.google_event_id, event)
                )
            else:
                properties = self.resolver.event_to_properties(change.event, mapping)
                await self.call(
                    "update Notion page",
                    lambda: self.notion_service.update_page(link.notion_page_id, properties)
                )
        except NotFoundError:
            self.logger.warning(
                f"Counterpart {counterpart_id} of {change.item_id} is gone, recreating it"
            )
            await self.cross_reference.unlink(counterpart_id)
            return await self._create(change, mapping)

        await self.cross_reference.record_sync(link.notion_page_id, content_hash, change.direction, mapping)
        return SyncResult(
            operation=SyncOperation.UPDATE,
            direction=change.direction,
            item_id=change.item_id,
            counterpart_id=counterpart_id,
            item_title=change.title,
            success=True,
        )

    async def _delete(self, change: NormalizedChange) -> SyncResult:
        link = await self.cross_reference.get(change.source, change.item_id)
        if link is None:
            self.logger.info(f"{change.item_id} has no counterpart, treating delete as done")
            return SyncResult(
                operation=SyncOperation.DELETE,
                direction=change.direction,
                item_id=change.item_id,
                item_title=change.title,
                success=True,
                skipped=True,
            )

        try:
            if change.source == EventSource.NOTION:
                counterpart_id = link.google_event_id
                await self.call(
                    "delete Google event", lambda: self.google_service.delete_event(counterpart_id)
                )
            else:
                counterpart_id = link.notion_page_id
                await self.call(
                    "archive Notion page", lambda: self.notion_service.archive_page(counterpart_id)
                )
        except NotFoundError:
            self.logger.info(f"Counterpart {counterpart_id} of {change.item_id} already deleted")

        await self.cross_reference.unlink(change.item_id)
        return SyncResult(
            operation=SyncOperation.DELETE,
            direction=change.direction,
            item_id=change.item_id,
            counterpart_id=counterpart_id,
            item_title=change.title,
            success=True,
        )

    async def call(self, description: str, request: Callable[[], Awaitable[Any]]) -> Any:
        """Run a remote call with a timeout and bounded exponential retries."""
        timeout = self.settings.request_timeout_seconds
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_base_delay_seconds,
                max=self.settings.retry_max_delay_seconds
            ),
            retry=retry_if_exception_type(TransientRemoteError),
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                try:
                    result = await asyncio.wait_for(request(), timeout=timeout)
                except asyncio.TimeoutError:
                    raise TransientRemoteError(f"{description} timed out after {timeout}s")
        return result
