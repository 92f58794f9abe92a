"""Turn raw notifications into normalized changes."""

import logging
from datetime import timedelta
from typing import List, Optional

from .config import Settings
from .cross_reference import CrossReferenceStore
from .database import DatabaseManager, GOOGLE_SYNC_TOKEN_KEY
from .errors import ValidationError
from .field_mapping import FieldMappingResolver
from .models import (
    CalendarEvent, CalendarNotification, DocumentNotification, EventSource, FieldMapping,
    NormalizedChange, Notification, NotionPage, SyncOperation, utc_now
)
from .services.base import BaseCalendarService, BaseNotionService

logger = logging.getLogger(__name__)

NOTION_EVENT_OPERATIONS = {
    'page.created': SyncOperation.CREATE,
    'page.properties_updated': SyncOperation.UPDATE,
    'page.content_updated': SyncOperation.UPDATE,
    'page.undeleted': SyncOperation.UPDATE,
    'page.moved': SyncOperation.UPDATE,
    'page.deleted': SyncOperation.DELETE,
}

# Google resource states that carry no item changes
GOOGLE_HANDSHAKE_STATE = 'sync'
GOOGLE_CHANNEL_GONE_STATE = 'not_exists'
GOOGLE_CHANGE_STATE = 'exists'


class ChangeClassifier:
    """Decide which operation each changed item needs.

    Direction is fixed by the origin system. Items that are neither linked
    nor carry a cross-reference marker are treated as externally created.
    """

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        notion_service: BaseNotionService,
        google_service: BaseCalendarService,
        cross_reference: CrossReferenceStore,
        resolver: FieldMappingResolver
    ):
        self.settings = settings
        self.db_manager = db_manager
        self.notion_service = notion_service
        self.google_service = google_service
        self.cross_reference = cross_reference
        self.resolver = resolver
        self.logger = logger.getChild('classifier')

    async def classify(self, notification: Notification) -> List[NormalizedChange]:
        """Classify one notification into zero or more changes."""
        if isinstance(notification, DocumentNotification):
            return await self.classify_document(notification)
        return await self.classify_calendar(notification)

    async def classify_document(
        self,
        notification: DocumentNotification,
        mapping: Optional[FieldMapping] = None
    ) -> List[NormalizedChange]:
        operation = NOTION_EVENT_OPERATIONS.get(notification.event_type)
        if operation is None:
            self.logger.warning(f"Ignoring unsupported Notion event type {notification.event_type}")
            return []

        if operation == SyncOperation.DELETE:
            return [NormalizedChange(
                source=EventSource.NOTION,
                operation=SyncOperation.DELETE,
                item_id=notification.page_id,
                webhook_event_type=notification.event_type,
            )]

        page = await self.notion_service.get_page(notification.page_id)
        change = await self.classify_page(page, mapping, notification.event_type)
        return [change] if change else []

    async def classify_page(
        self,
        page: NotionPage,
        mapping: Optional[FieldMapping] = None,
        webhook_event_type: Optional[str] = None
    ) -> Optional[NormalizedChange]:
        """Classify the current state of a Notion page.

        Returns:
            The change, or None for pages outside the synchronized database

        Raises:
            ValidationError: If the page lacks a mapped title or date
        """
        if page.parent_database_id and page.parent_database_id != self.settings.notion_database_id:
            self.logger.debug(f"Ignoring page {page.id} from database {page.parent_database_id}")
            return None

        if page.archived:
            return NormalizedChange(
                source=EventSource.NOTION,
                operation=SyncOperation.DELETE,
                item_id=page.id,
                webhook_event_type=webhook_event_type,
            )

        mapping = mapping or self.settings.field_mapping.snapshot()
        event = self.resolver.properties_to_event(page, mapping)
        known = await self.cross_reference.get_by_page(page.id) is not None or bool(event.id)
        return NormalizedChange(
            source=EventSource.NOTION,
            operation=SyncOperation.UPDATE if known else SyncOperation.CREATE,
            item_id=page.id,
            title=event.title,
            event=event,
            counterpart_id=event.id,
            webhook_event_type=webhook_event_type,
        )

    async def classify_calendar(self, notification: CalendarNotification) -> List[NormalizedChange]:
        state = notification.resource_state
        if state == GOOGLE_HANDSHAKE_STATE:
            self.logger.info(f"Google channel {notification.channel_id} handshake acknowledged")
            return []
        if state == GOOGLE_CHANNEL_GONE_STATE:
            self.logger.warning(f"Google channel {notification.channel_id} reports the resource no longer exists")
            return []
        if state != GOOGLE_CHANGE_STATE:
            raise ValidationError(f"Unknown Google resource state {state!r}")

        change_set = await self.google_service.list_changes(
            sync_token=self.db_manager.get_config(GOOGLE_SYNC_TOKEN_KEY)
        )
        if change_set.invalid_token:
            self.logger.warning(
                f"Sync token rejected, falling back to a {self.settings.full_resync_days}-day full fetch"
            )
            self.db_manager.set_config(GOOGLE_SYNC_TOKEN_KEY, None)
            change_set = await self.google_service.list_changes(
                sync_token=None,
                time_min=utc_now() - timedelta(days=self.settings.full_resync_days)
            )
        if change_set.next_sync_token:
            self.db_manager.set_config(GOOGLE_SYNC_TOKEN_KEY, change_set.next_sync_token)

        changes = [
            await self.classify_calendar_event(event, state)
            for event in change_set.changed
        ]
        changes.extend(
            NormalizedChange(
                source=EventSource.GOOGLE,
                operation=SyncOperation.DELETE,
                item_id=event_id,
                webhook_event_type=state,
            )
            for event_id in change_set.deleted_ids
        )
        self.logger.debug(f"Google notification produced {len(changes)} changes")
        return changes

    async def classify_calendar_event(
        self,
        event: CalendarEvent,
        webhook_event_type: Optional[str] = None
    ) -> NormalizedChange:
        """Classify the current state of a Google event."""
        if event.status == 'cancelled':
            operation = SyncOperation.DELETE
        else:
            known = await self.cross_reference.get_by_event(event.id) is not None
            operation = SyncOperation.UPDATE if known or event.notion_page_id else SyncOperation.CREATE
        return NormalizedChange(
            source=EventSource.GOOGLE,
            operation=operation,
            item_id=event.id,
            title=event.title,
            event=event if operation != SyncOperation.DELETE else None,
            counterpart_id=event.notion_page_id,
            webhook_event_type=webhook_event_type,
        )
