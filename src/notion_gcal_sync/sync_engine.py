"""Sync engine facade wiring the pipeline together."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import uuid4

import pytz

from .activity import ActivityLogger
from .backfill import FieldBackfillOrchestrator
from .classifier import ChangeClassifier
from .config import Settings
from .cross_reference import CrossReferenceStore
from .database import (
    DatabaseManager, GOOGLE_CHANNEL_ADDRESS_KEY, GOOGLE_CHANNEL_EXPIRATION_KEY, GOOGLE_CHANNEL_ID_KEY,
    GOOGLE_RESOURCE_ID_KEY, GOOGLE_SYNC_TOKEN_KEY, NOTION_VERIFICATION_TOKEN_KEY
)
from .dedup import DeduplicationGate
from .errors import AuthError, SyncError, ValidationError
from .executor import SyncExecutor
from .field_mapping import FieldMappingResolver
from .historical import HistoricalSyncOrchestrator
from .models import (
    DocumentNotification, NormalizedChange, Notification, SyncDirection, SyncOperation,
    SyncResult, utc_now
)
from .services import GoogleCalendarService, NotionService
from .services.base import BaseCalendarService, BaseNotionService

logger = logging.getLogger(__name__)

MANUAL_EVENT_TYPE = 'manual'


def summarize_results(results: Iterable[SyncResult]) -> Dict[str, Dict[str, int]]:
    """Count outcomes per direction."""
    summary: Dict[str, Dict[str, int]] = {
        direction.value: {'created': 0, 'updated': 0, 'deleted': 0, 'skipped': 0, 'failed': 0}
        for direction in SyncDirection
    }
    labels = {
        SyncOperation.CREATE: 'created',
        SyncOperation.UPDATE: 'updated',
        SyncOperation.DELETE: 'deleted',
    }
    for result in results:
        counts = summary[result.direction.value]
        if not result.success:
            counts['failed'] += 1
        elif result.skipped:
            counts['skipped'] += 1
        elif result.operation in labels:
            counts[labels[result.operation]] += 1
    return summary


class SyncEngine:
    """Entry point for webhooks, manual syncs and historical backfills."""

    def __init__(
        self,
        settings: Settings,
        notion_service: Optional[BaseNotionService] = None,
        google_service: Optional[BaseCalendarService] = None,
        db_manager: Optional[DatabaseManager] = None
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            notion_service: Notion client (defaults to the REST client)
            google_service: Google Calendar client (defaults to the API client)
            db_manager: Database manager (defaults to one built from settings)
        """
        self.settings = settings
        self.db_manager = db_manager or DatabaseManager(settings)
        self.notion_service = notion_service or NotionService(settings)
        self.google_service = google_service or GoogleCalendarService(settings)

        self.resolver = FieldMappingResolver()
        self.cross_reference = CrossReferenceStore(self.db_manager)
        self.dedup = DeduplicationGate(settings, self.db_manager)
        self.activity = ActivityLogger(settings, self.db_manager)
        self.classifier = ChangeClassifier(
            settings, self.db_manager, self.notion_service, self.google_service,
            self.cross_reference, self.resolver
        )
        self.executor = SyncExecutor(
            settings, self.notion_service, self.google_service,
            self.cross_reference, self.resolver, self.activity
        )
        self.historical = HistoricalSyncOrchestrator(
            settings, self.db_manager, self.google_service,
            self.cross_reference, self.classifier, self.executor
        )
        self.backfill = FieldBackfillOrchestrator(
            settings, self.db_manager, self.notion_service, self.google_service,
            self.cross_reference, self.resolver, self.executor, self.activity
        )
        self.logger = logger.getChild('sync_engine')
        self._tasks: Set[asyncio.Task] = set()

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.cleanup()

    async def initialize(self) -> None:
        """Initialize the database and authenticate both services."""
        self.db_manager.init_db()
        self.dedup.purge_expired()
        try:
            await asyncio.gather(
                self.notion_service.authenticate(),
                self.google_service.authenticate()
            )
        except Exception as e:
            self.logger.error(f"Failed to authenticate services: {e}")
            raise
        self.logger.info("Sync engine initialized successfully")

    async def cleanup(self) -> None:
        """Stop batch jobs, wait for in-flight notifications and release resources."""
        await self.historical.shutdown()
        await self.backfill.shutdown()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.notion_service.close()
        await self.google_service.close()
        self.logger.info("Sync engine cleaned up")

    async def test_connections(self) -> Dict[str, Any]:
        """Probe both services and check the database against the field mapping."""
        notion_result, google_result = await asyncio.gather(
            self.notion_service.test_connection(),
            self.google_service.test_connection()
        )
        if notion_result['success']:
            schema = await self.notion_service.get_database_properties()
            notion_result['schema_problems'] = self.resolver.validate_database_schema(
                schema, self.settings.field_mapping.snapshot()
            )
        return {'notion': notion_result, 'google': google_result}

    async def handle_notification(self, notification: Notification) -> List[SyncResult]:
        """Run one notification through dedup, classification and execution.

        Returns:
            One result per change; empty when the notification was a duplicate
            or carried no changes
        """
        if not await self.dedup.should_process(notification):
            return []

        try:
            changes = await self.classifier.classify(notification)
        except Exception as e:
            if not isinstance(e, SyncError):
                self.logger.exception(f"Unexpected error classifying {notification.source.value} notification")
            return [await self.executor.record_failure(notification, e)]

        return await self.apply_changes(changes)

    async def apply_changes(self, changes: List[NormalizedChange]) -> List[SyncResult]:
        return list(await asyncio.gather(*(self.executor.apply(change) for change in changes)))

    def dispatch(self, notification: Notification) -> asyncio.Task:
        """Process a notification as an independent task."""
        task = asyncio.create_task(self.handle_notification(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def trigger_sync(self) -> Dict[str, Dict[str, int]]:
        """Manually reconcile both systems.

        Every dated Notion page is pushed to Google, then Google events of the
        last and next ``manual_sync_days`` are pushed to Notion. Unchanged
        items are skipped by their content hash.
        """
        mapping = self.settings.field_mapping.snapshot()
        results: List[SyncResult] = []

        pages = await self.notion_service.query_database(filter={
            'property': mapping.date.notion_property_name,
            'date': {'is_not_empty': True},
        })
        self.logger.info(f"Manual sync: {len(pages)} Notion pages")
        for page in pages:
            try:
                change = await self.classifier.classify_page(page, mapping, MANUAL_EVENT_TYPE)
            except SyncError as e:
                notification = DocumentNotification(event_type=MANUAL_EVENT_TYPE, page_id=page.id)
                results.append(await self.executor.record_failure(notification, e))
                continue
            if change is not None:
                results.append(await self.executor.apply(change))

        now = utc_now()
        window = timedelta(days=self.settings.manual_sync_days)
        events = await self.google_service.list_events(now - window, now + window)
        self.logger.info(f"Manual sync: {len(events)} Google events")
        for event in events:
            change = await self.classifier.classify_calendar_event(event, MANUAL_EVENT_TYPE)
            results.append(await self.executor.apply(change))

        summary = summarize_results(results)
        self.logger.info(f"Manual sync finished: {summary}")
        return summary

    async def get_status(self) -> Dict[str, Any]:
        """Health and state summary."""
        status = await self.activity.status()
        expiration = self.google_channel_expiration()
        status.update({
            'linked_items': await self.cross_reference.count(),
            'google_sync_token': bool(self.db_manager.get_config(GOOGLE_SYNC_TOKEN_KEY)),
            'google_channel_id': self.expected_google_channel_id(),
            'google_channel_expires_at': expiration.isoformat() if expiration else None,
            'google_channel_needs_renewal': self.google_channel_needs_renewal(),
            'notion_webhook_verified': bool(self.notion_verification_token()),
            'in_flight': len(self._tasks),
            'historical': self.historical.progress().model_dump(mode='json'),
            'field_backfill': self.backfill.progress().model_dump(mode='json'),
            'enabled_fields': self.settings.field_mapping.enabled_fields(),
        })
        return status

    def notion_verification_token(self) -> Optional[str]:
        return self.settings.notion_webhook_secret or self.db_manager.get_config(NOTION_VERIFICATION_TOKEN_KEY)

    def store_notion_verification_token(self, token: str, replace: bool = False) -> None:
        """Remember the token Notion signs deliveries with.

        The first handshake wins. A later token only replaces it when
        ``replace`` is set, so an unsigned request cannot swap the signing key.

        Raises:
            AuthError: If a token is already known and ``replace`` is not set
        """
        if self.notion_verification_token() and not replace:
            self.logger.warning("Rejected Notion verification token: a token is already stored")
            raise AuthError("A Notion verification token is already stored")
        self.db_manager.set_config(NOTION_VERIFICATION_TOKEN_KEY, token)
        self.logger.info("Stored Notion webhook verification token")

    def expected_google_channel_id(self) -> Optional[str]:
        return self.settings.google_channel_id or self.db_manager.get_config(GOOGLE_CHANNEL_ID_KEY)

    def google_channel_expiration(self) -> Optional[datetime]:
        """Expiry of the registered push channel, if known."""
        value = self.db_manager.get_config(GOOGLE_CHANNEL_EXPIRATION_KEY)
        if not value:
            return None
        # Google reports milliseconds since the epoch
        return datetime.fromtimestamp(int(value) / 1000, tz=pytz.UTC)

    def google_channel_needs_renewal(self, now: Optional[datetime] = None) -> bool:
        """True when a registered channel expires within the renewal margin or has no known expiry."""
        if not self.db_manager.get_config(GOOGLE_CHANNEL_ID_KEY):
            return False
        expiration = self.google_channel_expiration()
        if expiration is None:
            return True
        margin = timedelta(hours=self.settings.google_channel_renewal_hours)
        return expiration - (now or utc_now()) < margin

    async def register_google_channel(self, address: str, token: Optional[str] = None) -> Dict[str, Any]:
        """Register a push channel and remember it for webhook validation and renewal."""
        channel_id = str(uuid4())
        result = await self.google_service.watch(address, channel_id, token)
        self.db_manager.set_config(GOOGLE_CHANNEL_ID_KEY, result.get('id', channel_id))
        self.db_manager.set_config(GOOGLE_RESOURCE_ID_KEY, result.get('resourceId'))
        self.db_manager.set_config(GOOGLE_CHANNEL_ADDRESS_KEY, address)
        expiration = result.get('expiration')
        self.db_manager.set_config(GOOGLE_CHANNEL_EXPIRATION_KEY, str(expiration) if expiration else None)
        self.logger.info(f"Registered Google channel {result.get('id', channel_id)}")
        return result

    async def stop_google_channel(self) -> bool:
        """Stop the stored push channel, if any."""
        channel_id = self.db_manager.get_config(GOOGLE_CHANNEL_ID_KEY)
        resource_id = self.db_manager.get_config(GOOGLE_RESOURCE_ID_KEY)
        if not channel_id or not resource_id:
            return False
        await self.google_service.stop_channel(channel_id, resource_id)
        for key in (GOOGLE_CHANNEL_ID_KEY, GOOGLE_RESOURCE_ID_KEY, GOOGLE_CHANNEL_EXPIRATION_KEY):
            self.db_manager.set_config(key, None)
        return True

    async def renew_google_channel_if_needed(self, force: bool = False) -> Dict[str, Any]:
        """Replace the push channel before Google lets it expire.

        The old channel is stopped and a new one is watched on the stored
        address. The sync token is calendar-scoped and stays in place, so
        changes made during the swap are still picked up.

        Returns:
            ``status`` is ``no_channel``, ``not_needed`` or ``renewed``

        Raises:
            ValidationError: If the channel ID is pinned in settings or no
                address was stored when the channel was registered
        """
        if not self.db_manager.get_config(GOOGLE_CHANNEL_ID_KEY):
            self.logger.info("No Google channel registered, skipping renewal")
            return {'status': 'no_channel'}

        expiration = self.google_channel_expiration()
        if not force and not self.google_channel_needs_renewal():
            return {'status': 'not_needed', 'expires_at': expiration.isoformat() if expiration else None}

        if self.settings.google_channel_id:
            raise ValidationError("GOOGLE_CHANNEL_ID pins the channel; unset it to let channels be renewed")
        address = self.db_manager.get_config(GOOGLE_CHANNEL_ADDRESS_KEY)
        if not address:
            raise ValidationError("No webhook address stored for the Google channel; register it again")

        try:
            await self.stop_google_channel()
        except SyncError as e:
            # Expired channels can no longer be stopped
            self.logger.warning(f"Failed to stop old Google channel: {e}")

        result = await self.register_google_channel(address, self.settings.google_channel_token)
        expiration = self.google_channel_expiration()
        self.logger.info(f"Renewed Google channel, now expires at {expiration}")
        return {
            'status': 'renewed',
            'channel_id': result.get('id'),
            'expires_at': expiration.isoformat() if expiration else None,
        }
