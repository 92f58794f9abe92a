"""Service interfaces for the two synchronized systems."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..config import Settings
from ..errors import RemotePermissionError
from ..models import CalendarEvent, ChangeSet, EventSource, NotionPage

logger = logging.getLogger(__name__)


class BaseService(ABC):
    """Shared plumbing for remote services."""

    def __init__(self, settings: Settings, source: EventSource):
        """Initialize service.

        Args:
            settings: Application settings
            source: System the service talks to
        """
        self.settings = settings
        self.source = source
        self.logger = logger.getChild(source.value)
        self._authenticated = False

    @abstractmethod
    async def authenticate(self) -> None:
        """Authenticate with the remote service.

        Raises:
            RemotePermissionError: If authentication fails
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass

    async def test_connection(self) -> Dict[str, Any]:
        """Test connection to the service.

        Returns:
            Dictionary with connection test results
        """
        try:
            await self.authenticate()
            details = await self._check_connection()
            return {'success': True, **details}
        except Exception as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__
            }

    async def _check_connection(self) -> Dict[str, Any]:
        return {}

    def _ensure_authenticated(self):
        """Ensure the service is authenticated.

        Raises:
            RemotePermissionError: If not authenticated
        """
        if not self._authenticated:
            raise RemotePermissionError(f"{self.source.value} service not authenticated")


class BaseNotionService(BaseService):
    """Document system: pages of one Notion database."""

    def __init__(self, settings: Settings):
        super().__init__(settings, EventSource.NOTION)

    @abstractmethod
    async def get_page(self, page_id: str) -> NotionPage:
        """Fetch a page.

        Raises:
            NotFoundError: If the page does not exist
        """
        pass

    @abstractmethod
    async def query_database(self, filter: Optional[Dict[str, Any]] = None) -> List[NotionPage]:
        """Return every page of the configured database matching ``filter``."""
        pass

    @abstractmethod
    async def create_page(self, properties: Dict[str, Any]) -> NotionPage:
        """Create a page in the configured database."""
        pass

    @abstractmethod
    async def update_page(self, page_id: str, properties: Dict[str, Any]) -> NotionPage:
        """Update page properties.

        Raises:
            NotFoundError: If the page does not exist or is archived
        """
        pass

    @abstractmethod
    async def archive_page(self, page_id: str) -> None:
        """Archive a page; archiving an archived page succeeds."""
        pass

    @abstractmethod
    async def get_database_properties(self) -> Dict[str, str]:
        """Return property name -> property type of the configured database."""
        pass


class BaseCalendarService(BaseService):
    """Calendar system: events of one Google calendar."""

    def __init__(self, settings: Settings):
        super().__init__(settings, EventSource.GOOGLE)

    @abstractmethod
    async def get_event(self, event_id: str) -> CalendarEvent:
        """Get a specific event by ID.

        Raises:
            NotFoundError: If event not found
        """
        pass

    @abstractmethod
    async def list_events(self, time_min: datetime, time_max: datetime) -> List[CalendarEvent]:
        """List expanded events starting inside a window."""
        pass

    @abstractmethod
    async def list_changes(
        self,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None
    ) -> ChangeSet:
        """Return events changed since ``sync_token``.

        Without a token, return the snapshot from ``time_min`` onward along
        with a fresh token. An expired token is reported through
        ``ChangeSet.invalid_token``.
        """
        pass

    @abstractmethod
    async def create_event(self, event: CalendarEvent) -> CalendarEvent:
        """Create an event; the returned copy carries the new ID."""
        pass

    @abstractmethod
    async def update_event(self, event_id: str, event: CalendarEvent) -> CalendarEvent:
        """Patch an event with the fields set on ``event``.

        Raises:
            NotFoundError: If event not found
        """
        pass

    @abstractmethod
    async def delete_event(self, event_id: str) -> None:
        """Delete an event.

        Raises:
            NotFoundError: If event not found
        """
        pass

    @abstractmethod
    async def set_notion_page_id(self, event_id: str, page_id: str) -> None:
        """Store the cross-reference marker on an event."""
        pass

    @abstractmethod
    async def watch(self, address: str, channel_id: str, token: Optional[str] = None) -> Dict[str, Any]:
        """Register a push notification channel."""
        pass

    @abstractmethod
    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        """Stop a push notification channel."""
        pass
