"""Notion REST API client with async support."""

from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser
import httpx

from .base import BaseNotionService
from ..config import Settings
from ..errors import (
    NotFoundError, RateLimitError, RemotePermissionError, RemoteServiceError, SyncError,
    TransientRemoteError
)
from ..models import NotionPage


def translate_response_error(response: httpx.Response, action: str) -> SyncError:
    """Map a failed Notion response onto the sync error taxonomy."""
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    code = payload.get('code', '')
    detail = payload.get('message') or response.text
    message = f"Notion {action} failed ({response.status_code} {code}): {detail}"

    if response.status_code == 429 or code == 'rate_limited':
        retry_after = response.headers.get('Retry-After')
        return RateLimitError(message, retry_after=float(retry_after) if retry_after else None)
    if response.status_code == 404 or code == 'object_not_found':
        return NotFoundError(message)
    if code == 'validation_error' and 'archived' in detail.lower():
        return NotFoundError(message)
    if response.status_code in (401, 403):
        return RemotePermissionError(message)
    if response.status_code >= 500 or code in ('conflict_error', 'service_unavailable'):
        return TransientRemoteError(message)
    return RemoteServiceError(message)


class NotionService(BaseNotionService):
    """Notion database client."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        """Initialize Notion service.

        Args:
            settings: Application settings
            transport: Optional httpx transport (used by tests)
        """
        super().__init__(settings)
        self.database_id = settings.notion_database_id
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def authenticate(self) -> None:
        """Create the HTTP client and check the token against the database."""
        if self._authenticated:
            return
        self._http_client = httpx.AsyncClient(
            base_url=self.settings.notion_api_url,
            timeout=self.settings.request_timeout_seconds,
            transport=self._transport,
            headers={
                'Authorization': f'Bearer {self.settings.notion_api_token}',
                'Notion-Version': self.settings.notion_api_version,
                'Content-Type': 'application/json',
            },
        )
        self._authenticated = True
        self.logger.info("Notion client ready")

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
        self._authenticated = False

    async def _request(self, method: str, path: str, action: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._ensure_authenticated()
        try:
            response = await self._http_client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise TransientRemoteError(f"Notion {action} timed out: {e}")
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Notion {action} network error: {e}")
        if response.is_error:
            raise translate_response_error(response, action)
        return response.json()

    async def _check_connection(self) -> Dict[str, Any]:
        database = await self._request('GET', f'/databases/{self.database_id}', "database lookup")
        title = "".join(item.get('plain_text', '') for item in database.get('title', []))
        return {'database': title, 'properties': len(database.get('properties', {}))}

    async def get_page(self, page_id: str) -> NotionPage:
        data = await self._request('GET', f'/pages/{page_id}', f"get page {page_id}")
        return self._format_page(data)

    async def query_database(self, filter: Optional[Dict[str, Any]] = None) -> List[NotionPage]:
        """Return every page of the database, following pagination."""
        pages: List[NotionPage] = []
        cursor: Optional[str] = None
        while True:
            body: Dict[str, Any] = {'page_size': 100}
            if filter:
                body['filter'] = filter
            if cursor:
                body['start_cursor'] = cursor
            data = await self._request('POST', f'/databases/{self.database_id}/query', "query database", json=body)
            pages.extend(
                self._format_page(result) for result in data.get('results', [])
                if result.get('object') == 'page'
            )
            if not data.get('has_more'):
                break
            cursor = data.get('next_cursor')
        return pages

    async def create_page(self, properties: Dict[str, Any]) -> NotionPage:
        body = {
            'parent': {'database_id': self.database_id},
            'properties': properties,
        }
        data = await self._request('POST', '/pages', "create page", json=body)
        self.logger.debug(f"Created Notion page {data.get('id')}")
        return self._format_page(data)

    async def update_page(self, page_id: str, properties: Dict[str, Any]) -> NotionPage:
        data = await self._request(
            'PATCH', f'/pages/{page_id}', f"update page {page_id}", json={'properties': properties}
        )
        page = self._format_page(data)
        if page.archived:
            raise NotFoundError(f"Notion page {page_id} is archived")
        return page

    async def archive_page(self, page_id: str) -> None:
        try:
            await self._request('PATCH', f'/pages/{page_id}', f"archive page {page_id}", json={'archived': True})
        except NotFoundError as e:
            if 'archived' in str(e).lower():
                self.logger.info(f"Page {page_id} is already archived, skipping")
                return
            raise

    async def get_database_properties(self) -> Dict[str, str]:
        data = await self._request('GET', f'/databases/{self.database_id}', "database lookup")
        return {name: prop.get('type') for name, prop in data.get('properties', {}).items()}

    @staticmethod
    def _format_page(data: Dict[str, Any]) -> NotionPage:
        parent = data.get('parent') or {}
        parent_id = parent.get('database_id')
        edited = data.get('last_edited_time')
        return NotionPage(
            id=data['id'],
            properties=data.get('properties', {}),
            archived=bool(data.get('archived') or data.get('in_trash')),
            parent_database_id=parent_id.replace('-', '') if parent_id else None,
            last_edited_time=date_parser.isoparse(edited) if edited else None,
            url=data.get('url'),
        )
