"""Google Calendar service implementation with async support."""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from dateutil import parser as date_parser
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import pytz

from .base import BaseCalendarService
from ..config import Settings
from ..errors import (
    NotFoundError, RateLimitError, RemotePermissionError, RemoteServiceError, SyncError,
    TransientRemoteError
)
from ..models import CalendarEvent, ChangeSet

TOKEN_URI = "https://oauth2.googleapis.com/token"
NOTION_PAGE_MARKER = "notion_page_id"

GOOGLE_COLORS = {
    "1": "Lavender",
    "2": "Sage",
    "3": "Grape",
    "4": "Flamingo",
    "5": "Banana",
    "6": "Tangerine",
    "7": "Peacock",
    "8": "Graphite",
    "9": "Blueberry",
    "10": "Basil",
    "11": "Tomato",
}
GOOGLE_COLOR_IDS = {name.lower(): color_id for color_id, name in GOOGLE_COLORS.items()}
VISIBILITY_VALUES = ("default", "public", "private", "confidential")

# Event types Google does not let us modify
READ_ONLY_EVENT_TYPES = ("birthday",)


def translate_http_error(error: HttpError, action: str) -> SyncError:
    """Map a Google API error onto the sync error taxonomy."""
    status = error.resp.status
    message = f"Google Calendar {action} failed ({status}): {error}"
    text = str(error).lower()
    if status == 429 or (status == 403 and 'ratelimitexceeded' in text.replace(' ', '')):
        retry_after = error.resp.get('retry-after') if hasattr(error.resp, 'get') else None
        return RateLimitError(message, retry_after=float(retry_after) if retry_after else None)
    if status in (404, 410):
        return NotFoundError(message)
    if status in (401, 403):
        return RemotePermissionError(message)
    if status >= 500:
        return TransientRemoteError(message)
    return RemoteServiceError(message)


class GoogleCalendarService(BaseCalendarService):
    """Google Calendar service with async support."""

    def __init__(self, settings: Settings):
        """Initialize Google Calendar service.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self.service = None
        self.calendar_id = settings.google_calendar_id

    async def authenticate(self) -> None:
        """Authenticate with Google Calendar API using the stored refresh token."""
        if self._authenticated:
            return
        creds = Credentials(
            token=None,
            refresh_token=self.settings.google_refresh_token,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            token_uri=TOKEN_URI,
            scopes=self.settings.google_scopes,
        )
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: creds.refresh(Request()))
        except RefreshError as e:
            raise RemotePermissionError(f"Google Calendar authentication failed: {e}")
        except OSError as e:
            raise TransientRemoteError(f"Google Calendar authentication failed: {e}")

        self.service = build('calendar', 'v3', credentials=creds, cache_discovery=False)
        self._authenticated = True
        self.logger.info("Successfully authenticated with Google Calendar")

    async def _execute(self, request_factory: Callable[[], Any], action: str) -> Dict[str, Any]:
        """Run a googleapiclient request in the default executor."""
        self._ensure_authenticated()
        try:
            return await asyncio.get_event_loop().run_in_executor(
                None,
                lambda: request_factory().execute()
            )
        except HttpError as e:
            raise translate_http_error(e, action)
        except (OSError, TimeoutError) as e:
            raise TransientRemoteError(f"Google Calendar {action} failed: {e}")

    async def _check_connection(self) -> Dict[str, Any]:
        calendar = await self._execute(
            lambda: self.service.calendars().get(calendarId=self.calendar_id),
            "calendar lookup"
        )
        return {'calendar': calendar.get('summary'), 'time_zone': calendar.get('timeZone')}

    async def get_event(self, event_id: str) -> CalendarEvent:
        """Get a specific Google Calendar event."""
        event_data = await self._execute(
            lambda: self.service.events().get(calendarId=self.calendar_id, eventId=event_id),
            f"get event {event_id}"
        )
        event = self._format_google_event(event_data)
        if event is None:
            raise NotFoundError(f"Google event {event_id} is not a synchronizable event")
        return event

    async def list_events(self, time_min: datetime, time_max: datetime) -> List[CalendarEvent]:
        """List expanded events in a window, oldest first."""
        events: List[CalendarEvent] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                'calendarId': self.calendar_id,
                'timeMin': time_min.isoformat(),
                'timeMax': time_max.isoformat(),
                'singleEvents': True,
                'orderBy': 'startTime',
                'maxResults': 250,
            }
            if page_token:
                params['pageToken'] = page_token
            result = await self._execute(lambda: self.service.events().list(**params), "list events")
            for event_data in result.get('items', []):
                event = self._format_google_event(event_data)
                if event is not None:
                    events.append(event)
            page_token = result.get('nextPageToken')
            if not page_token:
                break
        return events

    async def list_changes(
        self,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None
    ) -> ChangeSet:
        """Return changed events and explicit deletions.

        With a sync token this is a true incremental fetch including
        deletions; an expired token (410) is reported via ``invalid_token``.
        Without a token the snapshot from ``time_min`` is returned.
        """
        change_set = ChangeSet(used_sync_token=bool(sync_token))
        page_token: Optional[str] = None
        if not sync_token and time_min is None:
            time_min = datetime.now(pytz.UTC) - timedelta(days=self.settings.full_resync_days)

        while True:
            params: Dict[str, Any] = {
                'calendarId': self.calendar_id,
                'singleEvents': True,
                'maxResults': 2500,
            }
            if sync_token:
                params['syncToken'] = sync_token
                params['showDeleted'] = True
            else:
                params['timeMin'] = time_min.isoformat()
            if page_token:
                params['pageToken'] = page_token

            try:
                result = await self._execute(lambda: self.service.events().list(**params), "list changes")
            except NotFoundError:
                if sync_token:
                    self.logger.warning("Google sync token expired/invalid (410)")
                    change_set.invalid_token = True
                    return change_set
                raise

            for event_data in result.get('items', []):
                event_id = event_data.get('id')
                if event_data.get('status') == 'cancelled':
                    if event_id:
                        change_set.deleted_ids.append(event_id)
                    continue
                try:
                    event = self._format_google_event(event_data)
                except (KeyError, ValueError) as e:
                    self.logger.warning(f"Failed to format Google event {event_id}: {e}")
                    continue
                if event is not None:
                    change_set.changed.append(event)

            page_token = result.get('nextPageToken')
            change_set.next_sync_token = result.get('nextSyncToken') or change_set.next_sync_token
            if not page_token:
                break

        return change_set

    async def create_event(self, event: CalendarEvent) -> CalendarEvent:
        """Create a Google Calendar event."""
        body = self._convert_to_google_format(event)
        created = await self._execute(
            lambda: self.service.events().insert(calendarId=self.calendar_id, body=body),
            "create event"
        )
        self.logger.debug(f"Created Google event {created.get('id')}")
        return self._format_google_event(created) or event.model_copy(update={'id': created.get('id')})

    async def update_event(self, event_id: str, event: CalendarEvent) -> CalendarEvent:
        """Patch a Google Calendar event."""
        body = self._convert_to_google_format(event)
        updated = await self._execute(
            lambda: self.service.events().patch(calendarId=self.calendar_id, eventId=event_id, body=body),
            f"update event {event_id}"
        )
        return self._format_google_event(updated) or event.model_copy(update={'id': event_id})

    async def delete_event(self, event_id: str) -> None:
        """Delete a Google Calendar event."""
        await self._execute(
            lambda: self.service.events().delete(calendarId=self.calendar_id, eventId=event_id),
            f"delete event {event_id}"
        )

    async def set_notion_page_id(self, event_id: str, page_id: str) -> None:
        """Write the Notion page ID into the event's private extended properties."""
        body = {'extendedProperties': {'private': {NOTION_PAGE_MARKER: page_id}}}
        await self._execute(
            lambda: self.service.events().patch(calendarId=self.calendar_id, eventId=event_id, body=body),
            f"mark event {event_id}"
        )

    async def watch(self, address: str, channel_id: str, token: Optional[str] = None) -> Dict[str, Any]:
        """Register a push notification channel for the calendar."""
        body = {
            'id': channel_id,
            'type': 'web_hook',
            'address': address,
        }
        if token:
            body['token'] = token
        return await self._execute(
            lambda: self.service.events().watch(calendarId=self.calendar_id, body=body),
            "watch calendar"
        )

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        """Stop a push notification channel."""
        await self._execute(
            lambda: self.service.channels().stop(body={'id': channel_id, 'resourceId': resource_id}),
            "stop channel"
        )

    def _format_google_event(self, event_data: Dict[str, Any]) -> Optional[CalendarEvent]:
        """Convert Google Calendar event to standard format.

        Returns None for read-only event types and events without times.
        """
        if event_data.get('eventType') in READ_ONLY_EVENT_TYPES:
            self.logger.debug(f"Skipping read-only {event_data.get('eventType')} event {event_data.get('id')}")
            return None

        start = event_data.get('start') or {}
        end = event_data.get('end') or {}
        all_day = 'date' in start
        if all_day:
            start_dt = pytz.UTC.localize(datetime.fromisoformat(start['date']))
            end_dt = pytz.UTC.localize(datetime.fromisoformat(end.get('date', start['date'])))
            if end_dt <= start_dt:
                end_dt = start_dt + timedelta(days=1)
        elif 'dateTime' in start:
            start_dt = date_parser.isoparse(start['dateTime'])
            end_dt = date_parser.isoparse(end.get('dateTime', start['dateTime']))
        else:
            self.logger.warning(f"Google event {event_data.get('id')} has no start time")
            return None

        reminders = None
        overrides = (event_data.get('reminders') or {}).get('overrides') or []
        if overrides:
            reminders = overrides[0].get('minutes')

        attendees = [
            attendee.get('displayName') or attendee.get('email', '').split('@')[0] or 'Unknown'
            for attendee in event_data.get('attendees', [])
            if not attendee.get('self')
        ]

        organizer_data = event_data.get('organizer') or {}
        organizer = organizer_data.get('displayName') or organizer_data.get('email')

        conference_link = None
        for entry_point in (event_data.get('conferenceData') or {}).get('entryPoints', []):
            if entry_point.get('entryPointType') == 'video':
                conference_link = entry_point.get('uri')
                break

        recurrence = "\n".join(event_data['recurrence']) if event_data.get('recurrence') else None

        color = None
        if event_data.get('colorId'):
            color = GOOGLE_COLORS.get(event_data['colorId'], 'Default')

        private = (event_data.get('extendedProperties') or {}).get('private') or {}
        updated = event_data.get('updated')

        return CalendarEvent(
            id=event_data['id'],
            title=event_data.get('summary', ''),
            description=event_data.get('description'),
            location=event_data.get('location'),
            start=start_dt,
            end=end_dt,
            all_day=all_day,
            status=event_data.get('status'),
            reminders=reminders,
            attendees=attendees or None,
            organizer=organizer,
            conference_link=conference_link,
            recurrence=recurrence,
            color=color,
            visibility=event_data.get('visibility'),
            notion_page_id=private.get(NOTION_PAGE_MARKER),
            recurring_event_id=event_data.get('recurringEventId'),
            updated=date_parser.isoparse(updated) if updated else None,
        )

    def _convert_to_google_format(self, event: CalendarEvent) -> Dict[str, Any]:
        """Convert standard event format to a Google Calendar request body.

        Only fields set on the event are included. Attendees, organizer,
        conference link and recurrence are owned by Google and never written.
        Status is never written.
        """
        body: Dict[str, Any] = {'summary': event.title}

        if event.all_day:
            body['start'] = {'date': event.start.date().isoformat()}
            body['end'] = {'date': event.end.date().isoformat()}
        else:
            body['start'] = {'dateTime': event.start.astimezone(pytz.UTC).isoformat(), 'timeZone': 'UTC'}
            body['end'] = {'dateTime': event.end.astimezone(pytz.UTC).isoformat(), 'timeZone': 'UTC'}

        if event.description is not None:
            body['description'] = event.description
        if event.location is not None:
            body['location'] = event.location

        if event.reminders is not None:
            body['reminders'] = {
                'useDefault': False,
                'overrides': [{'method': 'popup', 'minutes': event.reminders}],
            }

        if event.color:
            color_id = GOOGLE_COLOR_IDS.get(event.color.lower())
            if color_id:
                body['colorId'] = color_id

        if event.visibility and event.visibility.lower() in VISIBILITY_VALUES:
            body['visibility'] = event.visibility.lower()

        if event.notion_page_id:
            body['extendedProperties'] = {'private': {NOTION_PAGE_MARKER: event.notion_page_id}}

        return body
