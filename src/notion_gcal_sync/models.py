"""Data models for Notion <-> Google Calendar synchronization."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, validator
import pytz


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(pytz.UTC)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if dt is None:
        return None
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        return dt.replace(tzinfo=pytz.UTC)
    return dt


class EventSource(str, Enum):
    """System a change originated from."""

    NOTION = "notion"
    GOOGLE = "google"


class SyncDirection(str, Enum):
    """Propagation direction, fixed by the origin system."""

    NOTION_TO_GOOGLE = "notion_to_google"
    GOOGLE_TO_NOTION = "google_to_notion"

    @classmethod
    def from_source(cls, source: EventSource) -> 'SyncDirection':
        if source == EventSource.NOTION:
            return cls.NOTION_TO_GOOGLE
        return cls.GOOGLE_TO_NOTION


class SyncOperation(str, Enum):
    """Sync operation types."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncStatus(str, Enum):
    """Terminal outcome of a sync operation."""

    SUCCESS = "success"
    FAILURE = "failure"


class HistoricalSyncStatus(str, Enum):
    """Lifecycle of the historical backfill."""

    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_HISTORICAL_STATES = (HistoricalSyncStatus.RUNNING, HistoricalSyncStatus.CANCELLING)


class TimeWindow(str, Enum):
    """Metrics aggregation windows."""

    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"
    QUARTER = "90d"

    @property
    def delta(self) -> timedelta:
        return {
            TimeWindow.DAY: timedelta(hours=24),
            TimeWindow.WEEK: timedelta(days=7),
            TimeWindow.MONTH: timedelta(days=30),
            TimeWindow.QUARTER: timedelta(days=90),
        }[self]


class PropertyType(str, Enum):
    """Notion property types the resolver can read and write."""

    TITLE = "title"
    RICH_TEXT = "rich_text"
    NUMBER = "number"
    DATE = "date"
    CHECKBOX = "checkbox"
    URL = "url"
    SELECT = "select"


class FieldConfig(BaseModel):
    """Mapping of one logical event field onto a Notion property."""

    enabled: bool = Field(False, description="Whether the field is synchronized")
    notion_property_name: str = Field("", description="Notion property name")
    display_label: str = Field("", description="Human readable label")
    property_type: PropertyType = Field(PropertyType.RICH_TEXT, description="Notion property type")
    required: bool = Field(False, description="Field cannot be disabled")


def _field_default(
    name: str,
    label: str,
    property_type: PropertyType,
    enabled: bool = False,
    required: bool = False
):
    return Field(default_factory=lambda: FieldConfig(
        enabled=enabled,
        notion_property_name=name,
        display_label=label,
        property_type=property_type,
        required=required,
    ))


LOGICAL_FIELDS = (
    'title',
    'date',
    'description',
    'location',
    'cross_reference_id',
    'reminders',
    'attendees',
    'organizer',
    'conference_link',
    'recurrence',
    'color',
    'visibility',
)


class FieldMapping(BaseModel):
    """Which logical event fields sync and onto which Notion properties."""

    title: FieldConfig = _field_default("Title", "Event Title", PropertyType.TITLE, True, True)
    date: FieldConfig = _field_default("Date", "Date & Time", PropertyType.DATE, True, True)
    description: FieldConfig = _field_default("Description", "Description", PropertyType.RICH_TEXT, True)
    location: FieldConfig = _field_default("Location", "Location", PropertyType.RICH_TEXT, True)
    cross_reference_id: FieldConfig = _field_default(
        "GCal Event ID", "Google Calendar Event ID", PropertyType.RICH_TEXT, True
    )
    reminders: FieldConfig = _field_default("Reminders", "Reminder (minutes)", PropertyType.NUMBER)
    attendees: FieldConfig = _field_default("Attendees", "Attendees", PropertyType.RICH_TEXT)
    organizer: FieldConfig = _field_default("Organizer", "Organizer", PropertyType.RICH_TEXT)
    conference_link: FieldConfig = _field_default("Meeting Link", "Conference Link", PropertyType.URL)
    recurrence: FieldConfig = _field_default("Recurrence", "Recurrence Rule", PropertyType.RICH_TEXT)
    color: FieldConfig = _field_default("Color", "Event Color", PropertyType.SELECT)
    visibility: FieldConfig = _field_default("Visibility", "Visibility", PropertyType.SELECT)

    @validator('title', 'date')
    def required_field_enabled(cls, v):
        """Title and date must always be mapped."""
        if not v.enabled or not v.notion_property_name.strip():
            raise ValueError("title and date mappings must be enabled with a non-empty property name")
        return v

    def get(self, name: str) -> FieldConfig:
        return getattr(self, name)

    def enabled_fields(self) -> List[str]:
        """Logical names of the enabled fields, in mapping order."""
        return [name for name in LOGICAL_FIELDS if self.get(name).enabled]

    def snapshot(self) -> 'FieldMapping':
        """Deep copy taken at the start of every sync operation."""
        return self.model_copy(deep=True)


class CalendarEvent(BaseModel):
    """Normalized calendar event.

    All-day events use midnight UTC boundaries with an exclusive end date.
    Optional attributes left as None are omitted from outgoing payloads.
    """

    id: Optional[str] = Field(None, description="Google event ID")
    title: str = Field("", description="Event title/summary")
    description: Optional[str] = Field(None, description="Event description")
    location: Optional[str] = Field(None, description="Event location")
    start: datetime = Field(..., description="Event start time")
    end: datetime = Field(..., description="Event end time")
    all_day: bool = Field(False, description="Whether event is all-day")
    status: Optional[str] = Field(None, description="Google event status, never synced")
    reminders: Optional[int] = Field(None, description="Popup reminder in minutes")
    attendees: Optional[List[str]] = Field(None, description="Attendee names or emails")
    organizer: Optional[str] = Field(None, description="Organizer name or email")
    conference_link: Optional[str] = Field(None, description="Video conference URL")
    recurrence: Optional[str] = Field(None, description="Recurrence rule(s)")
    color: Optional[str] = Field(None, description="Google colour name")
    visibility: Optional[str] = Field(None, description="Event visibility")
    notion_page_id: Optional[str] = Field(None, description="Cross-reference marker to the Notion page")
    recurring_event_id: Optional[str] = Field(None, description="Parent ID of a recurring instance")
    updated: Optional[datetime] = Field(None, description="Last modification on the source side")

    @validator('start', 'end', 'updated', pre=True)
    def ensure_timezone_aware(cls, v):
        """Ensure datetime objects are timezone-aware."""
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v

    @validator('end')
    def end_not_before_start(cls, v, values):
        """Ensure end time is not before start time."""
        if 'start' in values and v < values['start']:
            raise ValueError(f"End time ({v}) must not be before start time ({values['start']})")
        return v

    def content_hash(self, fields: Optional[List[str]] = None) -> str:
        """Fingerprint of the synchronized content.

        Args:
            fields: Logical field names to include (defaults to all)

        Returns:
            SHA-256 hex digest
        """
        fields = list(fields or LOGICAL_FIELDS)
        content: Dict[str, Any] = {}
        for name in fields:
            if name == 'cross_reference_id':
                continue
            if name == 'date':
                if self.all_day:
                    content['date'] = [self.start.date().isoformat(), self.end.date().isoformat(), True]
                else:
                    content['date'] = [
                        self.start.astimezone(pytz.UTC).isoformat(),
                        self.end.astimezone(pytz.UTC).isoformat(),
                        False,
                    ]
            elif name == 'attendees':
                content['attendees'] = list(self.attendees or [])
            elif name == 'reminders':
                content['reminders'] = self.reminders
            else:
                content[name] = getattr(self, name) or ''
        content_str = json.dumps(content, sort_keys=True)
        return hashlib.sha256(content_str.encode()).hexdigest()


class NotionPage(BaseModel):
    """A Notion database page as returned by the API."""

    id: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    archived: bool = False
    parent_database_id: Optional[str] = None
    last_edited_time: Optional[datetime] = None
    url: Optional[str] = None


class SyncedItem(BaseModel):
    """One bidirectional link between a Notion page and a Google event."""

    notion_page_id: str
    google_event_id: str
    last_synced_hash: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    sync_direction: Optional[SyncDirection] = None


class DocumentNotification(BaseModel):
    """Notion webhook event."""

    source: EventSource = EventSource.NOTION
    event_type: str
    page_id: str
    timestamp: Optional[datetime] = None
    delivery_id: Optional[str] = None

    def dedup_key(self) -> Optional[str]:
        marker = self.timestamp.isoformat() if self.timestamp else self.delivery_id
        if not marker:
            return None
        return f"notion:{self.page_id}:{marker}"


class CalendarNotification(BaseModel):
    """Google Calendar push notification (headers only)."""

    source: EventSource = EventSource.GOOGLE
    channel_id: str
    resource_id: Optional[str] = None
    resource_state: str
    message_number: Optional[int] = None

    def dedup_key(self) -> Optional[str]:
        if self.message_number is None:
            return None
        return f"google:{self.channel_id}:{self.message_number}"


Notification = Union[DocumentNotification, CalendarNotification]


class NormalizedChange(BaseModel):
    """System-agnostic change handed from the classifier to the executor."""

    source: EventSource
    operation: SyncOperation
    item_id: str = Field(..., description="ID on the origin system")
    title: str = ""
    event: Optional[CalendarEvent] = Field(None, description="Normalized payload, absent for deletes")
    counterpart_id: Optional[str] = Field(None, description="Cross-reference marker carried by the item")
    webhook_event_type: Optional[str] = None

    @property
    def direction(self) -> SyncDirection:
        return SyncDirection.from_source(self.source)


class SyncResult(BaseModel):
    """Outcome of applying one normalized change."""

    operation: Optional[SyncOperation] = None
    direction: SyncDirection
    item_id: str
    counterpart_id: Optional[str] = None
    item_title: str = ""
    success: bool
    skipped: bool = False
    error_message: Optional[str] = None


class SyncLogEntry(BaseModel):
    """Append-only activity record, one per terminal sync outcome."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = Field(default_factory=utc_now)
    source: EventSource
    webhook_event_type: Optional[str] = None
    operation: Optional[SyncOperation] = None
    direction: SyncDirection
    item_title: str = ""
    item_id: str
    status: SyncStatus
    error: Optional[str] = None
    processing_time_ms: int = 0
    skipped: bool = False

    @validator('timestamp', pre=True)
    def ensure_timezone_aware(cls, v):
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=pytz.UTC)
        return v


class SyncMetrics(BaseModel):
    """Aggregates derived from the activity log for one window."""

    window: TimeWindow
    total_success: int = 0
    total_failures: int = 0
    last_sync_notion_to_google: Optional[datetime] = None
    last_sync_google_to_notion: Optional[datetime] = None
    operation_counts: Dict[str, int] = Field(
        default_factory=lambda: {op.value: 0 for op in SyncOperation}
    )
    recent_logs: List[SyncLogEntry] = Field(default_factory=list)
    healthy: bool = True


class HistoricalSyncProgress(BaseModel):
    """Progress of the historical sync or the field backfill."""

    status: HistoricalSyncStatus = HistoricalSyncStatus.IDLE
    days_requested: Optional[int] = None
    items_total: int = 0
    items_processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    fields: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_HISTORICAL_STATES


class HistoricalSyncPreview(BaseModel):
    """What a historical sync over ``days`` would touch."""

    days: int
    total: int = 0
    new_events: int = 0
    already_synced: int = 0
    recurring_instances: int = 0


@dataclass
class ChangeSet:
    """Incremental change set fetched from Google Calendar."""

    changed: List[CalendarEvent] = field(default_factory=list)
    deleted_ids: List[str] = field(default_factory=list)
    next_sync_token: Optional[str] = None
    used_sync_token: bool = False
    invalid_token: bool = False
