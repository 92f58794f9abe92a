"""Translation between Notion page properties and calendar events."""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from dateutil import parser as date_parser
import pytz

from .errors import ValidationError
from .models import CalendarEvent, FieldConfig, FieldMapping, NotionPage, PropertyType

logger = logging.getLogger(__name__)

ATTENDEE_SEPARATOR = ", "
DEFAULT_EVENT_DURATION = timedelta(hours=1)
UNTITLED = "Untitled"

# Logical fields holding plain strings on CalendarEvent
TEXT_FIELDS = ('description', 'location', 'organizer', 'conference_link', 'recurrence', 'color', 'visibility')


def decode_property(prop: Optional[Dict[str, Any]], property_type: PropertyType) -> Any:
    """Extract a plain value from a Notion property object.

    Accepts both the read format returned by the API and the write format
    produced by :func:`encode_property`.
    """
    if not prop:
        return None
    raw = prop.get(property_type.value)

    if property_type in (PropertyType.TITLE, PropertyType.RICH_TEXT):
        if not raw:
            return ""
        parts = []
        for item in raw:
            text = item.get('plain_text')
            if text is None:
                text = (item.get('text') or {}).get('content', '')
            parts.append(text)
        return "".join(parts)
    if property_type == PropertyType.SELECT:
        return raw.get('name') if raw else None
    if property_type == PropertyType.URL:
        return raw or ""
    if property_type == PropertyType.CHECKBOX:
        return bool(raw)
    # number and date are passed through
    return raw


def encode_property(value: Any, property_type: PropertyType) -> Dict[str, Any]:
    """Build a Notion property value for writing."""
    if property_type in (PropertyType.TITLE, PropertyType.RICH_TEXT):
        text = "" if value is None else str(value)
        return {property_type.value: [{'text': {'content': text}}] if text else []}
    if property_type == PropertyType.NUMBER:
        return {'number': _to_number(value)}
    if property_type == PropertyType.CHECKBOX:
        return {'checkbox': bool(value)}
    if property_type == PropertyType.URL:
        return {'url': str(value) if value else None}
    if property_type == PropertyType.SELECT:
        return {'select': {'name': str(value)} if value else None}
    if property_type == PropertyType.DATE:
        return {'date': value}
    raise ValidationError(f"Unsupported Notion property type: {property_type}")


def _to_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Cannot store {value!r} in a number property")
    return int(number) if number.is_integer() else number


def _midnight_utc(day: date) -> datetime:
    return pytz.UTC.localize(datetime(day.year, day.month, day.day))


def parse_notion_date(value: Optional[Dict[str, Any]]) -> Tuple[datetime, datetime, bool]:
    """Convert a Notion date object into (start, end, all_day).

    Date-only values become all-day events with an exclusive end; Notion's
    end date is inclusive.

    Raises:
        ValidationError: If the value has no start
    """
    if not value or not value.get('start'):
        raise ValidationError("Date property has no start")

    start_raw = value['start']
    end_raw = value.get('end')
    all_day = 'T' not in start_raw

    try:
        if all_day:
            start = _midnight_utc(date_parser.isoparse(start_raw).date())
            if end_raw:
                end = _midnight_utc(date_parser.isoparse(end_raw).date()) + timedelta(days=1)
            else:
                end = start + timedelta(days=1)
        else:
            start = date_parser.isoparse(start_raw)
            if start.tzinfo is None:
                start = _localize(start, value.get('time_zone'))
            if end_raw:
                end = date_parser.isoparse(end_raw)
                if end.tzinfo is None:
                    end = _localize(end, value.get('time_zone'))
            else:
                end = start + DEFAULT_EVENT_DURATION
    except (ValueError, OverflowError) as e:
        raise ValidationError(f"Invalid Notion date {value!r}: {e}")

    if end < start:
        raise ValidationError(f"Notion date ends before it starts: {value!r}")
    return start, end, all_day


def _localize(dt: datetime, time_zone: Optional[str]) -> datetime:
    if time_zone:
        try:
            return pytz.timezone(time_zone).localize(dt)
        except pytz.UnknownTimeZoneError:
            logger.warning(f"Unknown Notion time zone {time_zone}, assuming UTC")
    return pytz.UTC.localize(dt)


def format_notion_date(event: CalendarEvent) -> Dict[str, Any]:
    """Convert event boundaries into a Notion date object."""
    if event.all_day:
        start_day = event.start.date()
        last_day = (event.end - timedelta(days=1)).date()
        return {
            'start': start_day.isoformat(),
            'end': last_day.isoformat() if last_day > start_day else None,
        }
    return {
        'start': event.start.isoformat(),
        'end': event.end.isoformat(),
    }


class FieldMappingResolver:
    """Apply a :class:`FieldMapping` in either direction.

    Disabled fields are never read or written and ``status`` is never mapped.
    """

    def __init__(self):
        self.logger = logger.getChild('resolver')

    def properties_to_event(self, page: NotionPage, mapping: FieldMapping) -> CalendarEvent:
        """Translate a Notion page into a calendar event.

        Args:
            page: Notion page with raw properties
            mapping: Field mapping snapshot

        Returns:
            Calendar event carrying ``notion_page_id`` and, if mapped, the
            Google event ID stored on the page

        Raises:
            ValidationError: If the title or date property is missing
        """
        properties = page.properties

        title_config = mapping.title
        if title_config.notion_property_name not in properties:
            raise ValidationError(
                f"Page {page.id} has no '{title_config.notion_property_name}' title property"
            )
        title = self._read(properties, title_config) or UNTITLED

        date_config = mapping.date
        date_value = self._read(properties, date_config)
        if not date_value:
            raise ValidationError(
                f"Page {page.id} has no value for '{date_config.notion_property_name}'"
            )
        start, end, all_day = parse_notion_date(date_value)

        values: Dict[str, Any] = {}
        for name in TEXT_FIELDS:
            config = mapping.get(name)
            if config.enabled:
                value = self._read(properties, config)
                values[name] = "" if value is None else str(value)

        if mapping.reminders.enabled:
            reminders = _to_number(self._read(properties, mapping.reminders))
            values['reminders'] = int(reminders) if reminders is not None else None

        if mapping.attendees.enabled:
            values['attendees'] = self._split_attendees(self._read(properties, mapping.attendees))

        event_id = None
        if mapping.cross_reference_id.enabled:
            event_id = self._read(properties, mapping.cross_reference_id) or None

        return CalendarEvent(
            id=event_id,
            title=title,
            start=start,
            end=end,
            all_day=all_day,
            notion_page_id=page.id,
            updated=page.last_edited_time,
            **values
        )

    def event_to_properties(self, event: CalendarEvent, mapping: FieldMapping) -> Dict[str, Any]:
        """Translate a calendar event into Notion properties.

        Every enabled field is written; empty values clear the property.

        Args:
            event: Normalized calendar event
            mapping: Field mapping snapshot

        Returns:
            Properties payload for a Notion create or update
        """
        properties: Dict[str, Any] = {}
        self._write(properties, mapping.title, event.title or UNTITLED)
        self._write(properties, mapping.date, format_notion_date(event))

        for name in TEXT_FIELDS:
            config = mapping.get(name)
            if config.enabled:
                self._write(properties, config, getattr(event, name))

        if mapping.reminders.enabled:
            self._write(properties, mapping.reminders, event.reminders)

        if mapping.attendees.enabled:
            attendees = ATTENDEE_SEPARATOR.join(event.attendees or [])
            self._write(properties, mapping.attendees, attendees)

        if mapping.cross_reference_id.enabled and event.id:
            self._write(properties, mapping.cross_reference_id, event.id)

        return properties

    def field_properties(self, event: CalendarEvent, mapping: FieldMapping, fields: List[str]) -> Dict[str, Any]:
        """Properties for ``fields`` only; fields the event has no value for are left out."""
        wanted = {
            mapping.get(name).notion_property_name
            for name in fields
            if mapping.get(name).enabled and getattr(event, name) not in (None, "", [])
        }
        properties = self.event_to_properties(event, mapping)
        return {key: value for key, value in properties.items() if key in wanted}

    def cross_reference_properties(self, google_event_id: str, mapping: FieldMapping) -> Dict[str, Any]:
        """Properties writing the Google event ID back onto a page (empty if unmapped)."""
        properties: Dict[str, Any] = {}
        if mapping.cross_reference_id.enabled:
            self._write(properties, mapping.cross_reference_id, google_event_id)
        return properties

    def validate_database_schema(self, schema: Dict[str, str], mapping: FieldMapping) -> List[str]:
        """Compare enabled fields with a database schema.

        Args:
            schema: Property name -> Notion property type
            mapping: Field mapping

        Returns:
            Human readable problems, empty when the mapping fits
        """
        problems = []
        for name in mapping.enabled_fields():
            config = mapping.get(name)
            actual = schema.get(config.notion_property_name)
            if actual is None:
                problems.append(f"Missing property '{config.notion_property_name}' for {name}")
            elif actual != config.property_type.value:
                problems.append(
                    f"Property '{config.notion_property_name}' is {actual}, expected {config.property_type.value}"
                )
        return problems

    @staticmethod
    def _read(properties: Dict[str, Any], config: FieldConfig) -> Any:
        return decode_property(properties.get(config.notion_property_name), config.property_type)

    @staticmethod
    def _write(properties: Dict[str, Any], config: FieldConfig, value: Any) -> None:
        properties[config.notion_property_name] = encode_property(value, config.property_type)

    @staticmethod
    def _split_attendees(value: Any) -> List[str]:
        if not value:
            return []
        return [name for name in str(value).split(ATTENDEE_SEPARATOR) if name]
