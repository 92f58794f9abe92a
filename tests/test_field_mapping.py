"""Tests for the field mapping resolver."""

import pytest
from datetime import datetime

import pytz

from notion_gcal_sync.errors import ValidationError
from notion_gcal_sync.field_mapping import (
    FieldMappingResolver, decode_property, encode_property, format_notion_date, parse_notion_date
)
from notion_gcal_sync.models import CalendarEvent, FieldMapping, NotionPage, PropertyType

from fakes import make_event, notion_properties


@pytest.fixture
def resolver():
    return FieldMappingResolver()


def test_page_to_event(resolver):
    page = NotionPage(
        id='page-1',
        properties=notion_properties(title='Review', description='Quarterly', location='HQ', event_id='evt-9')
    )

    event = resolver.properties_to_event(page, FieldMapping())

    assert event.title == 'Review'
    assert event.description == 'Quarterly'
    assert event.location == 'HQ'
    assert event.id == 'evt-9'
    assert event.notion_page_id == 'page-1'
    assert event.start == datetime(2024, 5, 1, 10, 0, tzinfo=pytz.UTC)
    assert not event.all_day


def test_missing_title_property_is_rejected(resolver):
    properties = notion_properties()
    del properties['Title']

    with pytest.raises(ValidationError):
        resolver.properties_to_event(NotionPage(id='p', properties=properties), FieldMapping())


def test_empty_title_becomes_untitled(resolver):
    page = NotionPage(id='p', properties=notion_properties(title=''))

    assert resolver.properties_to_event(page, FieldMapping()).title == 'Untitled'


def test_missing_date_is_rejected(resolver):
    properties = notion_properties()
    properties['Date'] = {'type': 'date', 'date': None}

    with pytest.raises(ValidationError):
        resolver.properties_to_event(NotionPage(id='p', properties=properties), FieldMapping())


def test_event_to_page_and_back_preserves_enabled_fields(resolver):
    mapping = FieldMapping()
    event = make_event(event_id='evt-1', title='Sync', description='Notes', location='Zoom')

    properties = resolver.event_to_properties(event, mapping)
    restored = resolver.properties_to_event(NotionPage(id='p', properties=properties), mapping)

    fields = mapping.enabled_fields()
    assert restored.content_hash(fields) == event.content_hash(fields)
    assert restored.id == 'evt-1'


def test_disabled_fields_are_not_written(resolver):
    mapping = FieldMapping()
    mapping.location.enabled = False
    event = make_event(location='Room 4', attendees=['Ann'], reminders=10)

    properties = resolver.event_to_properties(event, mapping)

    assert 'Location' not in properties
    assert 'Attendees' not in properties
    assert 'Reminders' not in properties


def test_status_is_never_written(resolver):
    mapping = FieldMapping()
    for name in ('attendees', 'organizer', 'conference_link', 'recurrence', 'color', 'visibility', 'reminders'):
        mapping.get(name).enabled = True
    event = make_event(status='confirmed')

    properties = resolver.event_to_properties(event, mapping)

    assert 'status' not in properties
    assert 'Status' not in properties


def test_optional_fields_round_trip(resolver):
    mapping = FieldMapping()
    for name in ('attendees', 'reminders', 'conference_link', 'color'):
        mapping.get(name).enabled = True
    event = make_event(
        attendees=['Ann', 'Bob'], reminders=15, conference_link='https://meet.example/abc', color='Tomato'
    )

    properties = resolver.event_to_properties(event, mapping)
    restored = resolver.properties_to_event(NotionPage(id='p', properties=properties), mapping)

    assert restored.attendees == ['Ann', 'Bob']
    assert restored.reminders == 15
    assert restored.conference_link == 'https://meet.example/abc'
    assert restored.color == 'Tomato'


def test_cross_reference_properties(resolver):
    mapping = FieldMapping()

    assert resolver.cross_reference_properties('evt-3', mapping) == {
        'GCal Event ID': {'rich_text': [{'text': {'content': 'evt-3'}}]}
    }

    mapping.cross_reference_id.enabled = False
    assert resolver.cross_reference_properties('evt-3', mapping) == {}


def test_validate_database_schema(resolver):
    schema = {'Title': 'title', 'Date': 'date', 'Description': 'rich_text', 'Location': 'number'}

    problems = resolver.validate_database_schema(schema, FieldMapping())

    assert any("'Location' is number" in problem for problem in problems)
    assert any("GCal Event ID" in problem for problem in problems)


class TestDates:
    """Tests for Notion date conversion."""

    def test_all_day_single_date(self):
        start, end, all_day = parse_notion_date({'start': '2024-06-10', 'end': None})

        assert all_day
        assert start == datetime(2024, 6, 10, tzinfo=pytz.UTC)
        assert end == datetime(2024, 6, 11, tzinfo=pytz.UTC)

    def test_all_day_range_end_becomes_exclusive(self):
        _, end, _ = parse_notion_date({'start': '2024-06-10', 'end': '2024-06-12'})

        assert end == datetime(2024, 6, 13, tzinfo=pytz.UTC)

    def test_timed_without_end_lasts_one_hour(self):
        start, end, all_day = parse_notion_date({'start': '2024-06-10T09:30:00.000+02:00'})

        assert not all_day
        assert (end - start).total_seconds() == 3600

    def test_naive_time_uses_time_zone(self):
        start, _, _ = parse_notion_date({'start': '2024-06-10T09:30:00', 'time_zone': 'America/New_York'})

        assert start.astimezone(pytz.UTC).hour == 13

    def test_invalid_date(self):
        with pytest.raises(ValidationError):
            parse_notion_date({'start': 'not-a-date'})
        with pytest.raises(ValidationError):
            parse_notion_date({'start': None})

    def test_format_all_day_range(self):
        event = CalendarEvent(
            title='Trip',
            start=datetime(2024, 6, 10, tzinfo=pytz.UTC),
            end=datetime(2024, 6, 13, tzinfo=pytz.UTC),
            all_day=True
        )

        assert format_notion_date(event) == {'start': '2024-06-10', 'end': '2024-06-12'}

    def test_format_single_all_day(self):
        event = CalendarEvent(
            title='Holiday',
            start=datetime(2024, 6, 10, tzinfo=pytz.UTC),
            end=datetime(2024, 6, 11, tzinfo=pytz.UTC),
            all_day=True
        )

        assert format_notion_date(event) == {'start': '2024-06-10', 'end': None}


def test_decode_read_and_write_formats():
    assert decode_property({'title': [{'plain_text': 'A'}, {'plain_text': 'B'}]}, PropertyType.TITLE) == 'AB'
    assert decode_property(encode_property('C', PropertyType.RICH_TEXT), PropertyType.RICH_TEXT) == 'C'
    assert decode_property({'select': {'name': 'Red'}}, PropertyType.SELECT) == 'Red'
    assert decode_property(None, PropertyType.URL) is None


def test_encode_number_rejects_text():
    assert encode_property('30', PropertyType.NUMBER) == {'number': 30}
    with pytest.raises(ValidationError):
        encode_property('soon', PropertyType.NUMBER)
