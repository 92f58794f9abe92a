"""Tests for the field backfill."""

from datetime import timedelta

import pytest

from notion_gcal_sync.errors import ConcurrencyError, ValidationError
from notion_gcal_sync.models import HistoricalSyncStatus, SyncOperation, SyncStatus, utc_now

from fakes import make_event


async def _linked_event(engine, google, **fields):
    """Sync one recent Google event into Notion with the default mapping."""
    google.add_event(make_event('evt-a', title='Standup', start=utc_now() - timedelta(days=2), **fields))
    await engine.historical.start(7, wait=True)


@pytest.fixture
def attendees_enabled(settings):
    settings.field_mapping.attendees.enabled = True
    settings.field_mapping.conference_link.enabled = True
    return settings


@pytest.mark.asyncio
async def test_writes_only_requested_fields(engine, notion, google, settings):
    await _linked_event(engine, google, attendees=['ana', 'bo'], conference_link='https://meet.example.com/x')
    settings.field_mapping.attendees.enabled = True
    settings.field_mapping.conference_link.enabled = True
    page_id = next(iter(notion.pages))
    assert 'Attendees' not in notion.pages[page_id].properties

    progress = await engine.backfill.start(['attendees'], wait=True)

    assert progress.status == HistoricalSyncStatus.COMPLETED
    assert progress.fields == ['attendees']
    assert progress.items_total == 1
    assert progress.updated == 1
    _, updated_page, properties = notion.calls_named('update_page')[-1]
    assert updated_page == page_id
    assert list(properties) == ['Attendees']
    assert 'Meeting Link' not in notion.pages[page_id].properties


@pytest.mark.asyncio
async def test_success_is_logged(engine, google, attendees_enabled):
    await _linked_event(engine, google, attendees=['ana'])

    await engine.backfill.start(['attendees'], wait=True)

    entry = (await engine.activity.recent_logs())[0]
    assert entry.webhook_event_type == 'backfill'
    assert entry.operation == SyncOperation.UPDATE
    assert entry.status == SyncStatus.SUCCESS
    assert entry.item_id == 'evt-a'


@pytest.mark.asyncio
async def test_events_without_values_are_skipped(engine, notion, google, attendees_enabled):
    await _linked_event(engine, google)
    updates_before = len(notion.calls_named('update_page'))

    progress = await engine.backfill.start(['attendees', 'conference_link'], wait=True)

    assert progress.skipped == 1
    assert progress.updated == 0
    assert len(notion.calls_named('update_page')) == updates_before


@pytest.mark.asyncio
async def test_unlinked_events_are_ignored(engine, notion, google, attendees_enabled):
    google.add_event(make_event('evt-b', start=utc_now() - timedelta(days=1), attendees=['ana']))

    progress = await engine.backfill.start(['attendees'], wait=True)

    assert progress.status == HistoricalSyncStatus.COMPLETED
    assert progress.items_total == 0
    assert notion.calls_named('update_page') == []


@pytest.mark.asyncio
@pytest.mark.parametrize('fields', [[], 'attendees', ['title'], ['organizer'], None])
async def test_invalid_fields_rejected(engine, attendees_enabled, fields):
    with pytest.raises(ValidationError):
        await engine.backfill.start(fields)

    assert engine.backfill.progress().status == HistoricalSyncStatus.IDLE


@pytest.mark.asyncio
async def test_failures_are_counted_and_logged(engine, notion, google, attendees_enabled):
    await _linked_event(engine, google, attendees=['ana'])
    notion.failures = [ValidationError("property missing")]

    progress = await engine.backfill.start(['attendees'], wait=True)

    assert progress.status == HistoricalSyncStatus.COMPLETED
    assert progress.failed == 1
    assert 'property missing' in progress.errors[0]
    entry = (await engine.activity.recent_logs())[0]
    assert entry.status == SyncStatus.FAILURE
    assert entry.webhook_event_type == 'backfill'


@pytest.mark.asyncio
async def test_concurrent_start_is_rejected(engine, google, attendees_enabled):
    await engine.backfill.start(['attendees'])

    with pytest.raises(ConcurrencyError):
        await engine.backfill.start(['attendees'])

    progress = await engine.backfill.wait()
    assert progress.status == HistoricalSyncStatus.COMPLETED


@pytest.mark.asyncio
async def test_runs_independently_of_historical_sync(engine, google, attendees_enabled):
    google.add_event(make_event('evt-b', start=utc_now() - timedelta(days=1)))

    await engine.historical.start(7)
    progress = await engine.backfill.start(['attendees'], wait=True)
    await engine.historical.wait()

    assert progress.status == HistoricalSyncStatus.COMPLETED
    assert engine.historical.progress().status == HistoricalSyncStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_during_last_batch_ends_cancelled(engine, notion, google, attendees_enabled):
    await _linked_event(engine, google, attendees=['ana'])
    update_page = notion.update_page

    async def update_then_cancel(page_id, properties):
        engine.backfill.cancel()
        return await update_page(page_id, properties)
    notion.update_page = update_then_cancel

    progress = await engine.backfill.start(['attendees'], wait=True)

    assert progress.status == HistoricalSyncStatus.CANCELLED
    assert progress.updated == 1


@pytest.mark.asyncio
async def test_reset(engine, attendees_enabled):
    await engine.backfill.start(['attendees'], wait=True)

    progress = engine.backfill.reset()

    assert progress.status == HistoricalSyncStatus.IDLE
    assert progress.fields == []
