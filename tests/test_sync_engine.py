"""Tests for the sync engine facade."""

import asyncio
from datetime import date, datetime, timedelta

import pytest
import pytz

from notion_gcal_sync.database import (
    GOOGLE_CHANNEL_EXPIRATION_KEY, GOOGLE_CHANNEL_ID_KEY, GOOGLE_RESOURCE_ID_KEY, GOOGLE_SYNC_TOKEN_KEY
)
from notion_gcal_sync.errors import AuthError, NotFoundError, ValidationError
from notion_gcal_sync.models import (
    CalendarNotification, DocumentNotification, EventSource, SyncDirection, SyncOperation,
    SyncResult, SyncStatus, utc_now
)
from notion_gcal_sync.sync_engine import SyncEngine, summarize_results

from fakes import make_event, make_settings, notion_properties

CREATED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=pytz.UTC)


def _page_event(page_id, event_type='page.created', timestamp=CREATED_AT):
    return DocumentNotification(event_type=event_type, page_id=page_id, timestamp=timestamp)


def _push(message_number):
    return CalendarNotification(channel_id='chan-1', resource_state='exists', message_number=message_number)


class TestHandleNotification:
    """End-to-end processing of single notifications."""

    @pytest.mark.asyncio
    async def test_new_page_creates_event(self, engine, notion, google):
        page = notion.add_page(notion_properties(title='Board meeting'))

        results = await engine.handle_notification(_page_event(page.id))

        assert len(results) == 1
        assert results[0].success
        event = google.events[results[0].counterpart_id]
        assert event.title == 'Board meeting'
        assert event.notion_page_id == page.id
        logs = await engine.activity.recent_logs()
        assert len(logs) == 1
        assert logs[0].status == SyncStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_redelivery_is_suppressed(self, engine, notion, google):
        page = notion.add_page(notion_properties())

        first = await engine.handle_notification(_page_event(page.id))
        second = await engine.handle_notification(_page_event(page.id))

        assert len(first) == 1
        assert second == []
        assert len(google.calls_named('create_event')) == 1
        assert len(await engine.activity.recent_logs()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_redeliveries_create_one_event(self, engine, notion, google):
        page = notion.add_page(notion_properties())

        results = await asyncio.gather(*(engine.handle_notification(_page_event(page.id)) for _ in range(3)))

        assert sorted(len(result) for result in results) == [0, 0, 1]
        assert len(google.events) == 1

    @pytest.mark.asyncio
    async def test_classification_failure_is_logged(self, engine, notion):
        properties = notion_properties()
        del properties['Title']
        page = notion.add_page(properties)

        results = await engine.handle_notification(_page_event(page.id))

        assert not results[0].success
        assert 'ValidationError' in results[0].error_message
        logs = await engine.activity.recent_logs()
        assert logs[0].status == SyncStatus.FAILURE
        assert logs[0].item_id == page.id
        assert logs[0].operation == SyncOperation.CREATE

    @pytest.mark.asyncio
    async def test_google_echo_of_notion_write_is_skipped(self, engine, notion, google):
        page = notion.add_page(notion_properties(title='Retro'))
        await engine.handle_notification(_page_event(page.id))

        results = await engine.handle_notification(_push(1))

        assert len(results) == 1
        assert results[0].skipped
        assert notion.calls_named('create_page') == []

    @pytest.mark.asyncio
    async def test_google_event_creates_page(self, engine, notion, google):
        google.add_event(make_event('evt-1', title='Flight'))

        results = await engine.handle_notification(_push(1))

        assert results[0].direction == SyncDirection.GOOGLE_TO_NOTION
        assert results[0].operation == SyncOperation.CREATE
        assert results[0].counterpart_id in notion.pages

    @pytest.mark.asyncio
    async def test_dispatch_tracks_task(self, engine, notion, google):
        page = notion.add_page(notion_properties())

        task = engine.dispatch(_page_event(page.id))
        results = await task

        assert results[0].success
        assert len(engine._tasks) == 0


class TestScenarios:
    """Acceptance scenarios across the whole pipeline."""

    @pytest.mark.asyncio
    async def test_date_only_page_becomes_all_day_event(self, engine, notion, google):
        page = notion.add_page(notion_properties(title='Standup', start='2025-01-10', end=None))

        results = await engine.handle_notification(_page_event(page.id))

        event = google.events[results[0].counterpart_id]
        assert event.title == 'Standup'
        assert event.all_day
        assert event.start.date() == date(2025, 1, 10)
        assert await engine.cross_reference.lookup_counterpart(EventSource.NOTION, page.id) == event.id

    @pytest.mark.asyncio
    async def test_cancelled_event_archives_page_and_unlinks(self, engine, notion, google):
        google.add_event(make_event('evt-1', title='Dinner'))
        created = await engine.handle_notification(_push(1))
        page_id = created[0].counterpart_id

        google.add_event(make_event('evt-1', title='Dinner', status='cancelled', notion_page_id=page_id))
        results = await engine.handle_notification(_push(2))

        assert results[0].operation == SyncOperation.DELETE
        assert results[0].success
        assert notion.pages[page_id].archived
        assert await engine.cross_reference.count() == 0

    @pytest.mark.asyncio
    async def test_repeated_push_logs_once(self, engine, google):
        google.add_event(make_event('evt-1'))

        await engine.handle_notification(_push(7))
        await engine.handle_notification(_push(7))

        assert len(await engine.activity.recent_logs()) == 1


class TestSimultaneousEdits:
    """Edits to the same item on both systems inside the dedup window."""

    async def _linked_item(self, engine, notion, google):
        page = notion.add_page(notion_properties(title='Original'))
        results = await engine.handle_notification(_page_event(page.id))
        google.pending_changed = []
        return page.id, results[0].counterpart_id

    @pytest.mark.asyncio
    async def test_changes_apply_in_arrival_order(self, engine, notion, google):
        page_id, event_id = await self._linked_item(engine, notion, google)
        notion.pages[page_id].properties['Title'] = {'title': [{'plain_text': 'Notion edit'}]}
        google.add_event(make_event(event_id, title='Google edit', notion_page_id=page_id))

        notion_change = await engine.classifier.classify_page(await notion.get_page(page_id))
        google_change = await engine.classifier.classify_calendar_event(google.events[event_id])
        results = await engine.apply_changes([notion_change, google_change])

        assert [result.success for result in results] == [True, True]
        assert [result.skipped for result in results] == [False, False]
        assert google.calls_named('update_event')[0][2].title == 'Notion edit'
        link = await engine.cross_reference.get_by_page(page_id)
        assert link.sync_direction == SyncDirection.GOOGLE_TO_NOTION
        assert link.last_synced_hash == google_change.event.content_hash(
            engine.settings.field_mapping.enabled_fields()
        )
        logs = await engine.activity.recent_logs()
        assert [entry.source for entry in logs[:2]] == [EventSource.GOOGLE, EventSource.NOTION]

    @pytest.mark.asyncio
    async def test_echoes_converge_both_systems(self, engine, notion, google):
        page_id, event_id = await self._linked_item(engine, notion, google)
        notion.pages[page_id].properties['Title'] = {'title': [{'plain_text': 'Notion edit'}]}
        google.add_event(make_event(event_id, title='Google edit', notion_page_id=page_id))
        notion_change = await engine.classifier.classify_page(await notion.get_page(page_id))
        google_change = await engine.classifier.classify_calendar_event(google.events[event_id])
        await engine.apply_changes([notion_change, google_change])

        # Each write comes back as a notification from the system it landed on
        await engine.handle_notification(_push(1))
        echo = await engine.handle_notification(_page_event(page_id, 'page.properties_updated', utc_now()))

        assert echo[0].skipped
        page = await notion.get_page(page_id)
        page_title = engine.resolver.properties_to_event(page, engine.settings.field_mapping).title
        assert page_title == google.events[event_id].title


class TestTriggerSync:
    """Manual reconciliation."""

    @pytest.mark.asyncio
    async def test_pushes_both_directions(self, engine, notion, google):
        notion.add_page(notion_properties(title='From Notion', start='2024-05-01T10:00:00+00:00'))
        google.add_event(make_event('evt-1', title='From Google', start=utc_now()))

        summary = await engine.trigger_sync()

        assert summary['notion_to_google']['created'] == 1
        assert summary['google_to_notion']['created'] == 1
        assert len(notion.pages) == 2
        assert google.events['evt-1'].notion_page_id in notion.pages

    @pytest.mark.asyncio
    async def test_second_run_skips_everything(self, engine, notion, google):
        notion.add_page(notion_properties(title='Standup'))
        await engine.trigger_sync()

        summary = await engine.trigger_sync()

        assert summary['notion_to_google']['created'] == 0
        assert summary['notion_to_google']['skipped'] == 1
        assert summary['notion_to_google']['failed'] == 0

    @pytest.mark.asyncio
    async def test_invalid_page_is_counted_as_failure(self, engine, notion, google):
        properties = notion_properties()
        properties['Date'] = {'type': 'date', 'date': None}
        notion.add_page(properties)

        summary = await engine.trigger_sync()

        assert summary['notion_to_google']['failed'] == 1
        logs = await engine.activity.recent_logs()
        assert logs[0].webhook_event_type == 'manual'

    @pytest.mark.asyncio
    async def test_google_window_is_bounded(self, engine, google):
        engine.settings.manual_sync_days = 10
        google.add_event(make_event('evt-old', start=utc_now() - timedelta(days=30)))

        summary = await engine.trigger_sync()

        assert summary['google_to_notion']['created'] == 0
        time_min, time_max = google.calls_named('list_events')[0][1:]
        assert time_max - time_min == timedelta(days=20)


def test_summarize_results_counts_outcomes():
    results = [
        SyncResult(operation=SyncOperation.CREATE, direction=SyncDirection.NOTION_TO_GOOGLE, item_id='a', success=True),
        SyncResult(operation=SyncOperation.UPDATE, direction=SyncDirection.NOTION_TO_GOOGLE, item_id='b',
                   success=True, skipped=True),
        SyncResult(operation=SyncOperation.DELETE, direction=SyncDirection.GOOGLE_TO_NOTION, item_id='c', success=True),
        SyncResult(operation=SyncOperation.UPDATE, direction=SyncDirection.GOOGLE_TO_NOTION, item_id='d',
                   success=False, error_message='boom'),
    ]

    summary = summarize_results(results)

    assert summary['notion_to_google'] == {'created': 1, 'updated': 0, 'deleted': 0, 'skipped': 1, 'failed': 0}
    assert summary['google_to_notion'] == {'created': 0, 'updated': 0, 'deleted': 1, 'skipped': 0, 'failed': 1}


class TestStatusAndChannels:
    """Status reporting and push-channel bookkeeping."""

    @pytest.mark.asyncio
    async def test_status_keys(self, engine, notion):
        page = notion.add_page(notion_properties())
        await engine.handle_notification(_page_event(page.id))

        status = await engine.get_status()

        assert status['linked_items'] == 1
        assert status['healthy']
        assert status['notion_webhook_verified'] is False
        assert status['historical']['status'] == 'idle'
        assert status['field_backfill']['status'] == 'idle'
        assert status['google_channel_expires_at'] is None
        assert 'title' in status['enabled_fields']

    @pytest.mark.asyncio
    async def test_register_and_stop_channel(self, engine, google):
        result = await engine.register_google_channel('https://sync.example.com/webhooks/google', 'tok')

        channel_id = result['id']
        assert google.channels[channel_id] == 'https://sync.example.com/webhooks/google'
        assert engine.expected_google_channel_id() == channel_id
        assert engine.db_manager.get_config(GOOGLE_RESOURCE_ID_KEY) == f'res-{channel_id}'

        assert await engine.stop_google_channel()
        assert google.channels == {}
        assert engine.db_manager.get_config(GOOGLE_CHANNEL_ID_KEY) is None
        assert not await engine.stop_google_channel()

    def test_verification_token_lookup(self, engine):
        assert engine.notion_verification_token() is None

        engine.store_notion_verification_token('secret_abc')

        assert engine.notion_verification_token() == 'secret_abc'

    def test_configured_secret_takes_precedence(self, tmp_path, notion, google):
        settings = make_settings(tmp_path, notion_webhook_secret='configured')
        engine = SyncEngine(settings, notion_service=notion, google_service=google)
        engine.db_manager.init_db()
        with pytest.raises(AuthError):
            engine.store_notion_verification_token('stored')

        assert engine.notion_verification_token() == 'configured'

    def test_stored_token_is_not_replaced_by_another_handshake(self, engine):
        engine.store_notion_verification_token('secret_abc')

        with pytest.raises(AuthError):
            engine.store_notion_verification_token('secret_forged')
        assert engine.notion_verification_token() == 'secret_abc'

        engine.store_notion_verification_token('secret_rotated', replace=True)
        assert engine.notion_verification_token() == 'secret_rotated'


@pytest.mark.asyncio
async def test_context_manager_authenticates_and_cleans_up(settings, notion, google):
    notion._authenticated = False
    google._authenticated = False

    async with SyncEngine(settings, notion_service=notion, google_service=google) as engine:
        assert notion._authenticated
        assert google._authenticated
        assert await engine.cross_reference.count() == 0


@pytest.mark.asyncio
async def test_connections_include_schema_check(engine, notion):
    async def schema():
        return {'Title': 'title', 'Date': 'rich_text'}
    notion.get_database_properties = schema

    results = await engine.test_connections()

    assert results['notion']['success']
    assert results['google']['success']
    problems = results['notion']['schema_problems']
    assert "Property 'Date' is rich_text, expected date" in problems
    assert any('Description' in problem for problem in problems)


@pytest.mark.asyncio
async def test_initialize_propagates_auth_failure(settings, notion, google):
    async def broken():
        raise ValidationError("bad credentials")
    notion.authenticate = broken

    engine = SyncEngine(settings, notion_service=notion, google_service=google)
    with pytest.raises(ValidationError):
        await engine.initialize()


def _expires_in(hours):
    return str(int((utc_now() + timedelta(hours=hours)).timestamp() * 1000))


class TestChannelRenewal:
    """Push channels are replaced before they expire."""

    ADDRESS = 'https://sync.example.com/webhooks/google'

    @pytest.mark.asyncio
    async def test_registration_stores_expiration(self, engine):
        await engine.register_google_channel(self.ADDRESS)

        assert engine.google_channel_expiration() == datetime(2030, 1, 1, tzinfo=pytz.UTC)
        assert not engine.google_channel_needs_renewal()
        status = await engine.get_status()
        assert status['google_channel_expires_at'].startswith('2030-01-01')
        assert status['google_channel_needs_renewal'] is False

    @pytest.mark.asyncio
    async def test_without_channel_nothing_happens(self, engine, google):
        result = await engine.renew_google_channel_if_needed()

        assert result == {'status': 'no_channel'}
        assert google.channels == {}

    @pytest.mark.asyncio
    async def test_not_renewed_far_from_expiry(self, engine, google):
        registered = await engine.register_google_channel(self.ADDRESS)

        result = await engine.renew_google_channel_if_needed()

        assert result['status'] == 'not_needed'
        assert list(google.channels) == [registered['id']]

    @pytest.mark.asyncio
    async def test_renewed_close_to_expiry(self, engine, google):
        old = await engine.register_google_channel(self.ADDRESS)
        engine.db_manager.set_config(GOOGLE_CHANNEL_EXPIRATION_KEY, _expires_in(2))
        engine.db_manager.set_config(GOOGLE_SYNC_TOKEN_KEY, 'token-7')
        assert engine.google_channel_needs_renewal()

        result = await engine.renew_google_channel_if_needed()

        assert result['status'] == 'renewed'
        assert result['channel_id'] != old['id']
        assert list(google.channels) == [result['channel_id']]
        assert google.channels[result['channel_id']] == self.ADDRESS
        assert engine.expected_google_channel_id() == result['channel_id']
        assert not engine.google_channel_needs_renewal()
        assert engine.db_manager.get_config(GOOGLE_SYNC_TOKEN_KEY) == 'token-7'

    @pytest.mark.asyncio
    async def test_unknown_expiry_needs_renewal(self, engine):
        await engine.register_google_channel(self.ADDRESS)
        engine.db_manager.set_config(GOOGLE_CHANNEL_EXPIRATION_KEY, None)

        assert engine.google_channel_needs_renewal()

    @pytest.mark.asyncio
    async def test_force_and_failed_stop(self, engine, google):
        old = await engine.register_google_channel(self.ADDRESS)

        async def already_expired(channel_id, resource_id):
            raise NotFoundError("channel not found")
        google.stop_channel = already_expired

        result = await engine.renew_google_channel_if_needed(force=True)

        assert result['status'] == 'renewed'
        assert engine.expected_google_channel_id() != old['id']

    @pytest.mark.asyncio
    async def test_pinned_channel_id_is_not_rotated(self, tmp_path, notion, google):
        settings = make_settings(tmp_path, google_channel_id='chan-1')
        engine = SyncEngine(settings, notion_service=notion, google_service=google)
        engine.db_manager.init_db()
        await engine.register_google_channel(self.ADDRESS)

        with pytest.raises(ValidationError):
            await engine.renew_google_channel_if_needed(force=True)
        assert engine.expected_google_channel_id() == 'chan-1'


@pytest.mark.asyncio
async def test_cleanup_stops_running_backfill(engine, notion, google):
    engine.settings.field_mapping.attendees.enabled = True
    entered = asyncio.Event()

    async def hanging_list(time_min, time_max):
        entered.set()
        await asyncio.Event().wait()
    google.list_events = hanging_list

    await engine.backfill.start(['attendees'])
    await entered.wait()
    await engine.cleanup()

    assert engine.backfill.progress().status.value == 'cancelled'
