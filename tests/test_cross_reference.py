import asyncio

import pytest

from notion_gcal_sync.cross_reference import CrossReferenceStore
from notion_gcal_sync.database import DatabaseManager
from notion_gcal_sync.errors import ConflictError
from notion_gcal_sync.models import EventSource, SyncDirection

from fakes import make_settings


@pytest.fixture
def store(tmp_path):
    db_manager = DatabaseManager(make_settings(tmp_path))
    db_manager.init_db()
    return CrossReferenceStore(db_manager)


@pytest.mark.asyncio
async def test_link_and_lookup_both_ways(store):
    await store.link('page-1', 'evt-1', 'hash-1', SyncDirection.NOTION_TO_GOOGLE)

    assert await store.lookup_counterpart(EventSource.NOTION, 'page-1') == 'evt-1'
    assert await store.lookup_counterpart(EventSource.GOOGLE, 'evt-1') == 'page-1'
    item = await store.get_by_page('page-1')
    assert item.last_synced_hash == 'hash-1'
    assert item.sync_direction == SyncDirection.NOTION_TO_GOOGLE
    assert item.last_synced_at is not None


@pytest.mark.asyncio
async def test_relinking_same_pair_refreshes_metadata(store):
    await store.link('page-1', 'evt-1', 'hash-1')
    await store.link('page-1', 'evt-1', 'hash-2', SyncDirection.GOOGLE_TO_NOTION)

    item = await store.get_by_event('evt-1')
    assert item.last_synced_hash == 'hash-2'
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_conflicting_link_is_rejected_without_overwrite(store):
    await store.link('page-1', 'evt-1')

    with pytest.raises(ConflictError):
        await store.link('page-1', 'evt-2')
    with pytest.raises(ConflictError):
        await store.link('page-2', 'evt-1')

    assert await store.lookup_counterpart(EventSource.NOTION, 'page-1') == 'evt-1'
    assert await store.get_by_event('evt-2') is None
    assert await store.get_by_page('page-2') is None


@pytest.mark.asyncio
async def test_unlink_from_either_side(store):
    await store.link('page-1', 'evt-1')
    await store.link('page-2', 'evt-2')

    assert await store.unlink('evt-1')
    assert await store.unlink('page-2')
    assert not await store.unlink('page-3')
    assert await store.count() == 0


@pytest.mark.asyncio
async def test_record_sync_updates_hash(store):
    await store.link('page-1', 'evt-1', 'old')

    await store.record_sync('page-1', 'new', SyncDirection.GOOGLE_TO_NOTION)

    item = await store.get(EventSource.GOOGLE, 'evt-1')
    assert item.last_synced_hash == 'new'
    assert item.sync_direction == SyncDirection.GOOGLE_TO_NOTION


@pytest.mark.asyncio
async def test_lock_serializes_same_key(store):
    order = []

    async def worker(name):
        async with store.lock('page:page-1'):
            order.append(f'{name}-in')
            await asyncio.sleep(0.01)
            order.append(f'{name}-out')

    await asyncio.gather(worker('a'), worker('b'))

    assert order in (['a-in', 'a-out', 'b-in', 'b-out'], ['b-in', 'b-out', 'a-in', 'a-out'])
    assert len(store._locks) == 0
