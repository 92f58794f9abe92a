import pytest

from notion_gcal_sync.sync_engine import SyncEngine

from fakes import FakeGoogleService, FakeNotionService, make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def notion(settings):
    service = FakeNotionService(settings)
    service._authenticated = True
    return service


@pytest.fixture
def google(settings):
    service = FakeGoogleService(settings)
    service._authenticated = True
    return service


@pytest.fixture
def engine(settings, notion, google):
    engine = SyncEngine(settings, notion_service=notion, google_service=google)
    engine.db_manager.init_db()
    return engine
