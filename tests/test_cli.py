import pytest
from click.testing import CliRunner

from notion_gcal_sync.cli import cli
from notion_gcal_sync.config import load_settings
from notion_gcal_sync.database import DatabaseManager, NOTION_VERIFICATION_TOKEN_KEY


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / 'sync.env'
    path.write_text(
        f"NOTION_API_TOKEN=secret_test_token\n"
        f"NOTION_DATABASE_ID=db0123456789\n"
        f"GOOGLE_CLIENT_ID={'x' * 20}\n"
        f"GOOGLE_CLIENT_SECRET={'y' * 20}\n"
        f"GOOGLE_REFRESH_TOKEN={'z' * 20}\n"
        f"DATA_DIR={tmp_path}\n"
        f"DATABASE_URL=sqlite:///{tmp_path}/cli.db\n"
    )
    return path


def _run(config_file, *args, **kwargs):
    return CliRunner().invoke(cli, ['--config', str(config_file), *args], **kwargs)


def test_config_create(tmp_path, config_file):
    target = tmp_path / 'example.env'

    result = _run(config_file, 'config', 'create', '--path', str(target))

    assert result.exit_code == 0
    assert 'NOTION_API_TOKEN=' in target.read_text()


def test_config_validate_reports_missing_fields(tmp_path):
    path = tmp_path / 'partial.env'
    path.write_text(f"NOTION_DATABASE_ID=db0123456789\nDATA_DIR={tmp_path}\n")

    result = _run(path, 'config', 'validate')

    assert result.exit_code == 1
    assert 'NOTION_API_TOKEN' in result.output


def test_config_validate_lists_synced_fields(config_file):
    result = _run(config_file, 'config', 'validate')

    assert result.exit_code == 0
    assert 'title' in result.output


def test_logs_when_empty(config_file):
    result = _run(config_file, 'logs')

    assert result.exit_code == 0
    assert 'No sync activity recorded yet' in result.output


def test_metrics_window_choice(config_file):
    assert _run(config_file, 'metrics', '--window', '7d').exit_code == 0
    assert _run(config_file, 'metrics', '--window', '1y').exit_code != 0


def test_historical_progress_and_reset(config_file):
    progress = _run(config_file, 'historical', 'progress')
    reset = _run(config_file, 'historical', 'reset')
    cancel = _run(config_file, 'historical', 'cancel')

    assert 'idle' in progress.output
    assert reset.exit_code == 0
    assert 'Nothing to cancel' in cancel.output


def test_reset_requires_confirmation(config_file):
    result = _run(config_file, 'reset', input='n\n')

    assert result.exit_code != 0


def test_backfill_progress_cancel_and_reset(config_file):
    progress = _run(config_file, 'backfill', 'progress')
    cancel = _run(config_file, 'backfill', 'cancel')
    reset = _run(config_file, 'backfill', 'reset')

    assert 'Field Backfill' in progress.output
    assert 'idle' in progress.output
    assert 'Nothing to cancel' in cancel.output
    assert reset.exit_code == 0


def test_backfill_rejects_unknown_field(config_file):
    result = _run(config_file, 'backfill', 'start', '--field', 'title')

    assert result.exit_code != 0


def test_notion_set_token_replaces_stored_token(config_file):
    first = _run(config_file, 'notion', 'set-token', 'secret_one')
    second = _run(config_file, 'notion', 'set-token', 'secret_two')

    assert first.exit_code == 0
    assert second.exit_code == 0
    db_manager = DatabaseManager(load_settings(str(config_file)))
    assert db_manager.get_config(NOTION_VERIFICATION_TOKEN_KEY) == 'secret_two'
