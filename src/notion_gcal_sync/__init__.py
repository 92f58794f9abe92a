"""Bidirectional synchronization between a Notion database and Google Calendar."""

__version__ = "1.0.0"

from .config import Settings, load_settings
from .errors import SyncError
from .sync_engine import SyncEngine

__all__ = ['Settings', 'SyncEngine', 'SyncError', 'load_settings', '__version__']
