"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import FieldMapping


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        # Credentials may also be mounted as files in this directory
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Notion API Configuration
    notion_api_token: str = Field("", description="Notion integration token")
    notion_api_token_file: Optional[str] = Field(None, description="Path to file containing the Notion token")
    notion_database_id: str = Field("", description="Notion database holding the events")
    notion_webhook_secret: Optional[str] = Field(
        None,
        description="Notion webhook verification token (overrides the one captured during verification)"
    )
    notion_api_url: str = Field(default="https://api.notion.com/v1", description="Notion API base URL")
    notion_api_version: str = Field(default="2022-06-28", description="Notion-Version header")

    # Google Calendar API Configuration
    google_client_id: str = Field("", description="Google OAuth Client ID")
    google_client_secret: str = Field("", description="Google OAuth Client Secret")
    google_refresh_token: str = Field("", description="Google OAuth refresh token")
    google_client_secret_file: Optional[str] = Field(None, description="Path to file containing Google Client Secret")
    google_refresh_token_file: Optional[str] = Field(None, description="Path to file containing the refresh token")
    google_calendar_id: str = Field(default="primary", description="Google calendar to synchronize")
    google_channel_id: Optional[str] = Field(None, description="Expected X-Goog-Channel-ID for push notifications")
    google_channel_token: Optional[str] = Field(None, description="Expected X-Goog-Channel-Token")
    google_channel_renewal_hours: int = Field(
        default=6, ge=1, le=168, description="Renew the push channel when it expires within this many hours"
    )
    google_renew_interval_minutes: int = Field(
        default=360, ge=0, description="Minutes between channel renewal checks in the server (0 disables)"
    )
    cron_secret: Optional[str] = Field(None, description="Bearer token required by scheduled maintenance endpoints")
    google_scopes: List[str] = Field(
        default=["https://www.googleapis.com/auth/calendar"],
        description="Google API scopes"
    )

    # Application Configuration
    app_name: str = Field(default="notion-gcal-sync", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".notion-gcal-sync",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Sync Configuration
    field_mapping: FieldMapping = Field(
        default_factory=FieldMapping,
        description="Logical field to Notion property mapping"
    )
    request_timeout_seconds: float = Field(default=30, gt=0, le=300, description="Remote call timeout")
    retry_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per remote call")
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, description="Initial retry delay")
    retry_max_delay_seconds: float = Field(default=10.0, ge=0, description="Retry delay ceiling")
    dedup_ttl_seconds: int = Field(default=300, ge=1, description="Notification deduplication window")
    max_log_entries: int = Field(default=500, ge=1, description="Rolling activity log capacity")
    max_historical_days: int = Field(default=365, ge=1, description="Historical sync window ceiling")
    historical_batch_size: int = Field(default=50, ge=1, description="Items per historical batch")
    full_resync_days: int = Field(default=30, ge=1, description="Window fetched when the sync token is invalid")
    manual_sync_days: int = Field(default=30, ge=1, description="Window of a manually triggered sync")

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/notion_gcal_sync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('notion_database_id')
    def normalize_database_id(cls, v):
        """Notion accepts IDs with or without dashes; store them without."""
        return v.strip().replace('-', '')

    def __init__(self, **kwargs):
        """Initialize settings with file-based credential support."""
        for name in ('notion_api_token', 'google_client_secret', 'google_refresh_token'):
            file_key = f'{name}_file'
            if kwargs.get(file_key):
                kwargs[name] = self._read_credential_file(kwargs[file_key])

        super().__init__(**kwargs)

    def _read_credential_file(self, file_path: str) -> str:
        """Read credential from file with proper error handling.

        Args:
            file_path: Path to credential file

        Returns:
            Credential value

        Raises:
            ValueError: If file cannot be read
        """
        try:
            with open(file_path, 'r') as f:
                credential = f.read().strip()
        except FileNotFoundError:
            raise ValueError(f"Credential file not found: {file_path}")
        except PermissionError:
            raise ValueError(f"Permission denied reading credential file: {file_path}")
        if not credential:
            raise ValueError(f"Credential file {file_path} is empty")
        return credential

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of missing fields."""
        missing = []

        if not self.notion_api_token:
            missing.append('NOTION_API_TOKEN')
        if not self.notion_database_id:
            missing.append('NOTION_DATABASE_ID')
        if not self.google_client_id:
            missing.append('GOOGLE_CLIENT_ID')
        if not self.google_client_secret:
            missing.append('GOOGLE_CLIENT_SECRET')
        if not self.google_refresh_token:
            missing.append('GOOGLE_REFRESH_TOKEN')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# notion-gcal-sync configuration
# Copy this file to .env and fill in your actual credentials

# Notion
NOTION_API_TOKEN=secret_your_integration_token
NOTION_DATABASE_ID=your_database_id
# NOTION_WEBHOOK_SECRET=captured_automatically_during_webhook_verification

# Google Calendar
GOOGLE_CLIENT_ID=your_google_client_id_here
GOOGLE_CLIENT_SECRET=your_google_client_secret_here
GOOGLE_REFRESH_TOKEN=your_refresh_token_here
GOOGLE_CALENDAR_ID=primary
# GOOGLE_CHANNEL_ID=set_by_the_google_watch_command
# GOOGLE_CHANNEL_TOKEN=shared_secret_for_push_notifications
# GOOGLE_CHANNEL_RENEWAL_HOURS=6
# GOOGLE_RENEW_INTERVAL_MINUTES=360
# CRON_SECRET=bearer_token_for_the_channel_renewal_endpoint

# Application
DEBUG=false
LOG_LEVEL=INFO

# Sync tuning
REQUEST_TIMEOUT_SECONDS=30
RETRY_ATTEMPTS=3
RETRY_BASE_DELAY_SECONDS=1
RETRY_MAX_DELAY_SECONDS=10
DEDUP_TTL_SECONDS=300
MAX_LOG_ENTRIES=500
MAX_HISTORICAL_DAYS=365
HISTORICAL_BATCH_SIZE=50

# Field mapping (optional fields are disabled by default)
FIELD_MAPPING__TITLE__NOTION_PROPERTY_NAME=Title
FIELD_MAPPING__DATE__NOTION_PROPERTY_NAME=Date
# FIELD_MAPPING__ATTENDEES__ENABLED=true
# FIELD_MAPPING__REMINDERS__ENABLED=true

# Storage (optional)
# DATA_DIR=~/.notion-gcal-sync
# DATABASE_URL=sqlite:///~/.notion-gcal-sync/notion_gcal_sync.db
'''

    with open(path, 'w') as f:
        f.write(example_content)
