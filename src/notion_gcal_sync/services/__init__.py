"""Notion and Google Calendar service interfaces and implementations."""

from .base import BaseService, BaseNotionService, BaseCalendarService
from .google import GoogleCalendarService
from .notion import NotionService

__all__ = [
    'BaseService',
    'BaseNotionService',
    'BaseCalendarService',
    'GoogleCalendarService',
    'NotionService',
]
