"""Storage layer exports."""

from .database import DatabaseManager, get_db_manager, shutdown_database
from .models import Message, Profile, WebhookEvent

__all__ = [
    "DatabaseManager",
    "get_db_manager",
    "shutdown_database",
    "Message",
    "Profile",
    "WebhookEvent",
]
