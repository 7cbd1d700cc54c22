"""Route modules for the backend."""

from . import dispatch, media, messages, websocket

__all__ = ["dispatch", "media", "messages", "websocket"]
