"""Client-side chat controller, realtime transports and audio recorder."""

from .recorder import AudioFile, AudioRecorder, MediaStream, Microphone, RecordedAudio, RecordingState
from .session import ChatMessage, ChatSession, ChatView, ConnectionState, NullView
from .timers import TimerSlot
from .transport import (
    ChatBackend,
    HttpChatBackend,
    LocalChatBackend,
    LocalRealtimeTransport,
    RealtimeTransport,
    WebSocketRealtimeTransport,
)

__all__ = [
    "AudioFile",
    "AudioRecorder",
    "MediaStream",
    "Microphone",
    "RecordedAudio",
    "RecordingState",
    "ChatMessage",
    "ChatSession",
    "ChatView",
    "ConnectionState",
    "NullView",
    "TimerSlot",
    "ChatBackend",
    "HttpChatBackend",
    "LocalChatBackend",
    "LocalRealtimeTransport",
    "RealtimeTransport",
    "WebSocketRealtimeTransport",
]
