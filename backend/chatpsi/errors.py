"""Error taxonomy shared by the gateway and the chat client.

Every error carries a stable code so the HTTP envelope produced by the
gateway can be turned back into the same exception type on the client.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Stable error codes used in the ``{"error": {...}}`` envelope."""

    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_NOT_FOUND = "E_NOT_FOUND"
    E_ENTITLEMENT_REQUIRED = "E_ENTITLEMENT_REQUIRED"
    E_REPLY_OUTSTANDING = "E_REPLY_OUTSTANDING"
    E_UPSTREAM_DISPATCH_FAILED = "E_UPSTREAM_DISPATCH_FAILED"
    E_PERSISTENCE_FAILED = "E_PERSISTENCE_FAILED"
    E_FILE_TOO_LARGE = "E_FILE_TOO_LARGE"
    E_UNSUPPORTED_FORMAT = "E_UNSUPPORTED_FORMAT"
    E_PERMISSION_DENIED = "E_PERMISSION_DENIED"
    E_CONNECTION_LOST = "E_CONNECTION_LOST"
    E_INTERNAL = "E_INTERNAL"


ERROR_CODE_TO_STATUS: dict[ErrorCode, int] = {
    ErrorCode.E_UNAUTHENTICATED: 401,
    ErrorCode.E_INVALID_REQUEST: 400,
    ErrorCode.E_NOT_FOUND: 404,
    ErrorCode.E_ENTITLEMENT_REQUIRED: 403,
    ErrorCode.E_REPLY_OUTSTANDING: 409,
    ErrorCode.E_UPSTREAM_DISPATCH_FAILED: 502,
    ErrorCode.E_PERSISTENCE_FAILED: 500,
    ErrorCode.E_FILE_TOO_LARGE: 413,
    ErrorCode.E_UNSUPPORTED_FORMAT: 415,
    ErrorCode.E_PERMISSION_DENIED: 403,
    ErrorCode.E_CONNECTION_LOST: 503,
    ErrorCode.E_INTERNAL: 500,
}


class ChatError(Exception):
    """Base exception for every expected failure.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
        details: Extra machine-readable context, included in the envelope
    """

    code: ErrorCode = ErrorCode.E_INTERNAL
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, *, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        self.status_code = ERROR_CODE_TO_STATUS.get(self.code, 500)
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"error": error}


class Unauthenticated(ChatError):
    code = ErrorCode.E_UNAUTHENTICATED
    default_message = "Authentication required"


class InvalidRequest(ChatError):
    code = ErrorCode.E_INVALID_REQUEST
    default_message = "Invalid request"


class NotFound(ChatError):
    code = ErrorCode.E_NOT_FOUND
    default_message = "Not found"


class EntitlementRequired(ChatError):
    code = ErrorCode.E_ENTITLEMENT_REQUIRED
    default_message = "An active subscription is required to send messages"


class ReplyOutstanding(ChatError):
    code = ErrorCode.E_REPLY_OUTSTANDING
    default_message = "Wait for the current reply before sending another message"


class UpstreamDispatchFailed(ChatError):
    """The processor could not be reached or answered with a non-2xx status.

    The user's message is already persisted when this is raised; its id is in
    ``details["message_id"]`` when known.
    """

    code = ErrorCode.E_UPSTREAM_DISPATCH_FAILED
    default_message = "Your message was saved but the assistant is unavailable. Try again shortly"


class PersistenceFailed(ChatError):
    code = ErrorCode.E_PERSISTENCE_FAILED
    default_message = "Your message could not be saved. Try again"


class FileTooLarge(ChatError):
    code = ErrorCode.E_FILE_TOO_LARGE
    default_message = "File is too large. The limit is 25MB"


class UnsupportedFormat(ChatError):
    code = ErrorCode.E_UNSUPPORTED_FORMAT
    default_message = "Unsupported file format"


class PermissionDenied(ChatError):
    code = ErrorCode.E_PERMISSION_DENIED
    default_message = "Microphone access was denied. Check your browser settings"


class ConnectionLost(ChatError):
    code = ErrorCode.E_CONNECTION_LOST
    default_message = "Realtime connection lost. Reconnecting"


_ERRORS_BY_CODE: dict[ErrorCode, type[ChatError]] = {
    cls.code: cls
    for cls in (
        Unauthenticated,
        InvalidRequest,
        NotFound,
        EntitlementRequired,
        ReplyOutstanding,
        UpstreamDispatchFailed,
        PersistenceFailed,
        FileTooLarge,
        UnsupportedFormat,
        PermissionDenied,
        ConnectionLost,
    )
}


def error_from_payload(payload: Any, status_code: int = 500) -> ChatError:
    """Rebuild a ``ChatError`` from an error envelope returned by the gateway."""

    error = payload.get("error") if isinstance(payload, dict) else None
    if not isinstance(error, dict):
        exc = ChatError(f"Request failed with status {status_code}")
        exc.status_code = status_code
        return exc

    try:
        code = ErrorCode(error.get("code"))
    except ValueError:
        code = ErrorCode.E_INTERNAL
    cls = _ERRORS_BY_CODE.get(code, ChatError)
    details = error.get("details") if isinstance(error.get("details"), dict) else None
    return cls(error.get("message"), details=details)
