from datetime import datetime, timezone
from typing import Any

SENSITIVE_KEYS = ("password", "token", "key", "secret", "auth", "session")
REDACTED = "[REDACTED]"


def redact(data: Any) -> Any:
    """Return a copy of ``data`` safe to log: values under sensitive keys are masked."""

    if isinstance(data, dict):
        cleaned: dict[Any, Any] = {}
        for key, value in data.items():
            if isinstance(key, str) and any(marker in key.lower() for marker in SENSITIVE_KEYS):
                cleaned[key] = REDACTED
            else:
                cleaned[key] = redact(value)
        return cleaned
    if isinstance(data, list):
        return [redact(item) for item in data]
    return data


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["redact", "utcnow", "as_utc"]
