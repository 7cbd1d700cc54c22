"""Attachment uploads: classification, validation and object storage."""

from __future__ import annotations

import logging
import time
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol

import aiofiles

from ..config import get_settings
from ..errors import FileTooLarge, UnsupportedFormat
from ..schemas import Attachment, MessageKind

logger = logging.getLogger(__name__)

# Checked before the MIME type: some platforms report these as
# application/octet-stream or with no type at all.
EXTENSION_KINDS: dict[str, MessageKind] = {
    "heic": MessageKind.IMAGE,
    "heif": MessageKind.IMAGE,
    "mp3": MessageKind.AUDIO,
    "m4a": MessageKind.AUDIO,
    "ogg": MessageKind.AUDIO,
    "wav": MessageKind.AUDIO,
}

MIME_PREFIX_KINDS: tuple[tuple[str, MessageKind], ...] = (
    ("audio/", MessageKind.AUDIO),
    ("application/ogg", MessageKind.AUDIO),
    ("image/", MessageKind.IMAGE),
    ("video/", MessageKind.VIDEO),
)

AUDIO_MIME_TYPES = frozenset(
    {
        "audio/mpeg",
        "audio/mp3",
        "audio/ogg",
        "application/ogg",
        "audio/wav",
        "audio/x-wav",
        "audio/mp4",
        "audio/x-m4a",
        "audio/webm",
        "audio/webm;codecs=opus",
    }
)
AUDIO_EXTENSIONS = frozenset({"mp3", "ogg", "wav", "m4a", "webm"})

IMAGE_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
    }
)
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "webp", "heic", "heif"})

ALLOW_LISTS: dict[MessageKind, tuple[frozenset[str], frozenset[str]]] = {
    MessageKind.AUDIO: (AUDIO_MIME_TYPES, AUDIO_EXTENSIONS),
    MessageKind.IMAGE: (IMAGE_MIME_TYPES, IMAGE_EXTENSIONS),
}


def file_extension(filename: str) -> str:
    return PurePosixPath(filename or "").suffix.lstrip(".").lower()


def _normalize_mime(content_type: Optional[str]) -> str:
    return (content_type or "").replace(" ", "").lower()


def classify_file(filename: str, content_type: Optional[str]) -> MessageKind:
    """Map a file to a message kind: extension overrides, then MIME prefix, then document."""

    override = EXTENSION_KINDS.get(file_extension(filename))
    if override is not None:
        return override

    mime = _normalize_mime(content_type)
    for prefix, kind in MIME_PREFIX_KINDS:
        if mime.startswith(prefix):
            return kind
    return MessageKind.DOCUMENT


def validate_format(kind: MessageKind, filename: str, content_type: Optional[str]) -> None:
    allowed = ALLOW_LISTS.get(kind)
    if allowed is None:
        return
    mime_types, extensions = allowed
    mime = _normalize_mime(content_type)
    if mime in mime_types or mime.split(";", 1)[0] in mime_types:
        return
    if file_extension(filename) in extensions:
        return
    if kind is MessageKind.AUDIO:
        raise UnsupportedFormat("Unsupported audio format. Use MP3, OGG, WAV, M4A or WebM")
    raise UnsupportedFormat("Unsupported image format. Use JPEG, PNG, GIF, WebP or HEIC")


class ObjectStorage(Protocol):
    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store ``data`` under ``path`` and return its public URL."""
        ...


class LocalObjectStorage:
    """Bucket-style storage on the local filesystem, served by the app at ``/media``."""

    def __init__(self, root: Path, bucket: str, public_base_url: str) -> None:
        self._bucket_root = root / bucket
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")

    async def put(self, path: str, data: bytes, content_type: Optional[str] = None) -> str:
        relative = PurePosixPath(path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Invalid object path: {path}")
        destination = self._bucket_root.joinpath(*relative.parts)
        destination.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(destination, "wb") as f:
            await f.write(data)
        logger.debug("Stored %d bytes at %s (%s)", len(data), destination, content_type or "unknown type")
        return f"{self._public_base_url}/{self._bucket}/{relative.as_posix()}"


class AttachmentUploader:
    """Validates and stores attachments under ``<actor_id>/<timestamp>.<ext>``."""

    def __init__(self, storage: ObjectStorage, max_bytes: int) -> None:
        self._storage = storage
        self._max_bytes = max_bytes
        self._last_stamp = 0

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def _next_stamp(self) -> int:
        stamp = time.time_ns() // 1_000_000
        if stamp <= self._last_stamp:
            stamp = self._last_stamp + 1
        self._last_stamp = stamp
        return stamp

    def object_path(self, actor_id: str, filename: str) -> str:
        extension = file_extension(filename) or "bin"
        return f"{actor_id}/{self._next_stamp()}.{extension}"

    async def upload(self, actor_id: str, filename: str, content_type: Optional[str], data: bytes) -> Attachment:
        if len(data) > self._max_bytes:
            limit_mb = self._max_bytes // (1024 * 1024)
            raise FileTooLarge(f"File is too large. The limit is {limit_mb}MB")

        kind = classify_file(filename, content_type)
        validate_format(kind, filename, content_type)

        url = await self._storage.put(self.object_path(actor_id, filename), data, content_type)
        logger.info("Uploaded %s attachment for %s", kind.value, actor_id)
        return Attachment(url=url, type=kind, name=filename)


_uploader: AttachmentUploader | None = None


def get_uploader() -> AttachmentUploader:
    global _uploader
    if _uploader is None:
        settings = get_settings()
        storage = LocalObjectStorage(settings.media_root, settings.uploads.bucket, settings.uploads.public_base_url)
        _uploader = AttachmentUploader(storage, settings.uploads.max_bytes)
    return _uploader


def reset_uploader() -> None:
    global _uploader
    _uploader = None
