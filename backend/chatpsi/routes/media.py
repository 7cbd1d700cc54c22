"""Attachment upload endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, UploadFile

from ..auth import get_current_actor
from ..errors import InvalidRequest
from ..schemas import Attachment
from ..services.uploads import get_uploader


router = APIRouter(prefix="/api/media", tags=["media"])


@router.post("")
async def upload_attachment(file: UploadFile, actor_id: str = Depends(get_current_actor)) -> Attachment:
    uploader = get_uploader()
    filename = file.filename or "upload"
    # Read one byte past the limit so oversized files are rejected without buffering them whole.
    content = await file.read(uploader.max_bytes + 1)
    if not content:
        raise InvalidRequest("Uploaded file is empty")
    return await uploader.upload(actor_id, filename, file.content_type, content)
