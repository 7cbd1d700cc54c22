"""Wire models shared by the gateway routes and the chat client."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .utils import as_utc


class MessageKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"


MEDIA_KINDS = (MessageKind.AUDIO, MessageKind.IMAGE, MessageKind.VIDEO, MessageKind.DOCUMENT)


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class DeliveryStatus(str, Enum):
    """Client-side lifecycle of an outgoing message. Never persisted."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class MessageOut(BaseModel):
    """A persisted message as served by the store and pushed by the notifier."""

    model_config = ConfigDict(frozen=True)

    id: str
    thread_id: str
    user_id: str
    sender: Sender
    content: str
    type: MessageKind = MessageKind.TEXT
    media_url: Optional[str] = None
    client_id: Optional[str] = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Attachment(BaseModel):
    """An uploaded object ready to be referenced by a send."""

    url: str
    type: MessageKind
    name: str


class TextDispatch(BaseModel):
    kind: Literal["text"] = "text"
    text: str = Field(min_length=1)
    client_id: Optional[str] = Field(default=None, max_length=64)

    @field_validator("text")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("text must not be blank")
        return value


class MediaDispatch(BaseModel):
    kind: Literal["audio", "image", "video", "document"]
    media_url: str = Field(min_length=1)
    file_name: Optional[str] = None
    text: Optional[str] = None
    client_id: Optional[str] = Field(default=None, max_length=64)


DispatchRequest = Annotated[Union[TextDispatch, MediaDispatch], Field(discriminator="kind")]


def dispatch_kind(request: Union[TextDispatch, MediaDispatch]) -> MessageKind:
    return MessageKind(request.kind)


def build_dispatch_request(
    text: Optional[str] = None,
    attachment: Optional[Attachment] = None,
    client_id: Optional[str] = None,
) -> Union[TextDispatch, MediaDispatch]:
    """Build the outbound request for either a text message or an attachment."""

    if attachment is None:
        return TextDispatch(text=text or "", client_id=client_id)
    if attachment.type is MessageKind.TEXT:
        raise ValueError("attachments cannot be of kind text")
    return MediaDispatch(
        kind=attachment.type.value,
        media_url=attachment.url,
        file_name=attachment.name,
        text=text or None,
        client_id=client_id,
    )


class DispatchReceipt(BaseModel):
    """Gateway answer to a send.

    ``delivery`` is ``sync`` when the processor replied inline (and
    ``assistant_message`` holds the persisted reply) or ``async`` when the reply
    will arrive later through the callback endpoint.
    """

    success: bool = True
    delivery: Literal["sync", "async"]
    user_message: MessageOut
    assistant_message: Optional[MessageOut] = None
    response: Optional[str] = None


class ProcessorCallback(BaseModel):
    """Asynchronous reply delivered by the processor to the callback endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="UserId", min_length=1)
    resposta: Optional[str] = None
    response: Optional[str] = None
    openai_thread_id: Optional[str] = None
    client_id: Optional[str] = None

    @property
    def reply_text(self) -> Optional[str]:
        text = self.resposta if self.resposta is not None else self.response
        if text is None or not text.strip():
            return None
        return text


class ProfileOut(BaseModel):
    user_id: str
    nickname: Optional[str] = None
    subscription_active: bool = False
