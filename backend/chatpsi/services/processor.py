"""Client for the external AI processor webhook."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..config import get_settings
from ..schemas import MessageKind
from ..utils import redact

logger = logging.getLogger(__name__)

# One payload field per kind; every kind must be listed.
PAYLOAD_FIELDS: dict[MessageKind, str] = {
    MessageKind.TEXT: "texto",
    MessageKind.AUDIO: "audio",
    MessageKind.IMAGE: "imagem",
    MessageKind.VIDEO: "video",
    MessageKind.DOCUMENT: "documento",
}


def build_processor_payload(
    actor_id: str,
    kind: MessageKind,
    value: str,
    *,
    nickname: Optional[str] = None,
    openai_thread_id: Optional[str] = None,
    client_id: Optional[str] = None,
) -> dict[str, Any]:
    """Normalized webhook body with exactly one populated content field."""

    payload: dict[str, Any] = {
        "UserId": actor_id,
        "threadId": actor_id,
        "tipodemensagem": kind.value,
    }
    for payload_kind, field_name in PAYLOAD_FIELDS.items():
        payload[field_name] = value if payload_kind is kind else None
    if nickname:
        payload["nickname"] = nickname
    if openai_thread_id:
        payload["openai_thread_id"] = openai_thread_id
    if client_id:
        payload["client_id"] = client_id
    return payload


class ProcessorError(Exception):
    """Network failure, timeout or non-2xx answer from the processor."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ProcessorReply:
    status_code: int
    text: Optional[str]
    openai_thread_id: Optional[str] = None


class ProcessorClient:
    """Posts normalized payloads to the configured processor URL."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self._url = settings.processor.url
        self._secret = settings.processor.secret
        self._client = client or httpx.AsyncClient(timeout=settings.processor.timeout_seconds, follow_redirects=True)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers["Authorization"] = f"Bearer {self._secret}"
        return headers

    async def send(self, payload: dict[str, Any]) -> ProcessorReply:
        logger.debug("Processor request payload: %s", redact(payload))
        try:
            response = await self._client.post(self._url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise ProcessorError(f"Processor request timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise ProcessorError(f"Processor request failed: {exc}") from exc

        if not response.is_success:
            raise ProcessorError(
                f"Processor failed with status {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        return ProcessorReply(status_code=response.status_code, **self._parse_reply(response))

    @staticmethod
    def _parse_reply(response: httpx.Response) -> dict[str, Optional[str]]:
        if not response.content.strip():
            return {"text": None}
        try:
            body = response.json()
        except ValueError:
            logger.debug("Processor answered with an undecodable body; treating as acknowledgement")
            return {"text": None}
        # Some processor flows wrap the body in a single-item list.
        if isinstance(body, list) and len(body) == 1:
            body = body[0]
        if not isinstance(body, dict):
            return {"text": None}
        text = body.get("response")
        if not isinstance(text, str) or not text.strip():
            text = None
        thread = body.get("openai_thread_id")
        return {"text": text, "openai_thread_id": thread if isinstance(thread, str) else None}


_processor_client: ProcessorClient | None = None


async def get_processor_client() -> ProcessorClient:
    global _processor_client
    if _processor_client is None:
        _processor_client = ProcessorClient()
    return _processor_client


async def shutdown_processor_client() -> None:
    global _processor_client
    if _processor_client is not None:
        await _processor_client.close()
        _processor_client = None
