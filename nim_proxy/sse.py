"""Server-Sent-Events plumbing: upstream frame reader and downstream event encoder."""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Protocol

from pydantic import BaseModel, ValidationError

from .config import settings
from .schemas.openai import ChatCompletionChunk

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class LineSource(Protocol):
    def aiter_lines(self) -> AsyncIterator[str]:
        ...


async def read_frames(source: LineSource) -> AsyncIterator[ChatCompletionChunk]:
    """Yield one parsed chunk per upstream ``data:`` frame.

    ``source`` is normally an ``httpx.Response`` opened with ``stream=True``;
    its line iterator decodes incrementally and keeps an incomplete trailing
    line until the next read, so partial characters and partial lines never
    reach the parser. Ends on ``[DONE]`` or when the body is exhausted.
    """
    async for line in source.aiter_lines():
        if not line.startswith(DATA_PREFIX):
            continue
        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            continue
        if payload == DONE_SENTINEL:
            return
        try:
            raw = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("skipping unparseable upstream frame: %.200s", payload)
            continue
        try:
            yield ChatCompletionChunk.model_validate(raw)
        except ValidationError as e:
            logger.warning("skipping malformed upstream frame (%s): %.200s", e.error_count(), payload)


def encode_event(event: str, data: Any) -> bytes:
    return f"event: {event}\n".encode() + f"data: {json.dumps(data, ensure_ascii=False)}\n\n".encode()


def format_event(event: BaseModel) -> bytes:
    """Serialize a typed stream event; the SSE event name is its ``type``."""
    data = event.model_dump()
    name = data.get("type") or "message"
    if settings.debug_sse:
        logger.debug("[sse] %s %s", name, json.dumps(data, ensure_ascii=False))
    return encode_event(name, data)
