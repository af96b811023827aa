"""Transcode an OpenAI chat-completion SSE stream into an Anthropic message stream."""
from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional

import httpx
from fastapi.responses import StreamingResponse

from .blocks import ContentBlockManager
from .config import settings
from .schemas.anthropic import (
    DeltaUsage,
    ErrorBody,
    ErrorResponse,
    MessageDelta,
    MessageDeltaEvent,
    MessageResponse,
    MessageStartEvent,
    MessageStopEvent,
    StreamEvent,
)
from .schemas.openai import ChatCompletionChunk
from .splitter import Channel, ThinkTagSplitter
from .sse import format_event, read_frames
from .tools import ToolCallAggregator

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class StreamState(str, Enum):
    STREAMING = "streaming"
    CLOSING = "closing"
    CLOSED = "closed"


class StreamTranscoder:
    """Per-request state machine: Streaming -> Closing -> Closed.

    One instance handles exactly one upstream response. Each frame is fully
    processed, and every event it produces is handed downstream, before the
    next frame is read.
    """

    def __init__(
        self,
        model: str,
        message_id: Optional[str] = None,
        open_tag: Optional[str] = None,
        close_tag: Optional[str] = None,
    ) -> None:
        self.model = model
        self.message = MessageResponse(id=message_id or f"msg_{uuid.uuid4().hex}", model=model)
        self.state = StreamState.STREAMING
        self.blocks = ContentBlockManager(self.message)
        self.tools = ToolCallAggregator(self.blocks)
        self.splitter = ThinkTagSplitter(open_tag or settings.think_open_tag, close_tag or settings.think_close_tag)
        self.finish_reason: Optional[str] = None
        self.frames = 0
        self.client_disconnected = False

    def start(self) -> List[StreamEvent]:
        # Snapshot: content and usage stay empty on the wire
        return [MessageStartEvent(message=self.message.model_copy(deep=True))]

    def _route_segments(self, segments) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for channel, text in segments:
            if channel is Channel.THINKING:
                events.extend(self.blocks.thinking(text))
            else:
                events.extend(self.blocks.text(text))
        return events

    def process(self, chunk: ChatCompletionChunk) -> List[StreamEvent]:
        """Apply one upstream frame; may move the stream to Closing."""
        if self.state is not StreamState.STREAMING:
            return []
        self.frames += 1
        choice = chunk.choice
        delta = choice.delta
        events: List[StreamEvent] = []

        if delta.reasoning_text:
            events.extend(self.blocks.thinking(delta.reasoning_text))
        if delta.content:
            events.extend(self._route_segments(self.splitter.feed(delta.content)))
        if delta.tool_calls:
            # Text held back by the splitter belongs before the tool block
            events.extend(self._route_segments(self.splitter.flush()))
            for fragment in delta.tool_calls:
                events.extend(self.tools.feed(fragment))

        if chunk.usage is not None:
            # Upstream reports running totals
            self.message.usage.input_tokens = chunk.usage.prompt_tokens
            self.message.usage.output_tokens = chunk.usage.completion_tokens

        if choice.finish_reason:
            self.finish_reason = choice.finish_reason
            self.state = StreamState.CLOSING
        return events

    def close(self) -> List[StreamEvent]:
        """Flush, close every open block and finish the message. Runs once."""
        if self.state is StreamState.CLOSED:
            return []
        self.state = StreamState.CLOSING
        events = self._route_segments(self.splitter.flush())
        events.extend(self.blocks.close_all())
        self.tools.finalize()
        self.message.stop_reason = self.tools.stop_reason(self.finish_reason)
        events.append(
            MessageDeltaEvent(
                delta=MessageDelta(stop_reason=self.message.stop_reason),
                usage=DeltaUsage(output_tokens=self.message.usage.output_tokens),
            )
        )
        events.append(MessageStopEvent())
        self.state = StreamState.CLOSED
        return events

    async def transcode(
        self,
        frames: AsyncIterator[ChatCompletionChunk],
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[bytes]:
        """Yield downstream SSE bytes for the upstream ``frames``.

        ``message_start`` goes out before the first upstream read. Read errors
        and unexpected failures end the stream with a best-effort ``error``
        event; a client disconnect ends it silently.
        """
        for event in self.start():
            yield format_event(event)
        try:
            async for chunk in frames:
                if is_disconnected is not None and await is_disconnected():
                    self.client_disconnected = True
                    logger.info("client disconnected, dropping upstream stream for %s", self.message.id)
                    return
                for event in self.process(chunk):
                    yield format_event(event)
                if self.state is not StreamState.STREAMING:
                    break
            for event in self.close():
                yield format_event(event)
        except Exception as e:
            if isinstance(e, httpx.HTTPError):
                logger.error("upstream read failed for %s: %s: %s", self.message.id, type(e).__name__, e)
            else:
                logger.exception("stream processing failed for %s", self.message.id)
            self.state = StreamState.CLOSED
            yield format_event(ErrorResponse(error=ErrorBody(type="api_error", message=str(e) or type(e).__name__)))


def stream_response(
    upstream: httpx.Response,
    model: str,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    on_finish: Optional[Callable[[StreamTranscoder], None]] = None,
) -> StreamingResponse:
    """Wrap an open upstream SSE response as an Anthropic SSE response.

    The upstream response is always closed when the body generator ends, also
    when the client goes away mid-stream.
    """
    transcoder = StreamTranscoder(model)

    async def body() -> AsyncIterator[bytes]:
        try:
            async for data in transcoder.transcode(read_frames(upstream), is_disconnected):
                yield data
        finally:
            await upstream.aclose()
            logger.debug(
                "stream %s finished: state=%s frames=%d stop_reason=%s",
                transcoder.message.id,
                transcoder.state.value,
                transcoder.frames,
                transcoder.message.stop_reason,
            )
            if on_finish is not None:
                on_finish(transcoder)

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)
