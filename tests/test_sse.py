import json

import httpx
import pytest

from nim_proxy.schemas.anthropic import ContentBlockDeltaEvent, MessageStopEvent, TextDelta
from nim_proxy.sse import encode_event, format_event, read_frames


def _response(*chunks: bytes) -> httpx.Response:
    async def body():
        for c in chunks:
            yield c

    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())


async def _collect(resp):
    return [f async for f in read_frames(resp)]


def _frame(obj) -> bytes:
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n".encode()


@pytest.mark.asyncio
async def test_frames_split_across_chunks_and_multibyte_boundary():
    raw = _frame({"choices": [{"delta": {"content": "héllo ✓"}}]}) + _frame({"choices": [{"delta": {"content": "!"}}]})
    # Cut inside the two-byte "é" and inside the second line
    cut = raw.index("é".encode()) + 1
    resp = _response(raw[:cut], raw[cut:cut + 20], raw[cut + 20:])
    frames = await _collect(resp)
    assert [f.choice.delta.content for f in frames] == ["héllo ✓", "!"]


@pytest.mark.asyncio
async def test_done_sentinel_ends_sequence():
    resp = _response(
        _frame({"choices": [{"delta": {"content": "a"}}]}),
        b"data: [DONE]\n\n",
        _frame({"choices": [{"delta": {"content": "never"}}]}),
    )
    frames = await _collect(resp)
    assert [f.choice.delta.content for f in frames] == ["a"]


@pytest.mark.asyncio
async def test_malformed_and_non_data_lines_are_skipped():
    resp = _response(
        b": keep-alive comment\n",
        b"event: ping\n",
        b"data: {not json}\n\n",
        b'data: {"choices": "nope"}\n\n',
        b"data:\n\n",
        _frame({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]}),
    )
    frames = await _collect(resp)
    assert len(frames) == 1
    assert frames[0].choice.delta.content == "ok"
    assert frames[0].choice.finish_reason == "stop"


@pytest.mark.asyncio
async def test_exhaustion_without_done_is_graceful():
    resp = _response(_frame({"choices": [{"delta": {"content": "x"}}]}), b'data: {"choices": [')
    frames = await _collect(resp)
    assert [f.choice.delta.content for f in frames] == ["x"]


@pytest.mark.asyncio
async def test_nulls_and_usage_only_frames_validate():
    resp = _response(
        _frame({"choices": [{"delta": {"content": None, "tool_calls": None}, "finish_reason": None}]}),
        _frame({"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": None}}),
        _frame({"choices": [{"delta": {"reasoning": "think"}}]}),
    )
    first, usage_only, reasoning = await _collect(resp)
    assert first.choice.delta.tool_calls == []
    assert usage_only.choice.delta.content is None
    assert usage_only.usage.prompt_tokens == 3 and usage_only.usage.completion_tokens == 0
    assert reasoning.choice.delta.reasoning_text == "think"


def test_format_event_wire_shape():
    raw = format_event(ContentBlockDeltaEvent(index=2, delta=TextDelta(text="hé")))
    assert raw == (
        b"event: content_block_delta\n"
        + 'data: {"type": "content_block_delta", "index": 2, "delta": {"type": "text_delta", "text": "hé"}}\n\n'.encode()
    )
    assert format_event(MessageStopEvent()) == b'event: message_stop\ndata: {"type": "message_stop"}\n\n'


def test_encode_event():
    assert encode_event("ping", {"type": "ping"}) == b'event: ping\ndata: {"type": "ping"}\n\n'
