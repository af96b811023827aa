from __future__ import annotations

import json
import re
import uuid
from typing import Any, Dict, List, Optional

from .config import settings
from .splitter import split_think_tags


def _to_text(content, sep: str = "") -> str:
    """Collapse Anthropic content (string or list of text blocks) into a plain string."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    # list of blocks
    parts: List[str] = []
    for block in content:
        if isinstance(block, dict):
            if block.get("type") == "text":
                parts.append(block.get("text", ""))
        else:
            # pydantic model
            t = getattr(block, "type", None)
            if t == "text":
                parts.append(getattr(block, "text", ""))
    return sep.join(parts)


def _tool_result_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for c in content:
        if isinstance(c, dict) and c.get("type") == "text":
            parts.append(c.get("text", ""))
        else:
            parts.append(json_dumps_safe(c))
    return "\n".join(parts)


def _image_part(block: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # {type: 'image', source: {type: 'base64', media_type, data}} or {type: 'image', source: {type: 'url', url}}
    src = block.get("source") or {}
    stype = (src.get("type") or "").lower()
    url = None
    if stype == "base64":
        data = src.get("data") or ""
        if data:
            url = f"data:{src.get('media_type') or 'image/png'};base64,{data}"
    elif stype == "url":
        url = src.get("url")
    if not url:
        return None
    return {"type": "image_url", "image_url": {"url": url}}


def _convert_message(role: str, content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{"role": role, "content": content}]

    text_acc: List[str] = []
    image_items: List[Dict[str, Any]] = []
    tool_calls: List[Dict[str, Any]] = []
    tool_results: List[Dict[str, Any]] = []
    for block in content or []:
        btype = block.get("type")
        if btype == "text":
            text_acc.append(block.get("text", ""))
        elif btype == "image":
            part = _image_part(block)
            if part:
                image_items.append(part)
        elif btype == "tool_use" and role == "assistant":
            tool_calls.append(
                {
                    "id": block.get("id") or f"call_{uuid.uuid4().hex}",
                    "type": "function",
                    "function": {
                        "name": block.get("name", ""),
                        "arguments": json_dumps_safe(block.get("input", {})),
                    },
                }
            )
        elif btype == "tool_result":
            tool_results.append(
                {
                    "role": "tool",
                    "tool_call_id": block.get("tool_use_id"),
                    "content": _tool_result_text(block.get("content")),
                }
            )
        # thinking / redacted_thinking history is not replayed upstream

    text_content = "".join(text_acc)
    if role == "assistant":
        msg: Dict[str, Any] = {"role": "assistant", "content": text_content or None}
        if tool_calls:
            msg["tool_calls"] = tool_calls
        elif msg["content"] is None:
            msg["content"] = ""
        return [msg]

    # Tool results must directly follow the assistant turn that requested them
    out: List[Dict[str, Any]] = list(tool_results)
    if image_items:
        parts: List[Dict[str, Any]] = []
        if text_content:
            parts.append({"type": "text", "text": text_content})
        parts.extend(image_items)
        out.append({"role": role, "content": parts})
    elif text_content or not tool_results:
        out.append({"role": role, "content": text_content})
    return out


def _tool_choice(choice: Optional[Dict[str, Any]]) -> Any:
    if not choice:
        return None
    ctype = choice.get("type")
    if ctype == "auto":
        return "auto"
    if ctype == "any":
        return "required"
    if ctype == "none":
        return "none"
    if ctype == "tool" and choice.get("name"):
        return {"type": "function", "function": {"name": choice["name"]}}
    return None


def anthropic_to_openai_payload(body: Dict[str, Any]) -> Dict[str, Any]:
    """Map an Anthropic v1/messages body to an OpenAI Chat Completions payload."""
    oai_messages: List[Dict[str, Any]] = []
    system_text = _to_text(body.get("system"), sep="\n")
    if system_text:
        oai_messages.append({"role": "system", "content": system_text})
    for m in body.get("messages", []):
        role = m.get("role")
        if role not in ("user", "assistant"):
            role = "user"
        oai_messages.extend(_convert_message(role, m.get("content")))

    payload: Dict[str, Any] = {
        "model": settings.map_model(body.get("model")),
        "messages": oai_messages,
        "max_tokens": body.get("max_tokens"),
        "stream": bool(body.get("stream")),
    }
    # Optional params
    if body.get("temperature") is not None:
        payload["temperature"] = body.get("temperature")
    if body.get("top_p") is not None:
        payload["top_p"] = body.get("top_p")
    if body.get("stop_sequences"):
        payload["stop"] = body.get("stop_sequences")

    tools = body.get("tools")
    if tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t.get("name"),
                    "description": t.get("description"),
                    "parameters": t.get("input_schema", {}),
                },
            }
            for t in tools
        ]
        choice = _tool_choice(body.get("tool_choice"))
        if choice is not None:
            payload["tool_choice"] = choice
    return payload


def openai_to_anthropic_response(data: Dict[str, Any], requested_model: Optional[str] = None) -> Dict[str, Any]:
    """Map a non-streaming OpenAI chat completion to an Anthropic message."""
    choices = data.get("choices") or [{}]
    choice = choices[0] or {}
    message = choice.get("message") or {}

    content: List[Dict[str, Any]] = []
    thinking_parts: List[str] = []
    if message.get("reasoning_content") or message.get("reasoning"):
        thinking_parts.append(message.get("reasoning_content") or message.get("reasoning"))
    inline_thinking, visible = split_think_tags(
        message.get("content") or "", settings.think_open_tag, settings.think_close_tag
    )
    if inline_thinking:
        thinking_parts.append(inline_thinking)
    if thinking_parts:
        content.append({"type": "thinking", "thinking": "".join(thinking_parts)})
    if visible:
        content.append({"type": "text", "text": visible})

    tool_calls = message.get("tool_calls") or []
    for tc in tool_calls:
        fn = tc.get("function") or {}
        args = json_loads_safe(fn.get("arguments") or "{}")
        content.append(
            {
                "type": "tool_use",
                "id": tc.get("id") or f"call_{uuid.uuid4().hex}",
                "name": fn.get("name") or "",
                "input": args if isinstance(args, dict) else {},
            }
        )

    usage = data.get("usage") or {}
    return {
        "id": data.get("id") or f"msg_{uuid.uuid4().hex}",
        "type": "message",
        "role": "assistant",
        "content": content or [{"type": "text", "text": ""}],
        "model": requested_model or data.get("model"),
        "stop_reason": derive_stop_reason(choice.get("finish_reason"), bool(tool_calls)),
        "stop_sequence": None,
        "usage": {
            "input_tokens": int(usage.get("prompt_tokens") or 0),
            "output_tokens": int(usage.get("completion_tokens") or 0),
        },
    }


def map_finish_reason(fr: Optional[str]) -> Optional[str]:
    if fr is None:
        return None
    if fr == "length":
        return "max_tokens"
    if fr in ("tool_calls", "function_call"):
        return "tool_use"
    # stop, content_filter and anything unknown
    return "end_turn"


def derive_stop_reason(finish_reason: Optional[str], has_tool_calls: bool) -> str:
    """Final Anthropic stop_reason; any registered tool call wins over the upstream reason."""
    if has_tool_calls:
        return "tool_use"
    return map_finish_reason(finish_reason) or "end_turn"


def json_dumps_safe(obj: Any) -> str:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except Exception:
        return "{}"


def json_loads_safe(s: Any) -> Any:
    try:
        if isinstance(s, str):
            return json.loads(s)
        return s
    except Exception:
        if isinstance(s, str):
            try:
                repaired = _repair_invalid_json_escapes(s)
                if repaired != s:
                    return json.loads(repaired)
            except Exception:
                ...
        return {}


_INVALID_ESCAPE_RE = re.compile(r"\\(?![\\\"/bfnrtu])")


def _repair_invalid_json_escapes(raw: str) -> str:
    """Best-effort fix for JSON strings containing invalid escape sequences."""
    return _INVALID_ESCAPE_RE.sub("", raw)
