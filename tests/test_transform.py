import json

from nim_proxy import transform
from nim_proxy.transform import (
    anthropic_to_openai_payload,
    json_loads_safe,
    map_finish_reason,
    openai_to_anthropic_response,
)


def test_text_only_request_mapping():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 32,
        "system": "Be brief.",
        "messages": [
            {"role": "user", "content": [{"type": "text", "text": "Hello"}]}
        ],
        "temperature": 0.1,
        "top_p": 0.9,
        "stop_sequences": ["\n\n"],
        "stream": True,
    }
    out = anthropic_to_openai_payload(req)
    assert out["model"] == "claude-3-sonnet"
    assert out["max_tokens"] == 32
    assert out["stream"] is True
    assert out["messages"][0] == {"role": "system", "content": "Be brief."}
    assert out["messages"][1] == {"role": "user", "content": "Hello"}
    assert out["temperature"] == 0.1
    assert out["top_p"] == 0.9
    assert out["stop"] == ["\n\n"]
    assert "tools" not in out


def test_system_blocks_joined_with_newline():
    out = anthropic_to_openai_payload(
        {
            "model": "m",
            "max_tokens": 1,
            "system": [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}],
            "messages": [{"role": "user", "content": "hi"}],
        }
    )
    assert out["messages"][0] == {"role": "system", "content": "one\ntwo"}


def test_model_map_applied(monkeypatch):
    monkeypatch.setattr(transform.settings, "model_map", {"claude-3-sonnet": "meta/llama-3.1-70b-instruct"})
    out = anthropic_to_openai_payload({"model": "claude-3-sonnet", "max_tokens": 1, "messages": []})
    assert out["model"] == "meta/llama-3.1-70b-instruct"


def test_tools_request_mapping():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 16,
        "tools": [
            {
                "name": "get_weather",
                "description": "Get weather",
                "input_schema": {
                    "type": "object",
                    "properties": {"city": {"type": "string"}},
                    "required": ["city"],
                },
            }
        ],
        "tool_choice": {"type": "any"},
        "messages": [
            {"role": "user", "content": "What's the weather?"},
            {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "need a tool"},
                    {
                        "type": "tool_use",
                        "id": "toolu_1",
                        "name": "get_weather",
                        "input": {"city": "SF"},
                    },
                ],
            },
            {
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": "toolu_1",
                        "content": [{"type": "text", "text": "{\"temp\":20}"}],
                    },
                    {"type": "text", "text": "Thanks"},
                ],
            },
        ],
    }
    out = anthropic_to_openai_payload(req)
    msgs = out["messages"]
    assert msgs[0] == {"role": "user", "content": "What's the weather?"}
    assert msgs[1]["role"] == "assistant" and msgs[1]["content"] is None
    call = msgs[1]["tool_calls"][0]
    assert call["id"] == "toolu_1"
    assert call["function"]["name"] == "get_weather"
    assert json.loads(call["function"]["arguments"]) == {"city": "SF"}
    assert msgs[2] == {"role": "tool", "tool_call_id": "toolu_1", "content": "{\"temp\":20}"}
    assert msgs[3] == {"role": "user", "content": "Thanks"}
    assert out["tools"][0]["function"]["name"] == "get_weather"
    assert out["tools"][0]["function"]["parameters"]["required"] == ["city"]
    assert out["tool_choice"] == "required"


def test_tool_choice_variants():
    base = {"model": "m", "max_tokens": 1, "messages": [], "tools": [{"name": "t", "input_schema": {}}]}
    assert anthropic_to_openai_payload({**base, "tool_choice": {"type": "auto"}})["tool_choice"] == "auto"
    assert anthropic_to_openai_payload({**base, "tool_choice": {"type": "none"}})["tool_choice"] == "none"
    assert anthropic_to_openai_payload({**base, "tool_choice": {"type": "tool", "name": "t"}})["tool_choice"] == {
        "type": "function",
        "function": {"name": "t"},
    }
    assert "tool_choice" not in anthropic_to_openai_payload(base)


def test_image_block_mapping():
    req = {
        "model": "claude-3-sonnet",
        "max_tokens": 16,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "What is in the image?"},
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": "image/png",
                            "data": "iVBORw0KGgoAAAANSUhEUgAA...",
                        },
                    },
                ],
            }
        ],
    }
    out = anthropic_to_openai_payload(req)
    msg = out["messages"][0]
    assert msg["role"] == "user"
    assert isinstance(msg["content"], list)
    assert msg["content"][0] == {"type": "text", "text": "What is in the image?"}
    assert msg["content"][1]["type"] == "image_url"
    assert msg["content"][1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_openai_tool_calls_to_anthropic_response():
    oai_resp = {
        "id": "chatcmpl-xyz",
        "object": "chat.completion",
        "created": 1,
        "model": "gpt-sim",
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": "Let me call a tool.",
                    "tool_calls": [
                        {
                            "id": "call_123",
                            "type": "function",
                            "function": {"name": "get_weather", "arguments": "{\"city\":\"SF\"}"},
                        }
                    ],
                },
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }
    anth = openai_to_anthropic_response(oai_resp, requested_model="claude-3-sonnet")
    assert anth["model"] == "claude-3-sonnet"
    assert anth["stop_reason"] == "tool_use"
    assert anth["content"] == [
        {"type": "text", "text": "Let me call a tool."},
        {"type": "tool_use", "id": "call_123", "name": "get_weather", "input": {"city": "SF"}},
    ]
    assert anth["usage"] == {"input_tokens": 5, "output_tokens": 2}


def test_reasoning_and_inline_think_become_thinking_block():
    anth = openai_to_anthropic_response(
        {
            "id": "x",
            "choices": [
                {
                    "message": {"role": "assistant", "content": "<think>inline</think>Answer", "reasoning_content": "field "},
                    "finish_reason": "length",
                }
            ],
        }
    )
    assert anth["content"] == [
        {"type": "thinking", "thinking": "field inline"},
        {"type": "text", "text": "Answer"},
    ]
    assert anth["stop_reason"] == "max_tokens"
    assert anth["usage"] == {"input_tokens": 0, "output_tokens": 0}


def test_empty_completion_has_empty_text_block():
    anth = openai_to_anthropic_response({"id": "x", "choices": [{"message": {"content": None}, "finish_reason": "stop"}]})
    assert anth["content"] == [{"type": "text", "text": ""}]
    assert anth["stop_reason"] == "end_turn"


def test_map_finish_reason():
    assert map_finish_reason(None) is None
    assert map_finish_reason("stop") == "end_turn"
    assert map_finish_reason("length") == "max_tokens"
    assert map_finish_reason("tool_calls") == "tool_use"
    assert map_finish_reason("content_filter") == "end_turn"


def test_json_loads_safe_repairs_and_defaults():
    assert json_loads_safe('{"path": "C:\\q"}') == {"path": "C:q"}
    assert json_loads_safe("{broken") == {}
    assert json_loads_safe({"a": 1}) == {"a": 1}
