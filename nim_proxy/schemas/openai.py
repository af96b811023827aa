from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# OpenAI chat.completion.chunk (streaming) payloads. Every field is optional so a
# sparse upstream frame validates; unknown fields are ignored and explicit nulls
# fall back to the field default.


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class FunctionDelta(_Lenient):
    name: Optional[str] = None
    arguments: Optional[str] = None


class ToolCallDelta(_Lenient):
    index: int = 0
    id: Optional[str] = None
    type: Optional[str] = None
    function: FunctionDelta = Field(default_factory=FunctionDelta)

    @field_validator("index", mode="before")
    @classmethod
    def null_index(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("function", mode="before")
    @classmethod
    def null_function(cls, v: Any) -> Any:
        return {} if v is None else v


class ChoiceDelta(_Lenient):
    role: Optional[str] = None
    content: Optional[str] = None
    reasoning_content: Optional[str] = None
    # Some OpenAI-compatible hosts name the reasoning channel `reasoning`
    reasoning: Optional[str] = None
    tool_calls: List[ToolCallDelta] = Field(default_factory=list)

    @field_validator("tool_calls", mode="before")
    @classmethod
    def null_tool_calls(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def reasoning_text(self) -> str:
        return self.reasoning_content or self.reasoning or ""


class ChunkChoice(_Lenient):
    index: int = 0
    delta: ChoiceDelta = Field(default_factory=ChoiceDelta)
    finish_reason: Optional[str] = None

    @field_validator("delta", mode="before")
    @classmethod
    def null_delta(cls, v: Any) -> Any:
        return {} if v is None else v


class CompletionUsage(_Lenient):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @field_validator("prompt_tokens", "completion_tokens", "total_tokens", mode="before")
    @classmethod
    def null_count(cls, v: Any) -> Any:
        return 0 if v is None else v


class ChatCompletionChunk(_Lenient):
    id: Optional[str] = None
    model: Optional[str] = None
    choices: List[ChunkChoice] = Field(default_factory=list)
    usage: Optional[CompletionUsage] = None

    @field_validator("choices", mode="before")
    @classmethod
    def null_choices(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def choice(self) -> ChunkChoice:
        """First choice, or an empty one for usage-only frames."""
        return self.choices[0] if self.choices else ChunkChoice()
