"""Structural decoding of SSE payloads into completion chunks."""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from deepseek_stream.core.frame_reader import SENTINEL
from deepseek_stream.errors import MalformedChunk


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    INSUFFICIENT_SYSTEM_RESOURCE = "insufficient_system_resource"


class _Chunk(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class FunctionFragment(_Chunk):
    name: str | None = None
    arguments: str = ""


class ToolCallFragment(_Chunk):
    """Partial tool invocation; ``function.arguments`` is concatenated."""

    index: int = 0
    id: str | None = None
    type: str | None = None
    function: FunctionFragment = FunctionFragment()


class DeltaMessage(_Chunk):
    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallFragment] | None = None


class ChoiceDelta(_Chunk):
    """Per-choice partial update carried by one chunk."""

    index: int = 0
    delta: DeltaMessage = DeltaMessage()
    finish_reason: FinishReason | None = None

    @property
    def content(self) -> str | None:
        return self.delta.content

    @property
    def reasoning_content(self) -> str | None:
        return self.delta.reasoning_content

    @property
    def tool_calls(self) -> list[ToolCallFragment]:
        return self.delta.tool_calls or []


class CompletionTokensDetails(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    reasoning_tokens: int | None = None


class Usage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    prompt_cache_hit_tokens: int | None = None
    prompt_cache_miss_tokens: int | None = None
    completion_tokens_details: CompletionTokensDetails | None = None


class CompletionChunk(_Chunk):
    id: str | None = None
    object: str | None = None
    created: int | None = None
    model: str | None = None
    system_fingerprint: str | None = None
    choices: list[ChoiceDelta] = Field(default_factory=list)
    usage: Usage | None = None
    # True only for the decoded end-of-stream marker
    done: bool = False

    @property
    def is_usage_only(self) -> bool:
        return not self.choices and self.usage is not None


def decode_chunk(payload: str) -> CompletionChunk:
    """Decode one frame payload. No merging happens here."""
    if payload.strip() == SENTINEL:
        return CompletionChunk(done=True)

    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedChunk(f"Invalid JSON in stream chunk: {e}", payload) from e

    if not isinstance(data, dict):
        raise MalformedChunk(
            f"Expected a JSON object, got {type(data).__name__}", payload
        )

    error = data.get("error")
    if error:
        message = error.get("message", error) if isinstance(error, dict) else error
        raise MalformedChunk(f"Server error in stream: {message}", payload)

    if data.get("choices") is None and data.get("usage") is None:
        raise MalformedChunk("Chunk has neither choices nor usage", payload)

    # Some servers send "choices": null on the usage-only chunk
    if data.get("choices") is None:
        data = {**data, "choices": []}
    data.pop("done", None)

    try:
        return CompletionChunk.model_validate(data)
    except ValidationError as e:
        raise MalformedChunk(f"Unexpected chunk structure: {e}", payload) from e
