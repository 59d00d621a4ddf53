"""Reassemble streamed choice deltas into complete assistant messages.

Streaming sends content, reasoning text and tool-call arguments as
incremental fragments spread across chunks. The accumulator keeps one open
message per choice index and appends each fragment in arrival order:

- content / reasoning_content are concatenated, never replaced
- tool calls are keyed by their call index; id and name are set once,
  argument text is concatenated
- a finish_reason finalizes the choice; anything after it is a server error

Snapshots handed out are frozen copies, safe to keep across later applies.
Building one joins every fragment so far; callers on the hot path use
``merge`` and take a snapshot only when they need one.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from deepseek_stream.core.decoder import ChoiceDelta, FinishReason, ToolCallFragment
from deepseek_stream.errors import ProtocolViolation, StreamProtocolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccumulatedToolCall:
    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""
    type: str = "function"

    def parsed_arguments(self) -> Any:
        """Decode the argument JSON; raises json.JSONDecodeError if incomplete."""
        return json.loads(self.arguments) if self.arguments else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class AccumulatedMessage:
    """Point-in-time reconstruction of one choice."""

    index: int
    role: str = "assistant"
    content: str = ""
    reasoning_content: str = ""
    tool_calls: tuple[AccumulatedToolCall, ...] = ()
    finish_reason: FinishReason | None = None
    finalized: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Assistant message ready to append to the next request."""
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.reasoning_content:
            message["reasoning_content"] = self.reasoning_content
        if self.tool_calls:
            message["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return message


@dataclass
class _ToolCallState:
    index: int
    id: str = ""
    name: str = ""
    type: str = "function"
    parts: list[str] = field(default_factory=list)

    def freeze(self) -> AccumulatedToolCall:
        return AccumulatedToolCall(
            index=self.index,
            id=self.id,
            name=self.name,
            arguments="".join(self.parts),
            type=self.type,
        )


@dataclass
class _MessageState:
    index: int
    role: str = "assistant"
    content: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    tool_calls: dict[int, _ToolCallState] = field(default_factory=dict)
    finish_reason: FinishReason | None = None
    finalized: bool = False

    def freeze(self) -> AccumulatedMessage:
        return AccumulatedMessage(
            index=self.index,
            role=self.role,
            content="".join(self.content),
            reasoning_content="".join(self.reasoning),
            tool_calls=tuple(
                self.tool_calls[i].freeze() for i in sorted(self.tool_calls)
            ),
            finish_reason=self.finish_reason,
            finalized=self.finalized,
        )


class DeltaAccumulator:
    """Per-stream merge state, keyed by choice index."""

    def __init__(self) -> None:
        self._messages: dict[int, _MessageState] = {}
        self.violations: list[ProtocolViolation] = []

    def apply(self, choice_index: int, delta: ChoiceDelta) -> AccumulatedMessage:
        """Merge one delta and return a snapshot of the updated choice."""
        self.merge(choice_index, delta)
        return self._messages[choice_index].freeze()

    def merge(self, choice_index: int, delta: ChoiceDelta) -> None:
        """Merge one delta without building a snapshot."""
        state = self._messages.get(choice_index)
        if state is None:
            state = self._messages[choice_index] = _MessageState(index=choice_index)
        elif state.finalized:
            raise StreamProtocolError(
                f"Delta received for choice {choice_index} after it finished "
                f"with {state.finish_reason.value if state.finish_reason else 'end of stream'}",
                choice_index=choice_index,
            )

        if delta.delta.role:
            state.role = delta.delta.role
        if delta.content:
            state.content.append(delta.content)
        if delta.reasoning_content:
            state.reasoning.append(delta.reasoning_content)
        for fragment in delta.tool_calls:
            self._merge_tool_call(state, fragment)

        if delta.finish_reason is not None:
            state.finish_reason = delta.finish_reason
            state.finalized = True

    def _merge_tool_call(self, state: _MessageState, fragment: ToolCallFragment) -> None:
        call = state.tool_calls.get(fragment.index)
        if call is None:
            call = state.tool_calls[fragment.index] = _ToolCallState(index=fragment.index)

        call.id = self._set_once(state.index, call, "id", call.id, fragment.id)
        call.name = self._set_once(
            state.index, call, "name", call.name, fragment.function.name
        )
        if fragment.type:
            call.type = fragment.type
        if fragment.function.arguments:
            call.parts.append(fragment.function.arguments)

    def _set_once(
        self,
        choice_index: int,
        call: _ToolCallState,
        attr: str,
        current: str,
        incoming: str | None,
    ) -> str:
        if not incoming or incoming == current:
            return current
        if not current:
            return incoming
        violation = ProtocolViolation(
            f"Tool call {call.index} of choice {choice_index} changed {attr} "
            f"from {current!r} to {incoming!r}; keeping the first value",
            choice_index=choice_index,
            call_index=call.index,
        )
        logger.warning("%s", violation)
        self.violations.append(violation)
        return current

    def snapshot(self, choice_index: int) -> AccumulatedMessage | None:
        state = self._messages.get(choice_index)
        return state.freeze() if state is not None else None

    def messages(self) -> list[AccumulatedMessage]:
        return [self._messages[i].freeze() for i in sorted(self._messages)]

    def finalize_all(self) -> None:
        """Close every still-open choice at normal end of stream."""
        for state in self._messages.values():
            state.finalized = True
