"""Tests for reassembling choice deltas into messages."""

import json
import logging

import pytest

from deepseek_stream.core.accumulator import DeltaAccumulator
from deepseek_stream.core.decoder import ChoiceDelta, FinishReason
from deepseek_stream.errors import ProtocolViolation, StreamProtocolError


def _delta(index: int = 0, finish_reason: str | None = None, **delta) -> ChoiceDelta:
    return ChoiceDelta.model_validate(
        {"index": index, "delta": delta, "finish_reason": finish_reason}
    )


def _tool(index: int, arguments: str = "", id: str | None = None, name: str | None = None) -> dict:
    fragment: dict = {"index": index, "function": {"arguments": arguments}}
    if id:
        fragment["id"] = id
        fragment["type"] = "function"
    if name:
        fragment["function"]["name"] = name
    return fragment


def test_content_is_concatenated():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(role="assistant", content="Hel"))
    acc.apply(0, _delta(content="lo"))
    snap = acc.apply(0, _delta(finish_reason="stop"))
    assert snap.content == "Hello"
    assert snap.role == "assistant"
    assert snap.finalized
    assert snap.finish_reason is FinishReason.STOP


def test_reasoning_and_content_are_separate():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(reasoning_content="9.8 > "))
    acc.apply(0, _delta(reasoning_content="9.11"))
    snap = acc.apply(0, _delta(content="9.8", reasoning_content="."))
    assert snap.reasoning_content == "9.8 > 9.11."
    assert snap.content == "9.8"


def test_tool_call_arguments_merged():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(tool_calls=[_tool(0, '{"city":', id="call_1", name="GetWeather")]))
    snap = acc.apply(0, _delta(tool_calls=[_tool(0, '"NYC"}')]))
    (call,) = snap.tool_calls
    assert call.id == "call_1"
    assert call.name == "GetWeather"
    assert call.arguments == '{"city":"NYC"}'
    assert call.parsed_arguments() == {"city": "NYC"}


def test_parallel_tool_calls_kept_apart_and_ordered():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(tool_calls=[_tool(1, '{"b":', id="call_b", name="B")]))
    acc.apply(0, _delta(tool_calls=[_tool(0, '{"a":', id="call_a", name="A")]))
    acc.apply(0, _delta(tool_calls=[_tool(0, "1}"), _tool(1, "2}")]))
    snap = acc.apply(0, _delta(finish_reason="tool_calls"))
    assert [c.index for c in snap.tool_calls] == [0, 1]
    assert [json.loads(c.arguments) for c in snap.tool_calls] == [{"a": 1}, {"b": 2}]
    assert snap.to_dict()["tool_calls"][1] == {
        "id": "call_b",
        "type": "function",
        "function": {"name": "B", "arguments": '{"b":2}'},
    }


def test_conflicting_tool_call_id_keeps_first(caplog):
    acc = DeltaAccumulator()
    acc.apply(0, _delta(tool_calls=[_tool(0, "{", id="call_1", name="GetWeather")]))
    with caplog.at_level(logging.WARNING):
        snap = acc.apply(0, _delta(tool_calls=[_tool(0, "}", id="call_2", name="Other")]))
    (call,) = snap.tool_calls
    assert call.id == "call_1"
    assert call.name == "GetWeather"
    assert call.arguments == "{}"
    assert len(acc.violations) == 2
    assert all(isinstance(v, ProtocolViolation) for v in acc.violations)
    assert acc.violations[0].call_index == 0
    assert "keeping the first value" in caplog.text


def test_repeated_identical_id_is_not_a_violation():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(tool_calls=[_tool(0, "{", id="call_1", name="F")]))
    acc.apply(0, _delta(tool_calls=[_tool(0, "}", id="call_1", name="F")]))
    assert acc.violations == []


def test_delta_after_finish_is_protocol_error():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(content="done", finish_reason="stop"))
    with pytest.raises(StreamProtocolError) as exc_info:
        acc.apply(0, _delta(content="more"))
    assert exc_info.value.choice_index == 0
    assert not isinstance(exc_info.value, ProtocolViolation)
    assert acc.snapshot(0).content == "done"


def test_finish_delta_content_is_applied_before_finalizing():
    acc = DeltaAccumulator()
    snap = acc.apply(0, _delta(content="last", finish_reason="length"))
    assert snap.content == "last"
    assert snap.finish_reason is FinishReason.LENGTH


def test_same_delta_twice_appends_twice():
    """No implicit dedup: accumulation is purely additive."""
    acc = DeltaAccumulator()
    delta = _delta(content="ab", tool_calls=[_tool(0, "x", id="c", name="n")])
    acc.apply(0, delta)
    snap = acc.apply(0, delta)
    assert snap.content == "abab"
    assert snap.tool_calls[0].arguments == "xx"


def test_choices_are_independent():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(content="zero"))
    acc.apply(1, _delta(index=1, content="one"))
    acc.apply(0, _delta(finish_reason="stop"))
    acc.apply(1, _delta(index=1, content="!"))
    messages = acc.messages()
    assert [m.index for m in messages] == [0, 1]
    assert messages[0].finalized and not messages[1].finalized
    assert messages[1].content == "one!"


def test_snapshot_is_a_frozen_copy():
    acc = DeltaAccumulator()
    first = acc.apply(0, _delta(content="a"))
    acc.apply(0, _delta(content="b"))
    assert first.content == "a"
    assert acc.snapshot(0).content == "ab"
    with pytest.raises(AttributeError):
        first.content = "z"


def test_finalize_all_closes_open_messages():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(content="partial"))
    acc.finalize_all()
    snap = acc.snapshot(0)
    assert snap.finalized
    assert snap.finish_reason is None
    with pytest.raises(StreamProtocolError):
        acc.apply(0, _delta(content="late"))


def test_merge_defers_snapshot_until_asked():
    acc = DeltaAccumulator()
    for _ in range(500):
        assert acc.merge(0, _delta(content="ab")) is None
    acc.merge(0, _delta(tool_calls=[_tool(0, "{}", id="c", name="n")], finish_reason="tool_calls"))
    snap = acc.snapshot(0)
    assert snap.content == "ab" * 500
    assert snap.tool_calls[0].arguments == "{}"
    assert snap.finalized
    with pytest.raises(StreamProtocolError):
        acc.merge(0, _delta(content="late"))


def test_snapshot_of_unknown_choice():
    assert DeltaAccumulator().snapshot(3) is None


def test_to_dict_for_follow_up_request():
    acc = DeltaAccumulator()
    acc.apply(0, _delta(reasoning_content="hmm"))
    snap = acc.apply(0, _delta(content="Answer", finish_reason="stop"))
    assert snap.to_dict() == {
        "role": "assistant",
        "content": "Answer",
        "reasoning_content": "hmm",
    }
