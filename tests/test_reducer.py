"""
Tests for the conversation state reducer.
"""

import pytest

from mcpchat.exceptions import EventOrderError
from mcpchat.models import ResponseEvent, ResponseEventType
from mcpchat.reducer import (
    ConversationAccumulator,
    ConversationResponseState,
    reduce_event,
)


def fold(events, state=None):
    state = state or ConversationResponseState()
    for event in events:
        state, _ = reduce_event(state, event)
    return state


class TestReduceEvent:
    def test_tool_call_and_text_scenario(self):
        events = [
            ResponseEvent.start("r1"),
            ResponseEvent(ResponseEventType.TOOL_CALL, {"itemId": "t1", "toolName": "search"}),
            ResponseEvent.tool_call_arguments("t1", {"q": "x"}),
            ResponseEvent.tool_call_result("t1", ["a"]),
            ResponseEvent.output_text("m1"),
            ResponseEvent.output_text_delta("m1", "Hel"),
            ResponseEvent.output_text_delta("m1", "lo"),
            ResponseEvent.done("r1"),
        ]

        state = fold(events)

        assert state.response_id == "r1"
        assert [item.type for item in state.items] == [
            ResponseEventType.TOOL_CALL,
            ResponseEventType.OUTPUT_TEXT,
        ]
        assert state.tool_calls["t1"]["toolName"] == "search"
        assert state.tool_calls["t1"]["args"] == {"q": "x"}
        assert state.tool_calls["t1"]["result"] == ["a"]
        assert state.outputs["m1"]["text"] == "Hello"
        assert state.output_text() == "Hello"
        assert state.done is True

    def test_done_carries_final_response_id(self):
        state = fold([ResponseEvent.start("r1"), ResponseEvent.done("r2")])
        assert state.response_id == "r2"
        assert state.done is True

    def test_start_flag(self):
        state = ConversationResponseState()
        state, is_start = reduce_event(state, ResponseEvent.start("r1"))
        assert is_start is True
        _, is_start = reduce_event(state, ResponseEvent.output_text("m1"))
        assert is_start is False

    def test_input_state_is_not_mutated(self):
        before = fold([ResponseEvent.start("r1"), ResponseEvent.output_text("m1")])
        after, _ = reduce_event(before, ResponseEvent.output_text_delta("m1", "x"))

        assert before.outputs["m1"]["text"] == ""
        assert after.outputs["m1"]["text"] == "x"
        assert before is not after

    def test_snapshots_are_read_only(self):
        state = fold([ResponseEvent.output_text("m1")])
        with pytest.raises(TypeError):
            state.outputs["m2"] = {"text": ""}
        with pytest.raises(TypeError):
            state.outputs["m1"]["text"] = "changed"
        with pytest.raises(AttributeError):
            state.reasoning = "changed"

    @pytest.mark.parametrize(
        "event",
        [
            ResponseEvent.tool_call_arguments("missing", {}),
            ResponseEvent.tool_call_result("missing", None),
            ResponseEvent.output_text_delta("missing", "x"),
        ],
    )
    def test_unknown_item_id(self, event):
        with pytest.raises(EventOrderError, match="missing"):
            reduce_event(ConversationResponseState(), event)

    def test_reasoning_overwrites(self):
        state = fold([ResponseEvent.reasoning("first"), ResponseEvent.reasoning("second")])
        assert state.reasoning == "second"

    def test_annotations_accumulate(self):
        state = fold(
            [
                ResponseEvent.output_text("m1"),
                ResponseEvent.output_annotation("m1", [{"url": "a"}]),
                ResponseEvent.output_annotation("m1", [{"url": "b"}]),
            ]
        )
        assert [a["url"] for a in state.outputs["m1"]["annotations"]] == ["a", "b"]

    def test_annotation_for_unannounced_output(self):
        state = fold([ResponseEvent.output_annotation("m9", [{"url": "a"}])])
        assert state.outputs["m9"]["text"] == ""
        assert state.items == ()

    def test_to_dict(self):
        state = fold(
            [
                ResponseEvent.start("r1"),
                ResponseEvent.output_text("m1"),
                ResponseEvent.output_annotation("m1", [{"url": "a"}]),
            ]
        )
        data = state.to_dict()
        assert data["responseId"] == "r1"
        assert data["outputs"] == {"m1": {"text": "", "annotations": [{"url": "a"}]}}
        assert data["items"] == [{"type": "output_text", "data": {"itemId": "m1"}}]
        assert data["done"] is False


class TestConversationAccumulator:
    def test_callback_receives_every_snapshot(self):
        updates = []
        accumulator = ConversationAccumulator(lambda state, is_start: updates.append((state, is_start)))

        accumulator.feed({"type": "start", "data": {"responseId": "r1"}})
        accumulator.feed({"type": "output_text", "data": {"itemId": "m1"}})
        accumulator.feed(ResponseEvent.output_text_delta("m1", "hi"))

        assert [is_start for _, is_start in updates] == [True, False, False]
        assert updates[-1][0].output_text() == "hi"
        assert accumulator.state is updates[-1][0]

    def test_unknown_wire_type(self):
        accumulator = ConversationAccumulator()
        with pytest.raises(ValueError):
            accumulator.feed({"type": "mystery", "data": {}})
