"""
mcpchat - Client-side conversation state reducer.

``reduce_event`` is a pure fold step: it never mutates the state it is
given and returns a fresh, read-only snapshot. ``ConversationAccumulator``
drives the fold and hands every snapshot to an update callback together
with a flag telling "a new message started" apart from "patch the last
message".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Union

from .exceptions import EventOrderError
from .models import ResponseEvent, ResponseEventType

logger = logging.getLogger("mcpchat.reducer")

UpdateCallback = Callable[["ConversationResponseState", bool], Any]

_EMPTY: Mapping[str, Any] = MappingProxyType({})


def _freeze(data: dict[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(data)


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ConversationResponseState:
    """Immutable snapshot of one streamed response."""

    response_id: Optional[str] = None
    items: tuple[ResponseEvent, ...] = ()
    tool_calls: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: _EMPTY)
    outputs: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: _EMPTY)
    reasoning: str = ""
    done: bool = False

    def output_text(self) -> str:
        """Concatenated text of all output items, in stream order."""
        return "".join(
            self.outputs[item.item_id]["text"]
            for item in self.items
            if item.type == ResponseEventType.OUTPUT_TEXT and item.item_id in self.outputs
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "responseId": self.response_id,
            "items": [item.to_dict() for item in self.items],
            "toolCalls": _thaw(self.tool_calls),
            "outputs": _thaw(self.outputs),
            "reasoning": self.reasoning,
            "done": self.done,
        }


def _with_entry(
    mapping: Mapping[str, Mapping[str, Any]], key: str, entry: dict[str, Any]
) -> Mapping[str, Mapping[str, Any]]:
    updated = dict(mapping)
    updated[key] = _freeze(entry)
    return _freeze(updated)


def _existing(
    mapping: Mapping[str, Mapping[str, Any]], event: ResponseEvent, kind: str
) -> dict[str, Any]:
    item_id = event.item_id
    if item_id not in mapping:
        raise EventOrderError(
            f"{event.type.value} event for unknown {kind} item '{item_id}'"
        )
    return dict(mapping[item_id])


def reduce_event(
    state: ConversationResponseState, event: ResponseEvent
) -> tuple[ConversationResponseState, bool]:
    """Fold one event into ``state``.

    Returns:
        ``(new_state, is_start)`` where ``is_start`` is True only for START.

    Raises:
        EventOrderError: If an event refers to an item id no earlier event opened.
    """
    kind = event.type
    data = event.data

    if kind == ResponseEventType.START:
        return replace(state, response_id=data.get("responseId")), True

    if kind == ResponseEventType.TOOL_CALL:
        return (
            replace(
                state,
                items=state.items + (event,),
                tool_calls=_with_entry(state.tool_calls, event.item_id, dict(data)),
            ),
            False,
        )

    if kind == ResponseEventType.TOOL_CALL_ARGUMENTS:
        call = _existing(state.tool_calls, event, "tool call")
        call["args"] = data.get("args")
        return replace(state, tool_calls=_with_entry(state.tool_calls, event.item_id, call)), False

    if kind == ResponseEventType.TOOL_CALL_RESULT:
        call = _existing(state.tool_calls, event, "tool call")
        call["result"] = data.get("result")
        return replace(state, tool_calls=_with_entry(state.tool_calls, event.item_id, call)), False

    if kind == ResponseEventType.OUTPUT_TEXT:
        return (
            replace(
                state,
                items=state.items + (event,),
                outputs=_with_entry(state.outputs, event.item_id, {"text": ""}),
            ),
            False,
        )

    if kind == ResponseEventType.OUTPUT_TEXT_DELTA:
        output = _existing(state.outputs, event, "output")
        output["text"] = output["text"] + (data.get("delta") or "")
        return replace(state, outputs=_with_entry(state.outputs, event.item_id, output)), False

    if kind == ResponseEventType.OUTPUT_ANNOTATION:
        # Annotations may arrive for a message whose text item was not announced.
        output = dict(state.outputs.get(event.item_id, {"text": ""}))
        annotations = list(output.get("annotations") or ())
        annotations.extend(data.get("annotations") or ())
        output["annotations"] = tuple(annotations)
        return replace(state, outputs=_with_entry(state.outputs, event.item_id, output)), False

    if kind == ResponseEventType.REASONING:
        return replace(state, reasoning=data.get("text") or ""), False

    if kind == ResponseEventType.DONE:
        # Continuation turns carry no START; DONE names the response to chain from.
        response_id = data.get("responseId") or state.response_id
        return replace(state, response_id=response_id, done=True), False

    logger.debug("Ignoring response event of type %s", kind)
    return state, False


class ConversationAccumulator:
    """Folds a response event stream and publishes every snapshot.

    Example::

        acc = ConversationAccumulator(on_update=render)
        async for raw in decode_stream(body):
            acc.feed(raw)
        final = acc.state
    """

    def __init__(self, on_update: Optional[UpdateCallback] = None) -> None:
        self.state = ConversationResponseState()
        self._on_update = on_update

    def feed(self, event: Union[ResponseEvent, dict[str, Any]]) -> ConversationResponseState:
        if not isinstance(event, ResponseEvent):
            event = ResponseEvent.from_dict(event)
        self.state, is_start = reduce_event(self.state, event)
        if self._on_update is not None:
            self._on_update(self.state, is_start)
        return self.state
