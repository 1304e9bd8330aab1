"""
mcpchat - Completion stream translation.

Maps native OpenAI Responses API stream events onto the closed
``ResponseEvent`` taxonomy and drives the function-call loop.

Native events are read through ``_get`` so both SDK model objects and
plain dicts (recorded streams, tests) translate the same way.

Stream contract for ``CompletionEventTranslator.run``:
    - events are yielded in the order the provider produced them
    - START is yielded once, for the first turn only
    - DONE is yielded at most once, as the last event
    - a failure yields one ``{"type": "error", "error": message}`` line instead
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

from .exceptions import TranslationError
from .models import ResponseEvent, ResponseEventType

logger = logging.getLogger("mcpchat.translator")

DEFAULT_MAX_TURNS = 5

# item type -> (display name, toolType)
BUILTIN_TOOL_ITEMS: dict[str, tuple[str, str]] = {
    "web_search_call": ("Web search", "web_search"),
    "code_interpreter_call": ("Python", "python"),
    "image_generation_call": ("Image generation", "image_generation"),
}

COMPLETION_RESULTS: dict[str, str] = {
    "response.web_search_call.completed": "Web search completed",
    "response.image_generation_call.completed": "Image generation completed",
}

StreamOpener = Callable[[list[dict[str, Any]], Optional[str]], Awaitable[AsyncIterable[Any]]]


def _get(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _require(obj: Any, name: str) -> Any:
    value = _get(obj, name)
    if value is None:
        raise TranslationError(f"Provider event is missing '{name}'")
    return value


def plain(value: Any) -> Any:
    """Convert SDK model objects into JSON-serializable structures."""
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, dict):
        return {k: plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain(v) for v in value]
    return value


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "close", None) or getattr(stream, "aclose", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


# ---------------------------------------------------------------------------
# Function calls
# ---------------------------------------------------------------------------


@dataclass
class FunctionDef:
    """A local function the model may call."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    handler: Optional[Callable[..., Any]] = None

    def to_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


class FunctionCallRegistry:
    """Handlers for provider function calls, keyed by function name."""

    def __init__(self) -> None:
        self._functions: dict[str, FunctionDef] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    def register(
        self,
        name: str,
        handler: Optional[Callable[..., Any]] = None,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Register a handler; usable directly or as a decorator."""

        def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
            self._functions[name] = FunctionDef(
                name=name,
                description=description or (fn.__doc__ or "").strip(),
                parameters=parameters or {"type": "object", "properties": {}},
                handler=fn,
            )
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    def tool_definitions(self) -> list[dict[str, Any]]:
        return [f.to_tool() for f in self._functions.values()]

    async def execute(self, call: Any) -> dict[str, Any]:
        """Run one ``function_call`` item and build its ``function_call_output``."""
        name = _get(call, "name")
        call_id = _get(call, "call_id")
        raw_arguments = _get(call, "arguments") or "{}"
        try:
            arguments = json.loads(raw_arguments) if isinstance(raw_arguments, str) else raw_arguments
            function = self._functions.get(name)
            if function is None or function.handler is None:
                result: Any = {"error": f"Unknown function: {name}"}
            else:
                raw = function.handler(**arguments)
                if inspect.isawaitable(raw):
                    raw = await raw
                result = raw if isinstance(raw, dict) else {"result": str(raw)}
        except Exception as e:
            logger.warning("Function call '%s' failed: %s", name, e)
            result = {"error": str(e)}
        return {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(result, default=str),
        }


# ---------------------------------------------------------------------------
# Translator
# ---------------------------------------------------------------------------


class CompletionEventTranslator:
    """Translate native provider events and run the function-call loop.

    Args:
        functions: Registry used to resolve function calls requested by the model.
        max_turns: Maximum number of function-call continuation turns.
    """

    def __init__(
        self,
        functions: Optional[FunctionCallRegistry] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
    ) -> None:
        self.functions = functions or FunctionCallRegistry()
        self.max_turns = max_turns
        self._handlers: dict[str, Callable[[Any], Optional[ResponseEvent]]] = {
            "response.created": self._created,
            "response.output_item.added": self._item_added,
            "response.output_item.done": self._item_done,
            "response.code_interpreter_call_code.done": self._code_done,
            "response.web_search_call.completed": self._builtin_completed,
            "response.image_generation_call.completed": self._builtin_completed,
            "response.mcp_call_arguments.done": self._mcp_arguments,
            "response.output_text.delta": self._text_delta,
            "response.content_part.done": self._content_part_done,
            "response.completed": self._completed,
        }

    def translate(self, event: Any) -> Optional[ResponseEvent]:
        """Map one native event; None means "ignore".

        Raises:
            TranslationError: If a recognized event is malformed.
        """
        event_type = _get(event, "type")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Ignoring provider event %s", event_type)
            return None
        return handler(event)

    def _translate_safely(self, event: Any) -> Optional[ResponseEvent]:
        try:
            return self.translate(event)
        except TranslationError as e:
            logger.warning("Skipping malformed provider event %s: %s", _get(event, "type"), e)
            return None

    # -- event handlers -------------------------------------------------------

    def _created(self, event: Any) -> ResponseEvent:
        return ResponseEvent.start(_require(_require(event, "response"), "id"))

    def _item_added(self, event: Any) -> Optional[ResponseEvent]:
        item = _require(event, "item")
        item_type = _get(item, "type")
        if item_type == "mcp_call":
            return ResponseEvent.tool_call(
                _require(item, "id"),
                tool_name=_get(item, "name"),
                tool_type="mcp",
                server=_get(item, "server_label"),
            )
        if item_type in BUILTIN_TOOL_ITEMS:
            tool_name, tool_type = BUILTIN_TOOL_ITEMS[item_type]
            return ResponseEvent.tool_call(_require(item, "id"), tool_name, tool_type)
        if item_type == "message":
            return ResponseEvent.output_text(_require(item, "id"))
        return None

    def _item_done(self, event: Any) -> Optional[ResponseEvent]:
        item = _require(event, "item")
        item_type = _get(item, "type")
        if item_type == "reasoning":
            summary = _get(item, "summary") or []
            return ResponseEvent.reasoning("\n".join(_get(s, "text") or "" for s in summary))
        if item_type == "mcp_call":
            return ResponseEvent.tool_call_result(_require(item, "id"), _get(item, "output"))
        return None

    def _code_done(self, event: Any) -> ResponseEvent:
        return ResponseEvent.tool_call_result(_require(event, "item_id"), _get(event, "code"))

    def _builtin_completed(self, event: Any) -> ResponseEvent:
        return ResponseEvent.tool_call_result(
            _require(event, "item_id"), COMPLETION_RESULTS[_get(event, "type")]
        )

    def _mcp_arguments(self, event: Any) -> ResponseEvent:
        return ResponseEvent.tool_call_arguments(
            _require(event, "item_id"), _get(event, "arguments")
        )

    def _text_delta(self, event: Any) -> ResponseEvent:
        return ResponseEvent.output_text_delta(
            _require(event, "item_id"), _get(event, "delta") or ""
        )

    def _content_part_done(self, event: Any) -> ResponseEvent:
        part = _get(event, "part")
        return ResponseEvent.output_annotation(
            _require(event, "item_id"), plain(_get(part, "annotations") or [])
        )

    def _completed(self, event: Any) -> ResponseEvent:
        response = _require(event, "response")
        return ResponseEvent.done(_require(response, "id"), plain(_get(response, "output")))

    # -- stream ---------------------------------------------------------------

    async def run(
        self, open_stream: StreamOpener, input_items: list[dict[str, Any]]
    ) -> AsyncIterator[dict[str, Any]]:
        """Translate a provider conversation turn by turn.

        ``open_stream(input_items, previous_response_id)`` starts one provider
        stream; ``previous_response_id`` is None for the first turn.
        Yields wire dicts ready for NDJSON framing.
        """
        try:
            async for event in self._turns(open_stream, input_items):
                yield event.to_dict()
        except Exception as e:
            logger.exception("Completion stream failed")
            yield {"type": "error", "error": str(e) or type(e).__name__}

    async def _turns(
        self, open_stream: StreamOpener, input_items: list[dict[str, Any]]
    ) -> AsyncIterator[ResponseEvent]:
        previous_response_id: Optional[str] = None
        pending_input = input_items
        for turn in range(self.max_turns + 1):
            function_calls: list[Any] = []
            done: Optional[ResponseEvent] = None
            response_id: Optional[str] = None

            stream = await open_stream(pending_input, previous_response_id)
            try:
                async for native in stream:
                    native_type = _get(native, "type")
                    if native_type == "response.output_item.done":
                        item = _get(native, "item")
                        if _get(item, "type") == "function_call":
                            function_calls.append(item)
                    event = self._translate_safely(native)
                    if event is None:
                        continue
                    if event.type == ResponseEventType.START:
                        response_id = event.data["responseId"]
                        if turn > 0:
                            continue
                    if event.type == ResponseEventType.DONE:
                        done = event
                        continue
                    yield event
            finally:
                await _close_stream(stream)

            if not function_calls:
                break
            if turn == self.max_turns:
                logger.warning(
                    "Function-call turn limit (%d) reached; %d call(s) left unanswered",
                    self.max_turns,
                    len(function_calls),
                )
                break

            logger.info("Resolving %d function call(s), turn %d", len(function_calls), turn + 1)
            pending_input = list(
                await asyncio.gather(*(self.functions.execute(c) for c in function_calls))
            )
            previous_response_id = done.data["responseId"] if done is not None else response_id

        if done is not None:
            yield done
