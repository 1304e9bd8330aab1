"""
mcpchat - OpenAI Responses API completion provider.

Builds the provider request (input items, attachments, remote tool servers
and default tools) and starts streamed responses. Translation of the
resulting native events lives in :mod:`mcpchat.translator`.

Example:
    provider = OpenAIResponsesProvider(api_key="sk-...")
    translator = CompletionEventTranslator()
    body = provider.stream_response(
        "What's on my calendar?",
        attachments=[],
        servers=[AuthorizedServer(metadata, access_token="...")],
        enabled_default_tools=["python"],
        translator=translator,
    )
    async for line in body:
        ...
"""

import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Optional

from openai import AsyncOpenAI

from .models import Attachment, AuthorizedServer
from .ndjson import encode_stream
from .translator import CompletionEventTranslator

logger = logging.getLogger("mcpchat.provider")

DEFAULT_MODEL = "gpt-5-mini"

DEFAULT_TOOL_WEB_SEARCH = "web-search"
DEFAULT_TOOL_PYTHON = "python"
DEFAULT_TOOL_IMAGE_GENERATION = "image-generation"

SYSTEM_PROMPT = """\
You are a helpful, neutral assistant with access to remote tools and apps that \
can retrieve data and act on it.

Format every answer in markdown: use headings, lists, tables and code blocks \
where they help. Give links friendly text, never bare URLs. When a tool result \
includes images, embed them with <img src="url" width="..."/>.

Briefly tell the user which tools you are calling and why. Call tools again when \
earlier results are not enough, and say so when you do. For files created by the \
code interpreter, include the file id in the answer.

Be concise. When asked what you can do, describe the tools available in this \
session and suggest adding more from the sidebar."""

TOOL_SUMMARY_PROMPT = """\
Summarize the output of a tool call which has already happened.

- Server: {server_name}
- Tool: {tool_name}
- Arguments: {args}
- Result: {result}

Summarize the arguments and result of the tool call in markdown in around 50 \
words, without repeating them verbatim. Do not ask follow-up questions; the user \
cannot answer them."""


def attachment_to_input(attachment: Attachment) -> Optional[dict[str, Any]]:
    """Map an attachment onto a Responses API input content part."""
    mime_type = attachment.mime_type or ""
    if mime_type == "text/plain" and attachment.text is not None:
        return {"type": "input_text", "text": attachment.text}
    if mime_type.startswith("image/"):
        image_url = attachment.image_url
        if image_url is None and attachment.file_data is not None:
            image_url = attachment.file_data
        if image_url is not None:
            return {"type": "input_image", "image_url": image_url, "detail": "auto"}
    if attachment.file_data is not None:
        return {
            "type": "input_file",
            "filename": attachment.filename or "attachment",
            "file_data": attachment.file_data,
        }
    logger.warning("Dropping attachment with unsupported type %s", mime_type)
    return None


def server_tool(server: AuthorizedServer) -> dict[str, Any]:
    """Remote MCP tool entry for one authorized server."""
    metadata = server.metadata
    tool: dict[str, Any] = {
        "type": "mcp",
        "server_label": metadata.name,
        "server_url": metadata.url,
        "require_approval": "never",
    }
    if metadata.allowed_tools is not None:
        tool["allowed_tools"] = metadata.allowed_tools
    if server.access_token:
        tool["headers"] = {"Authorization": f"Bearer {server.access_token}"}
    return tool


class OpenAIResponsesProvider:
    """Streams responses from the OpenAI Responses API.

    Args:
        client: Pre-built ``AsyncOpenAI`` client (takes precedence).
        api_key: API key used when no client is given.
        base_url: Alternative API endpoint (e.g. an Azure deployment).
        model: Model name.
        web_search_url: MCP server URL backing the ``web-search`` default tool.
        reasoning_effort: Reasoning effort requested for every response.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        web_search_url: Optional[str] = None,
        reasoning_effort: str = "low",
    ) -> None:
        self.client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.model = model
        self.web_search_url = web_search_url
        self.reasoning_effort = reasoning_effort

    def build_input(
        self,
        message: str,
        attachments: list[Attachment],
        reference_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = [{"type": "input_text", "text": message}]
        for attachment in attachments:
            part = attachment_to_input(attachment)
            if part is not None:
                content.append(part)
        items: list[dict[str, Any]] = [{"role": "user", "content": content}]
        if not reference_id:
            items.insert(0, {"role": "system", "content": SYSTEM_PROMPT})
        return items

    def build_tools(
        self,
        servers: list[AuthorizedServer],
        enabled_default_tools: list[str],
        function_tools: Optional[list[dict[str, Any]]] = None,
    ) -> list[dict[str, Any]]:
        tools = [server_tool(s) for s in servers]
        if DEFAULT_TOOL_WEB_SEARCH in enabled_default_tools:
            if self.web_search_url:
                tools.append(
                    {
                        "type": "mcp",
                        "server_label": DEFAULT_TOOL_WEB_SEARCH,
                        "server_url": self.web_search_url,
                        "require_approval": "never",
                    }
                )
            else:
                logger.warning("web-search requested but no web search server is configured")
        if DEFAULT_TOOL_PYTHON in enabled_default_tools:
            tools.append({"type": "code_interpreter", "container": {"type": "auto"}})
        if DEFAULT_TOOL_IMAGE_GENERATION in enabled_default_tools:
            tools.append({"type": "image_generation", "partial_images": 3})
        tools.extend(function_tools or [])
        return tools

    async def open_stream(
        self,
        input_items: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        previous_response_id: Optional[str] = None,
    ) -> AsyncIterable[Any]:
        """Start one streamed response."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "input": input_items,
            "reasoning": {"effort": self.reasoning_effort},
            "stream": True,
        }
        if tools:
            kwargs["tools"] = tools
        if previous_response_id:
            kwargs["previous_response_id"] = previous_response_id
        logger.info(
            "Starting %s response (tools=%d, continuation=%s)",
            self.model,
            len(tools),
            bool(previous_response_id),
        )
        return await self.client.responses.create(**kwargs)

    def stream_response(
        self,
        message: str,
        attachments: list[Attachment],
        servers: list[AuthorizedServer],
        enabled_default_tools: list[str],
        translator: CompletionEventTranslator,
        reference_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """NDJSON byte stream of translated events for one message."""
        input_items = self.build_input(message, attachments, reference_id)
        tools = self.build_tools(
            servers, enabled_default_tools, translator.functions.tool_definitions()
        )

        async def opener(
            items: list[dict[str, Any]], previous_response_id: Optional[str]
        ) -> AsyncIterable[Any]:
            return await self.open_stream(items, tools, previous_response_id or reference_id)

        return encode_stream(translator.run(opener, input_items))

    def stream_tool_summary(
        self,
        server_name: str,
        tool_name: str,
        args: Any,
        result: Any,
        translator: CompletionEventTranslator,
    ) -> AsyncIterator[bytes]:
        """NDJSON stream summarizing a finished tool call."""
        prompt = TOOL_SUMMARY_PROMPT.format(
            server_name=server_name,
            tool_name=tool_name,
            args=json.dumps(args, indent=2, default=str),
            result=json.dumps(result, indent=2, default=str),
        )
        return self.stream_response(prompt, [], [], [], translator)
