"""
mcpchat - Asynchronous HTTP client for the mcpchat server API.

Decodes streamed NDJSON responses and folds them through the conversation
reducer, handing each snapshot to an update callback.
"""

import logging
from typing import Any, Optional, Union

import httpx

from .cancellation import DEFAULT_KEY, CancellationRegistry
from .exceptions import (
    APIError,
    AuthenticationError,
    ConnectionAuthError,
    NotFoundError,
)
from .models import Attachment, ServerMetadata
from .ndjson import decode_stream
from .reducer import ConversationAccumulator, ConversationResponseState, UpdateCallback

logger = logging.getLogger("mcpchat.client")

ServerRef = Union[ServerMetadata, str]


def _json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


class AsyncChatClient:
    """
    Asynchronous client for the mcpchat server.

    Example:
        ```python
        async with AsyncChatClient("http://localhost:8000", api_key="dev-user-key") as client:
            servers = await client.list_servers()
            state = await client.send_message(
                "Summarize my open tickets",
                servers=[s for s in servers if s.is_connected],
                on_update=lambda snapshot, is_start: render(snapshot),
            )
            print(state.output_text())
        ```

    Sending a new message under the same cancellation key aborts the one
    still streaming; an aborted call returns the state folded so far.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.cancellations = CancellationRegistry()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "X-API-Key": api_key,
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle HTTP response and raise appropriate exceptions."""
        data = _json(response)
        message = data.get("message") if isinstance(data, dict) else None
        if response.status_code == 401:
            raise AuthenticationError(
                "Invalid or missing API key", status_code=401, response=data
            )
        elif response.status_code == 403 and isinstance(data, dict) and (
            data.get("code") == ConnectionAuthError.code
        ):
            raise ConnectionAuthError(
                message or "MCP connection error", status_code=403, response=data
            )
        elif response.status_code == 404:
            raise NotFoundError(
                message or "Resource not found", status_code=404, response=data
            )
        elif response.status_code >= 400:
            raise APIError(
                message or f"Request failed with status {response.status_code}",
                status_code=response.status_code,
                response=data,
            )
        return data if data is not None else {}

    # ==================== Tool servers ====================

    async def add_server(self, server: Union[ServerMetadata, dict[str, Any]]) -> ServerMetadata:
        payload = server.to_dict() if isinstance(server, ServerMetadata) else dict(server)
        payload = {k: v for k, v in payload.items() if v is not None}
        payload.pop("isConnected", None)
        response = await self._client.post("/api/mcp/add", json=payload)
        return ServerMetadata.from_dict(self._handle_response(response))

    async def list_servers(self) -> list[ServerMetadata]:
        response = await self._client.get("/api/mcp/list")
        return [ServerMetadata.from_dict(s) for s in self._handle_response(response)]

    async def delete_server(self, server_id: str) -> None:
        response = await self._client.delete(f"/api/mcp/{server_id}")
        self._handle_response(response)

    async def connect_server(self, server_id: str) -> Optional[str]:
        """Connect a server; returns the authorization URL when the user must sign in."""
        response = await self._client.post(f"/api/mcp/{server_id}/connect")
        return self._handle_response(response).get("redirectUrl")

    async def disconnect_server(self, server_id: str) -> None:
        response = await self._client.post(f"/api/mcp/{server_id}/disconnect")
        self._handle_response(response)

    async def finish_oauth(self, code: str, state: str) -> None:
        response = await self._client.post(
            "/api/mcp/oauth/callback", json={"code": code, "state": state}
        )
        self._handle_response(response)

    async def list_tools(self, server_id: str) -> list[dict[str, Any]]:
        response = await self._client.get(f"/api/mcp/{server_id}/tools/list")
        return self._handle_response(response).get("tools", [])

    async def list_resources(self, server_id: str) -> list[dict[str, Any]]:
        response = await self._client.get(f"/api/mcp/{server_id}/resources/list")
        return self._handle_response(response).get("resources", [])

    async def read_resource(self, server_id: str, uri: str) -> dict[str, Any]:
        response = await self._client.get(
            f"/api/mcp/{server_id}/resources/read", params={"resourceURI": uri}
        )
        return self._handle_response(response)

    # ==================== Conversations ====================

    async def send_message(
        self,
        message: str,
        attachments: Optional[list[Attachment]] = None,
        servers: Optional[list[ServerRef]] = None,
        enabled_default_tools: Optional[list[str]] = None,
        reference_id: Optional[str] = None,
        on_update: Optional[UpdateCallback] = None,
        cancel_key: str = DEFAULT_KEY,
    ) -> ConversationResponseState:
        """Send a message and fold the streamed response.

        Args:
            message: User message.
            attachments: Content sent along with the message.
            servers: Tool servers (records or ids) the model may use.
            enabled_default_tools: Any of ``web-search``, ``python``, ``image-generation``.
            reference_id: Response id of the previous turn, to continue a conversation.
            on_update: Called with ``(snapshot, is_start)`` after every event.
            cancel_key: Requests sharing a key replace each other.

        Raises:
            ConnectionAuthError: If a tool server needs to be reconnected.
            APIError: If the server reports a streaming failure.
        """
        body: dict[str, Any] = {
            "message": message,
            "attachments": [a.to_dict() for a in attachments or []],
            "mcpServers": [
                {"id": s.id if isinstance(s, ServerMetadata) else s} for s in servers or []
            ],
            "enabledDefaultTools": list(enabled_default_tools or []),
        }
        if reference_id:
            body["referenceId"] = reference_id
        return await self._stream("/api/conversations/send", body, on_update, cancel_key)

    async def tool_summary(
        self,
        server_name: str,
        tool_name: str,
        args: Any,
        result: Any,
        on_update: Optional[UpdateCallback] = None,
        cancel_key: str = "tool-summary",
    ) -> ConversationResponseState:
        """Stream a short summary of a finished tool call."""
        body = {"serverName": server_name, "toolName": tool_name, "args": args, "result": result}
        return await self._stream("/api/mcp/tools/call/summary", body, on_update, cancel_key)

    def abort(self, cancel_key: str = DEFAULT_KEY) -> bool:
        """Abort the request streaming under ``cancel_key``, if any."""
        return self.cancellations.abort(cancel_key)

    async def _stream(
        self,
        path: str,
        body: dict[str, Any],
        on_update: Optional[UpdateCallback],
        cancel_key: str,
    ) -> ConversationResponseState:
        token = self.cancellations.start(cancel_key)
        accumulator = ConversationAccumulator(on_update)
        try:
            async with self._client.stream("POST", path, json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._handle_response(response)
                async for raw in decode_stream(token.iterate(response.aiter_bytes())):
                    if token.cancelled:
                        break
                    self._fold(accumulator, raw)
        finally:
            self.cancellations.finish(token)
        return accumulator.state

    @staticmethod
    def _fold(accumulator: ConversationAccumulator, raw: Any) -> None:
        if not isinstance(raw, dict):
            logger.warning("Ignoring non-object stream line: %r", raw)
            return
        if raw.get("type") == "error":
            raise APIError(raw.get("error") or "Streaming failed", response=raw)
        try:
            accumulator.feed(raw)
        except ValueError:
            logger.warning("Ignoring unknown response event type %r", raw.get("type"))

    async def close(self) -> None:
        """Close the HTTP client connection."""
        self.cancellations.abort_all()
        await self._client.aclose()

    async def __aenter__(self) -> "AsyncChatClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
