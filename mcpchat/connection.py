"""
mcpchat - Connection to one remote MCP tool server.

``MCPServerConnection`` obtains a bearer token through the authorization
flow, opens an MCP client session over streamable HTTP or SSE, and exposes
tool/resource listing and tool invocation. Connect and disconnect
transitions are reported through hooks so the record store can keep
``isConnected`` current.

State machine::

    DISCONNECTED -> AUTHORIZING -> CONNECTED
    AUTHORIZING  -> DISCONNECTED   (authorization or transport failure)
    CONNECTED    -> DISCONNECTED   (disconnect() or transport failure)
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from .auth.flow import AuthorizationClient, AuthorizationOutcome
from .auth.provider import OAuthProvider, call_hook
from .exceptions import (
    ConnectionAuthError,
    InvalidGrantError,
    MCPChatError,
    StoreNotInitializedError,
    TransportError,
)
from .models import AuthResult, AuthType, ServerMetadata, TransportType
from .token_cache import TokenCache

logger = logging.getLogger("mcpchat.connection")

Hook = Optional[Callable[[], Any]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    AUTHORIZING = "authorizing"
    CONNECTED = "connected"


class MCPSession:
    """An initialized MCP client session over a network transport."""

    def __init__(
        self,
        url: str,
        transport_type: str = TransportType.STREAMABLE_HTTP.value,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.url = url
        self.transport_type = transport_type
        self.headers = headers or {}
        self.capabilities: Any = None
        self._session: Optional[ClientSession] = None
        self._stack: Optional[AsyncExitStack] = None

    async def open(self) -> "MCPSession":
        stack = AsyncExitStack()
        try:
            if self.transport_type == TransportType.SSE.value:
                read, write = await stack.enter_async_context(
                    sse_client(self.url, headers=self.headers)
                )
            else:
                read, write, _ = await stack.enter_async_context(
                    streamablehttp_client(self.url, headers=self.headers)
                )
            session = await stack.enter_async_context(ClientSession(read, write))
            result = await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self.capabilities = result.capabilities
        self._session = session
        self._stack = stack
        return self

    async def close(self) -> None:
        stack, self._stack, self._session = self._stack, None, None
        if stack is not None:
            await stack.aclose()

    def _require(self) -> ClientSession:
        if self._session is None:
            raise TransportError(f"MCP session to {self.url} is not open")
        return self._session

    @property
    def supports_resources(self) -> bool:
        return bool(getattr(self.capabilities, "resources", None))

    async def list_tools(self) -> list[dict[str, Any]]:
        response = await self._require().list_tools()
        return [
            {
                "name": t.name,
                "description": getattr(t, "description", "") or "",
                "inputSchema": getattr(t, "inputSchema", {}) or {},
            }
            for t in response.tools
        ]

    async def list_resources(self) -> list[dict[str, Any]]:
        response = await self._require().list_resources()
        return [r.model_dump(mode="json", by_alias=True, exclude_none=True) for r in response.resources]

    async def read_resource(self, uri: str) -> dict[str, Any]:
        response = await self._require().read_resource(uri)
        return response.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        result = await self._require().call_tool(name, arguments)
        return {
            "content": [
                {
                    "type": getattr(c, "type", "text"),
                    "text": getattr(c, "text", str(c)),
                }
                for c in result.content
            ],
            "isError": bool(getattr(result, "isError", False)),
        }


SessionOpener = Callable[[ServerMetadata, dict[str, str]], Awaitable[Any]]


async def open_mcp_session(metadata: ServerMetadata, headers: dict[str, str]) -> MCPSession:
    """Default session opener: a live MCP session for ``metadata``."""
    session = MCPSession(metadata.url, metadata.transport_type, headers)
    return await session.open()


class MCPServerConnection:
    """Per-server facade over authorization and the MCP transport.

    Args:
        metadata: The server record.
        redirect_url: OAuth redirect URL registered for this backend.
        token_cache: Cache holding tokens and PKCE verifiers.
        auth_client: Authorization flow implementation.
        on_connect: Called after a session opens (persists ``isConnected=True``).
        on_disconnect: Called on failure or explicit disconnect.
        save_client_info: Called with new/cleared client registration info.
        session_opener: Coroutine function opening the transport session.
    """

    def __init__(
        self,
        metadata: ServerMetadata,
        redirect_url: Optional[str],
        token_cache: TokenCache,
        auth_client: Optional[AuthorizationClient] = None,
        on_connect: Hook = None,
        on_disconnect: Hook = None,
        save_client_info: Optional[Callable[[Optional[dict[str, Any]]], Any]] = None,
        session_opener: Optional[SessionOpener] = None,
    ) -> None:
        self.metadata = metadata
        self.state = ConnectionState.DISCONNECTED
        self.oauth_provider = OAuthProvider(
            metadata, token_cache, redirect_url, save_client_info=save_client_info
        )
        self._auth_client = auth_client or AuthorizationClient()
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._session_opener = session_opener or open_mcp_session
        self._session: Any = None

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._session is not None

    @property
    def uses_oauth(self) -> bool:
        return self.metadata.auth_type == AuthType.OAUTH.value

    async def __aenter__(self) -> "MCPServerConnection":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- authorization --------------------------------------------------------

    async def auth(self, authorization_code: Optional[str] = None) -> AuthorizationOutcome:
        """Run the authorization flow for this server."""
        if not self.uses_oauth:
            return AuthorizationOutcome(AuthResult.AUTHORIZED)
        scope = (self.metadata.oauth_client_info or {}).get("scope")
        return await self._auth_client.authorize(
            self.oauth_provider,
            self.metadata.url,
            metadata=self.metadata.oauth_metadata,
            authorization_code=authorization_code,
            scope=scope,
        )

    async def _auth_with_retry(self) -> AuthorizationOutcome:
        try:
            return await self.auth()
        except InvalidGrantError:
            logger.warning(
                "Invalid grant for MCP server '%s'; retrying authorization once",
                self.metadata.name,
            )
            await self.oauth_provider.delete_tokens()
            try:
                return await self.auth()
            except InvalidGrantError as e:
                await self.oauth_provider.delete_tokens()
                raise ConnectionAuthError("Invalid grant. Please try again.") from e

    async def connect(
        self, on_redirect: Optional[Callable[[str], Any]] = None
    ) -> Optional[Any]:
        """Authorize and open the transport.

        Returns the open session, or None when the user must first complete
        an authorization redirect (delivered through ``on_redirect``). In
        that case the connection stays AUTHORIZING until :meth:`finish_oauth`.

        Raises:
            ConnectionAuthError: If the server cannot be authorized.
            TransportError: If the transport cannot be opened.
        """
        if on_redirect is not None:
            self.oauth_provider.on_redirect = on_redirect
        if self.connected:
            return self._session

        self.state = ConnectionState.AUTHORIZING
        logger.info("Connecting to MCP server '%s'", self.metadata.name)
        try:
            outcome = await self._auth_with_retry()
        except StoreNotInitializedError:
            self.state = ConnectionState.DISCONNECTED
            raise
        except ConnectionAuthError:
            await self._mark_disconnected()
            raise
        except Exception as e:
            await self._mark_disconnected()
            raise ConnectionAuthError(str(e) or type(e).__name__) from e

        if outcome.result == AuthResult.REDIRECT:
            logger.info("MCP server '%s' awaits user authorization", self.metadata.name)
            return None
        return await self._open(outcome)

    async def finish_oauth(self, authorization_code: str) -> Any:
        """Complete an authorization redirect with the returned code and connect."""
        self.state = ConnectionState.AUTHORIZING
        try:
            outcome = await self.auth(authorization_code)
        except StoreNotInitializedError:
            self.state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            await self._mark_disconnected()
            raise ConnectionAuthError(str(e) or type(e).__name__) from e
        return await self._open(outcome)

    async def _open(self, outcome: AuthorizationOutcome) -> Any:
        headers: dict[str, str] = {}
        if outcome.tokens is not None:
            headers["Authorization"] = f"Bearer {outcome.tokens.access_token}"
        try:
            self._session = await self._session_opener(self.metadata, headers)
        except Exception as e:
            await self._mark_disconnected()
            raise TransportError(
                f"Could not open MCP session to '{self.metadata.name}': {e}"
            ) from e
        self.state = ConnectionState.CONNECTED
        logger.info("Connected to MCP server '%s'", self.metadata.name)
        await call_hook(self._on_connect)
        return self._session

    async def _mark_disconnected(self) -> None:
        self.state = ConnectionState.DISCONNECTED
        await call_hook(self._on_disconnect)

    # -- teardown -------------------------------------------------------------

    async def close(self) -> None:
        """Close the transport without reporting a disconnect."""
        session, self._session = self._session, None
        if session is not None:
            await session.close()
        if self.state == ConnectionState.CONNECTED:
            self.state = ConnectionState.DISCONNECTED

    async def disconnect(self) -> None:
        """Close the transport and fire the on-disconnect hook."""
        try:
            await self.close()
        finally:
            await self._mark_disconnected()
            logger.info("Disconnected from MCP server '%s'", self.metadata.name)

    # -- MCP operations -------------------------------------------------------

    async def _require_session(self) -> Any:
        session = await self.connect()
        if session is None:
            raise ConnectionAuthError(
                f"MCP server '{self.metadata.name}' requires authorization"
            )
        return session

    async def _call(self, operation: str, *args: Any) -> Any:
        session = await self._require_session()
        try:
            return await getattr(session, operation)(*args)
        except Exception as e:
            logger.warning(
                "MCP %s failed on server '%s': %s", operation, self.metadata.name, e
            )
            await self.close()
            await self._mark_disconnected()
            raise TransportError(f"MCP {operation} failed on '{self.metadata.name}': {e}") from e

    async def list_tools(self) -> list[dict[str, Any]]:
        """List tools, filtered by ``allowed_tools`` when set."""
        tools = await self._call("list_tools")
        allowed = self.metadata.allowed_tools
        if allowed is not None:
            tools = [t for t in tools if t["name"] in allowed]
        return tools

    async def list_resources(self) -> list[dict[str, Any]]:
        """List resources; empty when the server has no resources capability."""
        session = await self._require_session()
        if not session.supports_resources:
            return []
        return await self._call("list_resources")

    async def read_resource(self, uri: str) -> dict[str, Any]:
        return await self._call("read_resource", uri)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        allowed = self.metadata.allowed_tools
        if allowed is not None and name not in allowed:
            raise MCPChatError(f"Tool '{name}' is not allowed on '{self.metadata.name}'")
        logger.info(
            "MCP tool invoke: server='%s' tool='%s' args=%s",
            self.metadata.name,
            name,
            list(arguments.keys()),
        )
        result = await self._call("call_tool", name, arguments)
        return {"server": self.metadata.name, "tool": name, **result}
