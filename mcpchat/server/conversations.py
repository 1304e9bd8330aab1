"""
Conversation service: resolves tool-server tokens and streams responses.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional

from ..auth.provider import OAuthProvider
from ..exceptions import ConnectionAuthError, StoreNotInitializedError
from ..models import Attachment, AuthorizedServer, AuthResult, AuthType, ServerMetadata
from ..provider import OpenAIResponsesProvider
from ..translator import CompletionEventTranslator, FunctionCallRegistry
from .registry import MCPServers

logger = logging.getLogger("mcpchat.server.conversations")


class ConversationService:
    """Sends messages to the completion provider on behalf of one backend."""

    def __init__(
        self,
        servers: MCPServers,
        provider: OpenAIResponsesProvider,
        functions: Optional[FunctionCallRegistry] = None,
        max_function_turns: int = 5,
    ):
        self.servers = servers
        self.provider = provider
        self.functions = functions or FunctionCallRegistry()
        self.max_function_turns = max_function_turns

    def translator(self) -> CompletionEventTranslator:
        return CompletionEventTranslator(self.functions, max_turns=self.max_function_turns)

    async def resolve_server(self, metadata: ServerMetadata) -> AuthorizedServer:
        """Pair a server with a bearer token, refreshing it when expired.

        Raises:
            ConnectionAuthError: If no usable token can be obtained without
                user interaction.
        """
        if metadata.auth_type != AuthType.OAUTH.value:
            return AuthorizedServer(metadata)

        provider = OAuthProvider(
            metadata,
            self.servers.token_cache,
            self.servers.redirect_url,
            save_client_info=lambda info: self.servers.save_client_info(metadata.id, info),
        )
        tokens = await provider.tokens()
        if tokens is None:
            raise ConnectionAuthError(f"MCP server '{metadata.name}' is not connected")
        if tokens.is_expired():
            logger.info("Token for MCP server '%s' expired; refreshing", metadata.name)
            try:
                outcome = await self.servers.auth_client.authorize(
                    provider, metadata.url, metadata=metadata.oauth_metadata
                )
            except StoreNotInitializedError:
                raise
            except Exception as e:
                raise ConnectionAuthError(
                    f"Could not refresh authorization for '{metadata.name}': {e}"
                ) from e
            if outcome.result == AuthResult.REDIRECT or outcome.tokens is None:
                raise ConnectionAuthError(
                    f"MCP server '{metadata.name}' needs to be reconnected"
                )
            tokens = outcome.tokens
        return AuthorizedServer(metadata, tokens.access_token)

    async def resolve_servers(self, server_ids: List[str]) -> List[AuthorizedServer]:
        records = [self.servers.get_metadata(server_id) for server_id in server_ids]
        return list(await asyncio.gather(*(self.resolve_server(m) for m in records)))

    async def send_message(
        self,
        message: str,
        attachments: List[Attachment],
        server_ids: List[str],
        enabled_default_tools: List[str],
        reference_id: Optional[str] = None,
    ) -> AsyncIterator[bytes]:
        """Resolve tokens, then return the NDJSON response stream.

        Token resolution happens before the stream starts so authorization
        failures surface as a regular error response.
        """
        servers = await self.resolve_servers(server_ids)
        return self.provider.stream_response(
            message,
            attachments,
            servers,
            enabled_default_tools,
            self.translator(),
            reference_id=reference_id,
        )

    def tool_summary(self, server_name: str, tool_name: str, args: Any, result: Any) -> AsyncIterator[bytes]:
        return self.provider.stream_tool_summary(
            server_name, tool_name, args, result, self.translator()
        )
