"""
Tool-server registry: record-store CRUD plus connections bound to it.
"""

import logging
from typing import Any, Dict, List, Optional

from ..auth.flow import AuthorizationClient
from ..auth.provider import decode_state
from ..connection import MCPServerConnection, SessionOpener
from ..exceptions import MCPChatError
from ..models import ServerMetadata
from ..token_cache import TokenCache
from .database import Database

logger = logging.getLogger("mcpchat.server.registry")


class MCPServers:
    """Configured tool servers and the connections that talk to them."""

    def __init__(
        self,
        db: Database,
        token_cache: TokenCache,
        redirect_url: Optional[str],
        auth_client: Optional[AuthorizationClient] = None,
        session_opener: Optional[SessionOpener] = None,
    ):
        self.db = db
        self.token_cache = token_cache
        self.redirect_url = redirect_url
        self.auth_client = auth_client or AuthorizationClient()
        self._session_opener = session_opener

    def list(self) -> List[ServerMetadata]:
        return self.db.list_servers()

    def get_metadata(self, server_id: str) -> ServerMetadata:
        return self.db.get_server(server_id)

    def upsert(self, data: Dict[str, Any]) -> ServerMetadata:
        server = self.db.upsert_server(data)
        logger.info("Saved MCP server '%s' (%s)", server.name, server.id)
        return server

    def delete(self, server_id: str) -> bool:
        deleted = self.db.delete_server(server_id)
        if deleted:
            logger.info("Deleted MCP server %s", server_id)
        return deleted

    def set_is_connected(self, server_id: str, is_connected: bool) -> None:
        self.db.set_is_connected(server_id, is_connected)

    def save_client_info(self, server_id: str, client_info: Optional[Dict[str, Any]]) -> None:
        self.db.save_client_info(server_id, client_info)

    def connection(self, metadata: ServerMetadata) -> MCPServerConnection:
        """Connection for ``metadata`` whose hooks write back to the record store."""
        server_id = metadata.id
        return MCPServerConnection(
            metadata,
            self.redirect_url,
            self.token_cache,
            auth_client=self.auth_client,
            on_connect=lambda: self.set_is_connected(server_id, True),
            on_disconnect=lambda: self.set_is_connected(server_id, False),
            save_client_info=lambda info: self.save_client_info(server_id, info),
            session_opener=self._session_opener,
        )

    def get(self, server_id: str) -> MCPServerConnection:
        return self.connection(self.get_metadata(server_id))

    async def finish_oauth(self, code: str, state: str) -> ServerMetadata:
        """Complete the authorization redirect identified by ``state``."""
        try:
            server_id = decode_state(state)["serverId"]
        except ValueError as e:
            raise MCPChatError(str(e), status_code=400) from None
        async with self.get(server_id) as connection:
            await connection.finish_oauth(code)
        return self.get_metadata(server_id)
