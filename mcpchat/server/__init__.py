"""
mcpchat Server - HTTP API for chatting with OAuth-protected MCP tool servers.

Run with:
    mcpchat-server            # CLI entry point
    python -m mcpchat.server  # Module entry point

Or programmatically:
    from mcpchat.server import MCPChatServer
    server = MCPChatServer(port=8000)
    server.run()
"""

from .app import MCPChatServer, create_app
from .config import ServerConfig
from .conversations import ConversationService
from .database import Database, DatabaseKeyValueStore, get_database
from .registry import MCPServers

__all__ = [
    "create_app",
    "MCPChatServer",
    "ServerConfig",
    "ConversationService",
    "MCPServers",
    "get_database",
    "Database",
    "DatabaseKeyValueStore",
]
