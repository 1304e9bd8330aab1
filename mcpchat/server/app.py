"""
FastAPI application for the mcpchat server.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..auth.flow import AuthorizationClient
from ..connection import SessionOpener
from ..exceptions import ConnectionAuthError, MCPChatError, NotFoundError
from ..models import Attachment
from ..ndjson import NDJSON_MEDIA_TYPE
from ..provider import OpenAIResponsesProvider
from ..token_cache import TokenCache
from ..translator import FunctionCallRegistry
from .config import ServerConfig
from .conversations import ConversationService
from .database import DatabaseKeyValueStore, get_database
from .registry import MCPServers

logger = logging.getLogger("mcpchat.server")

STREAM_HEADERS = {
    "Transfer-Encoding": "chunked",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class MCPServerCreate(BaseModel):
    id: Optional[str] = None
    name: str
    url: str
    transport_type: Optional[str] = Field(None, alias="transportType")
    auth_type: Optional[str] = Field(None, alias="authType")
    logo_url: Optional[str] = Field(None, alias="logoUrl")
    allowed_tools: Optional[List[str]] = Field(None, alias="allowedTools")
    oauth_client_info: Optional[Dict[str, Any]] = Field(None, alias="oauthClientInfo")
    oauth_metadata: Optional[Dict[str, Any]] = Field(None, alias="oauthMetadata")

    class Config:
        populate_by_name = True


class OAuthCallback(BaseModel):
    code: str
    state: str


class AttachmentIn(BaseModel):
    mime_type: str = Field(..., alias="mimeType")
    text: Optional[str] = None
    image_url: Optional[str] = None
    file_data: Optional[str] = None
    filename: Optional[str] = None

    class Config:
        populate_by_name = True

    def to_attachment(self) -> Attachment:
        return Attachment(
            mime_type=self.mime_type,
            text=self.text,
            image_url=self.image_url,
            file_data=self.file_data,
            filename=self.filename,
        )


class MCPServerRef(BaseModel):
    id: str


class SendMessageRequest(BaseModel):
    message: str
    attachments: List[AttachmentIn] = Field(default_factory=list)
    mcp_servers: List[MCPServerRef] = Field(default_factory=list, alias="mcpServers")
    enabled_default_tools: List[str] = Field(default_factory=list, alias="enabledDefaultTools")
    reference_id: Optional[str] = Field(None, alias="referenceId")

    class Config:
        populate_by_name = True


class ToolSummaryRequest(BaseModel):
    server_name: str = Field(..., alias="serverName")
    tool_name: str = Field(..., alias="toolName")
    args: Any = None
    result: Any = None

    class Config:
        populate_by_name = True


def create_app(
    config: Optional[ServerConfig] = None,
    provider: Optional[OpenAIResponsesProvider] = None,
    auth_client: Optional[AuthorizationClient] = None,
    session_opener: Optional[SessionOpener] = None,
    functions: Optional[FunctionCallRegistry] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``provider``, ``auth_client`` and ``session_opener`` replace the live
    OpenAI, authorization-server and MCP transport collaborators.
    """
    if config is None:
        config = ServerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = get_database(config.database_url)
        token_cache = TokenCache(DatabaseKeyValueStore(db))
        app.state.db = db
        app.state.config = config
        app.state.servers = MCPServers(
            db,
            token_cache,
            config.redirect_url,
            auth_client=auth_client,
            session_opener=session_opener,
        )
        app.state.conversations = None
        yield

    app = FastAPI(
        title="mcpchat Server",
        description="Chat backend for OAuth-protected MCP tool servers",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_servers() -> MCPServers:
        return app.state.servers

    def get_conversations() -> ConversationService:
        # The OpenAI client is only built once a conversation needs it.
        if app.state.conversations is None:
            app.state.conversations = ConversationService(
                app.state.servers,
                provider
                or OpenAIResponsesProvider(
                    api_key=config.openai_api_key,
                    base_url=config.openai_base_url,
                    model=config.model,
                    web_search_url=config.web_search_mcp_url,
                ),
                functions=functions,
                max_function_turns=config.max_function_turns,
            )
        return app.state.conversations

    def validate_api_key(x_api_key: str = Header(None)) -> str:
        if x_api_key is None or x_api_key not in app.state.config.api_keys:
            raise HTTPException(status_code=401, detail="Invalid or missing API key")
        return x_api_key

    # ==================== Errors ====================

    @app.exception_handler(ConnectionAuthError)
    async def connection_auth_error_handler(request: Request, exc: ConnectionAuthError):
        logger.warning("MCP connection error on %s: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=403,
            content={
                "error": "MCP Connection Error",
                "code": ConnectionAuthError.code,
                "message": exc.message,
            },
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": "Not Found", "message": exc.message})

    @app.exception_handler(MCPChatError)
    async def mcpchat_error_handler(request: Request, exc: MCPChatError):
        if exc.status_code is not None and 400 <= exc.status_code < 500:
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": "Bad Request", "message": exc.message},
            )
        logger.error("Request to %s failed: %s", request.url.path, exc.message)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "message": str(exc)},
        )

    # ==================== Tool servers ====================

    @app.get("/api")
    async def index():
        return {"name": "mcpchat", "version": "0.1.0"}

    @app.post("/api/mcp/add")
    async def add_server(
        server: MCPServerCreate,
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        data = server.model_dump(exclude_none=True)
        return servers.upsert(data).to_dict()

    @app.get("/api/mcp/list")
    async def list_servers(
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        return [s.to_dict() for s in servers.list()]

    @app.delete("/api/mcp/{server_id}")
    async def delete_server(
        server_id: str,
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        if not servers.delete(server_id):
            raise NotFoundError(f"MCP server not found: {server_id}", status_code=404)
        return {"success": True}

    @app.post("/api/mcp/oauth/callback")
    async def oauth_callback(
        body: OAuthCallback,
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        await servers.finish_oauth(body.code, body.state)
        return {"success": True}

    @app.post("/api/mcp/{server_id}/connect")
    async def connect_server(
        server_id: str,
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        redirect: Dict[str, str] = {}
        async with servers.get(server_id) as connection:
            session = await connection.connect(
                on_redirect=lambda url: redirect.setdefault("url", url)
            )
        if session is None:
            return {"redirectUrl": redirect.get("url")}
        return {"success": True}

    @app.post("/api/mcp/{server_id}/disconnect")
    async def disconnect_server(
        server_id: str,
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        connection = servers.get(server_id)
        await connection.disconnect()
        return {"success": True}

    @app.get("/api/mcp/{server_id}/tools/list")
    async def list_tools(
        server_id: str,
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        async with servers.get(server_id) as connection:
            return {"tools": await connection.list_tools()}

    @app.get("/api/mcp/{server_id}/resources/list")
    async def list_resources(
        server_id: str,
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        async with servers.get(server_id) as connection:
            return {"resources": await connection.list_resources()}

    @app.get("/api/mcp/{server_id}/resources/read")
    async def read_resource(
        server_id: str,
        resource_uri: str = Query(..., alias="resourceURI"),
        servers: MCPServers = Depends(get_servers),
        api_key: str = Depends(validate_api_key),
    ):
        async with servers.get(server_id) as connection:
            return await connection.read_resource(resource_uri)

    # ==================== Conversations ====================

    @app.post("/api/conversations/send")
    async def send_message(
        body: SendMessageRequest,
        conversations: ConversationService = Depends(get_conversations),
        api_key: str = Depends(validate_api_key),
    ):
        stream = await conversations.send_message(
            body.message,
            [a.to_attachment() for a in body.attachments],
            [s.id for s in body.mcp_servers],
            body.enabled_default_tools,
            reference_id=body.reference_id,
        )
        return StreamingResponse(stream, media_type=NDJSON_MEDIA_TYPE, headers=STREAM_HEADERS)

    @app.post("/api/mcp/tools/call/summary")
    async def tool_call_summary(
        body: ToolSummaryRequest,
        conversations: ConversationService = Depends(get_conversations),
        api_key: str = Depends(validate_api_key),
    ):
        stream = conversations.tool_summary(body.server_name, body.tool_name, body.args, body.result)
        return StreamingResponse(stream, media_type=NDJSON_MEDIA_TYPE, headers=STREAM_HEADERS)

    return app


class MCPChatServer:
    """High-level server class for running mcpchat."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8000,
        database_url: Optional[str] = None,
        api_keys: Optional[set] = None,
        **kwargs,
    ):
        self.config = ServerConfig.from_env()
        self.config.host = host
        self.config.port = port
        if database_url:
            self.config.database_url = database_url
        if api_keys:
            self.config.api_keys = api_keys
        for key, value in kwargs.items():
            setattr(self.config, key, value)
        self.app = create_app(self.config)

    def run(self):
        """Run the server (blocking)."""
        import uvicorn

        logging.basicConfig(level=self.config.log_level.upper())
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level,
        )
