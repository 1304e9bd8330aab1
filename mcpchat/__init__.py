"""
mcpchat - Chat backend and client for OAuth-protected MCP tool servers.

Authorizes against remote tool servers, streams completion responses as
NDJSON events and folds them into renderable conversation state.
"""

from .auth import AuthorizationClient, AuthorizationOutcome, OAuthProvider
from .cancellation import CancellationRegistry, CancellationToken
from .client import AsyncChatClient
from .connection import ConnectionState, MCPServerConnection, MCPSession
from .exceptions import (
    AccessDeniedError,
    APIError,
    AuthenticationError,
    ConnectionAuthError,
    EventOrderError,
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    MCPChatError,
    NotFoundError,
    OAuthError,
    ServerError,
    StoreNotInitializedError,
    TemporarilyUnavailableError,
    TranslationError,
    TransportError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from .models import (
    Attachment,
    AuthorizationServerMetadata,
    AuthorizedServer,
    AuthResult,
    AuthType,
    ClientRegistration,
    ResponseEvent,
    ResponseEventType,
    ServerMetadata,
    TokenSet,
    TransportType,
)
from .ndjson import decode_stream, encode_line, encode_stream
from .provider import OpenAIResponsesProvider
from .reducer import ConversationAccumulator, ConversationResponseState, reduce_event
from .token_cache import KeyValueStore, MemoryKeyValueStore, TokenCache
from .translator import CompletionEventTranslator, FunctionCallRegistry, FunctionDef

__version__ = "0.1.0"

__all__ = [
    # Auth
    "AuthorizationClient",
    "AuthorizationOutcome",
    "OAuthProvider",
    # Connections
    "ConnectionState",
    "MCPServerConnection",
    "MCPSession",
    # Streaming
    "CompletionEventTranslator",
    "FunctionCallRegistry",
    "FunctionDef",
    "OpenAIResponsesProvider",
    "encode_line",
    "encode_stream",
    "decode_stream",
    "ConversationAccumulator",
    "ConversationResponseState",
    "reduce_event",
    "CancellationRegistry",
    "CancellationToken",
    # Client
    "AsyncChatClient",
    # Storage
    "KeyValueStore",
    "MemoryKeyValueStore",
    "TokenCache",
    # Models
    "Attachment",
    "AuthorizationServerMetadata",
    "AuthorizedServer",
    "AuthResult",
    "AuthType",
    "ClientRegistration",
    "ResponseEvent",
    "ResponseEventType",
    "ServerMetadata",
    "TokenSet",
    "TransportType",
    # Exceptions
    "MCPChatError",
    "APIError",
    "AuthenticationError",
    "NotFoundError",
    "ConnectionAuthError",
    "EventOrderError",
    "StoreNotInitializedError",
    "TranslationError",
    "TransportError",
    "OAuthError",
    "AccessDeniedError",
    "InvalidClientError",
    "InvalidGrantError",
    "InvalidRequestError",
    "InvalidScopeError",
    "ServerError",
    "TemporarilyUnavailableError",
    "UnauthorizedClientError",
    "UnsupportedGrantTypeError",
]
