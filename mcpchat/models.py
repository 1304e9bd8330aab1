"""
mcpchat - Data models shared by the backend, the wire protocol and the client.

Wire-facing ``to_dict()`` output uses camelCase keys, matching what browsers
and the NDJSON stream expect. ``from_dict()`` accepts both camelCase and
snake_case so records coming out of the relational store load unchanged.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def _pick(data: dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


class TransportType(str, Enum):
    """Network transport used to reach a remote tool server."""

    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"


class AuthType(str, Enum):
    """How requests to a tool server are authorized."""

    OAUTH = "oauth"
    AUTHORIZATION_TOKEN = "authorizationToken"
    NONE = "none"


class AuthResult(str, Enum):
    """Outcome of an authorization attempt."""

    AUTHORIZED = "AUTHORIZED"
    REDIRECT = "REDIRECT"


@dataclass
class ServerMetadata:
    """One configured remote tool server."""

    id: str
    name: str
    url: str
    transport_type: str = TransportType.STREAMABLE_HTTP.value
    auth_type: str = AuthType.OAUTH.value
    is_connected: bool = False
    logo_url: Optional[str] = None
    allowed_tools: Optional[list[str]] = None
    oauth_client_info: Optional[dict[str, Any]] = None
    oauth_metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "transportType": self.transport_type,
            "authType": self.auth_type,
            "isConnected": self.is_connected,
            "logoUrl": self.logo_url,
            "allowedTools": self.allowed_tools,
            "oauthClientInfo": self.oauth_client_info,
            "oauthMetadata": self.oauth_metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerMetadata":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            url=data["url"],
            transport_type=(
                _pick(data, "transportType", "transport_type")
                or TransportType.STREAMABLE_HTTP.value
            ),
            auth_type=_pick(data, "authType", "auth_type") or AuthType.OAUTH.value,
            is_connected=bool(_pick(data, "isConnected", "is_connected", False)),
            logo_url=_pick(data, "logoUrl", "logo_url"),
            allowed_tools=_pick(data, "allowedTools", "allowed_tools"),
            oauth_client_info=_pick(data, "oauthClientInfo", "oauth_client_info"),
            oauth_metadata=_pick(data, "oauthMetadata", "oauth_metadata"),
        )


@dataclass
class TokenSet:
    """OAuth 2.0 token set for one tool server.

    ``expires_at`` is epoch milliseconds, computed when the set is saved.
    A set without ``expires_at`` is treated as non-expiring until a call
    with it fails.
    """

    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[int] = None
    scope: Optional[str] = None

    def is_expired(self, at: Optional[int] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (at if at is not None else now_ms())

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }
        for key in ("refresh_token", "expires_in", "expires_at", "scope"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenSet":
        expires_in = data.get("expires_in")
        expires_at = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            expires_at=int(expires_at) if expires_at is not None else None,
            scope=data.get("scope"),
        )


@dataclass
class ClientRegistration:
    """OAuth client credentials issued by dynamic client registration."""

    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: Optional[int] = None
    client_secret_expires_at: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def scope(self) -> Optional[str]:
        return self.metadata.get("scope")

    def to_dict(self) -> dict[str, Any]:
        result = dict(self.metadata)
        result["client_id"] = self.client_id
        for key in ("client_secret", "client_id_issued_at", "client_secret_expires_at"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClientRegistration":
        known = {"client_id", "client_secret", "client_id_issued_at", "client_secret_expires_at"}
        return cls(
            client_id=data["client_id"],
            client_secret=data.get("client_secret"),
            client_id_issued_at=data.get("client_id_issued_at"),
            client_secret_expires_at=data.get("client_secret_expires_at"),
            metadata={k: v for k, v in data.items() if k not in known},
        )


@dataclass
class AuthorizationServerMetadata:
    """RFC 8414 authorization server metadata (the subset this client uses)."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    scopes_supported: Optional[list[str]] = None
    response_types_supported: list[str] = field(default_factory=lambda: ["code"])
    code_challenge_methods_supported: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "issuer": self.issuer,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "response_types_supported": self.response_types_supported,
        }
        if self.registration_endpoint:
            result["registration_endpoint"] = self.registration_endpoint
        if self.scopes_supported is not None:
            result["scopes_supported"] = self.scopes_supported
        if self.code_challenge_methods_supported is not None:
            result["code_challenge_methods_supported"] = self.code_challenge_methods_supported
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuthorizationServerMetadata":
        return cls(
            issuer=data.get("issuer", ""),
            authorization_endpoint=data["authorization_endpoint"],
            token_endpoint=data["token_endpoint"],
            registration_endpoint=data.get("registration_endpoint"),
            scopes_supported=data.get("scopes_supported"),
            response_types_supported=data.get("response_types_supported") or ["code"],
            code_challenge_methods_supported=data.get("code_challenge_methods_supported"),
        )


@dataclass
class Attachment:
    """Caller-supplied content sent along with a message."""

    mime_type: str
    text: Optional[str] = None
    image_url: Optional[str] = None
    file_data: Optional[str] = None
    filename: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"mimeType": self.mime_type}
        for key in ("text", "image_url", "file_data", "filename"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attachment":
        return cls(
            mime_type=_pick(data, "mimeType", "mime_type", "application/octet-stream"),
            text=data.get("text"),
            image_url=data.get("image_url"),
            file_data=data.get("file_data"),
            filename=data.get("filename"),
        )


class ResponseEventType(str, Enum):
    """Closed taxonomy of events streamed to the client for one response."""

    START = "start"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    TOOL_CALL_ARGUMENTS = "tool_call_arguments"
    TOOL_CALL_RESULT = "tool_call_result"
    OUTPUT_TEXT = "output_text"
    OUTPUT_TEXT_DELTA = "output_text_delta"
    OUTPUT_ANNOTATION = "output_annotation"
    DONE = "done"


@dataclass(frozen=True)
class ResponseEvent:
    """One event of a response stream: ``{"type": ..., "data": {...}}`` on the wire."""

    type: ResponseEventType
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def item_id(self) -> Optional[str]:
        return self.data.get("itemId")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResponseEvent":
        return cls(type=ResponseEventType(data["type"]), data=dict(data.get("data") or {}))

    @classmethod
    def start(cls, response_id: str) -> "ResponseEvent":
        return cls(ResponseEventType.START, {"responseId": response_id})

    @classmethod
    def reasoning(cls, text: str) -> "ResponseEvent":
        return cls(ResponseEventType.REASONING, {"text": text})

    @classmethod
    def tool_call(
        cls,
        item_id: str,
        tool_name: str,
        tool_type: str,
        server: Optional[str] = None,
    ) -> "ResponseEvent":
        data: dict[str, Any] = {"itemId": item_id, "toolName": tool_name, "toolType": tool_type}
        if server is not None:
            data["server"] = server
        return cls(ResponseEventType.TOOL_CALL, data)

    @classmethod
    def tool_call_arguments(cls, item_id: str, args: Any) -> "ResponseEvent":
        return cls(ResponseEventType.TOOL_CALL_ARGUMENTS, {"itemId": item_id, "args": args})

    @classmethod
    def tool_call_result(cls, item_id: str, result: Any = None) -> "ResponseEvent":
        return cls(ResponseEventType.TOOL_CALL_RESULT, {"itemId": item_id, "result": result})

    @classmethod
    def output_text(cls, item_id: str) -> "ResponseEvent":
        return cls(ResponseEventType.OUTPUT_TEXT, {"itemId": item_id})

    @classmethod
    def output_text_delta(cls, item_id: str, delta: str) -> "ResponseEvent":
        return cls(ResponseEventType.OUTPUT_TEXT_DELTA, {"itemId": item_id, "delta": delta})

    @classmethod
    def output_annotation(cls, item_id: str, annotations: list[Any]) -> "ResponseEvent":
        return cls(
            ResponseEventType.OUTPUT_ANNOTATION,
            {"itemId": item_id, "annotations": annotations},
        )

    @classmethod
    def done(cls, response_id: str, output: Any = None) -> "ResponseEvent":
        return cls(ResponseEventType.DONE, {"responseId": response_id, "output": output})


@dataclass
class AuthorizedServer:
    """A tool server paired with the bearer token resolved for this request."""

    metadata: ServerMetadata
    access_token: Optional[str] = None
