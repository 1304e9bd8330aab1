"""
mcpchat - Custom exceptions for error handling.
"""

from typing import Any, Optional


class MCPChatError(Exception):
    """Base exception for all mcpchat errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class NotFoundError(MCPChatError):
    """Raised when a requested resource is not found."""

    pass


class APIError(MCPChatError):
    """Raised when an API request fails with an unexpected error."""

    pass


class AuthenticationError(MCPChatError):
    """Raised when authentication fails or API key is invalid."""

    pass


class StoreNotInitializedError(MCPChatError):
    """Raised when the token cache is used before a backing store is configured."""

    pass


class ConnectionAuthError(MCPChatError):
    """Raised when a tool server cannot be authorized.

    Surfaces at the API boundary as ``MCP_CONNECTION_ERROR`` so a client can
    offer to reconnect.
    """

    code = "MCP_CONNECTION_ERROR"


class TransportError(MCPChatError):
    """Raised when talking to a tool server fails at the network/protocol level."""

    pass


class TranslationError(MCPChatError):
    """Raised for a provider stream event that cannot be translated."""

    pass


class EventOrderError(MCPChatError):
    """Raised when a response event refers to an item that was never opened."""

    pass


# ---------------------------------------------------------------------------
# OAuth 2.0 protocol errors (RFC 6749 section 5.2)
# ---------------------------------------------------------------------------


class OAuthError(MCPChatError):
    """An error returned by an authorization server."""

    error_code = "oauth_error"

    def __init__(self, message: str, error_code: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        if error_code:
            self.error_code = error_code


class InvalidRequestError(OAuthError):
    error_code = "invalid_request"


class InvalidClientError(OAuthError):
    error_code = "invalid_client"


class InvalidGrantError(OAuthError):
    error_code = "invalid_grant"


class UnauthorizedClientError(OAuthError):
    error_code = "unauthorized_client"


class UnsupportedGrantTypeError(OAuthError):
    error_code = "unsupported_grant_type"


class InvalidScopeError(OAuthError):
    error_code = "invalid_scope"


class AccessDeniedError(OAuthError):
    error_code = "access_denied"


class ServerError(OAuthError):
    error_code = "server_error"


class TemporarilyUnavailableError(OAuthError):
    error_code = "temporarily_unavailable"


OAUTH_ERRORS: dict[str, type[OAuthError]] = {
    cls.error_code: cls
    for cls in (
        InvalidRequestError,
        InvalidClientError,
        InvalidGrantError,
        UnauthorizedClientError,
        UnsupportedGrantTypeError,
        InvalidScopeError,
        AccessDeniedError,
        ServerError,
        TemporarilyUnavailableError,
    )
}


def oauth_error_from_response(
    error_code: str,
    description: Optional[str] = None,
    status_code: Optional[int] = None,
) -> OAuthError:
    """Build the matching OAuthError subclass for an ``error`` response field."""
    cls = OAUTH_ERRORS.get(error_code, OAuthError)
    message = description or error_code
    return cls(message, error_code=error_code, status_code=status_code)
