"""
mcpchat - OAuth 2.0 authorization flow for remote tool servers.

Implements the authorization-code + refresh-token flow against the
authorization server that protects a tool server, including metadata
discovery (RFC 8414), dynamic client registration (RFC 7591) and PKCE
(RFC 7636).

Flow for one ``authorize()`` call:
    1. Resolve the resource URL and discover server metadata if none given.
    2. Register a client if the provider has no registration yet.
    3. With an authorization code: exchange it, save tokens, AUTHORIZED.
    4. Cached tokens still valid: AUTHORIZED without any network call.
    5. Refresh token present: refresh, save, AUTHORIZED. Well-known OAuth
       errors fall through to step 6; server errors and anything
       unrecognized are raised.
    6. Start a new authorization redirect and return REDIRECT.

The whole flow is retried exactly once after invalidating credentials for
invalid/unauthorized client (all credentials) and invalid grant (tokens).
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
from mcp.shared.auth import OAuthClientInformationFull, OAuthMetadata, OAuthToken
from pydantic import BaseModel, ValidationError

from ..exceptions import (
    InvalidClientError,
    InvalidGrantError,
    MCPChatError,
    OAuthError,
    ServerError,
    UnauthorizedClientError,
    oauth_error_from_response,
)
from ..models import AuthorizationServerMetadata, AuthResult, ClientRegistration, TokenSet
from .provider import OAuthProvider

logger = logging.getLogger("mcpchat.auth.flow")

DEFAULT_TIMEOUT = 15.0
MCP_PROTOCOL_VERSION = "2025-06-18"

MetadataInput = Union[AuthorizationServerMetadata, dict[str, Any], None]


@dataclass
class AuthorizationOutcome:
    """Result of :meth:`AuthorizationClient.authorize`."""

    result: AuthResult
    tokens: Optional[TokenSet] = None

    @property
    def authorized(self) -> bool:
        return self.result == AuthResult.AUTHORIZED


# ---------------------------------------------------------------------------
# PKCE and URL helpers
# ---------------------------------------------------------------------------


def generate_code_verifier() -> str:
    """Generate a high-entropy PKCE code verifier (43-128 chars)."""
    return secrets.token_urlsafe(64)


def code_challenge(code_verifier: str) -> str:
    """S256 code challenge for a verifier."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def resource_url_from_server_url(server_url: str) -> str:
    """Canonical resource identifier for a tool server URL (fragment dropped)."""
    parts = urlsplit(str(server_url))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def _origin(server_url: str) -> str:
    parts = urlsplit(str(server_url))
    return f"{parts.scheme}://{parts.netloc}"


def fallback_metadata(server_url: str) -> AuthorizationServerMetadata:
    """Default endpoints used when the server publishes no metadata."""
    origin = _origin(server_url)
    return AuthorizationServerMetadata(
        issuer=origin,
        authorization_endpoint=f"{origin}/authorize",
        token_endpoint=f"{origin}/token",
        registration_endpoint=f"{origin}/register",
    )


def _strip_secrets_from_error(error_str: str) -> str:
    """Remove anything that looks like a secret from error messages."""
    return re.sub(
        r"(code_verifier|refresh_token|access_token|client_secret|code)\s*[=:]\s*[^\s&,]+",
        r"\1=[REDACTED]",
        error_str,
        flags=re.IGNORECASE,
    )


def _json_body(response: httpx.Response, source: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ServerError(
            f"{source} returned a non-JSON body (HTTP {response.status_code})",
            status_code=response.status_code,
        ) from e


def _validate(model: type[BaseModel], data: Any, source: str) -> Any:
    """Check an authorization server payload against the MCP SDK's OAuth models.

    Raises:
        ServerError: If the payload is not a valid document of that kind.
    """
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ServerError(f"Invalid {source}: {e}") from e


def _parse_metadata(data: Any) -> AuthorizationServerMetadata:
    _validate(OAuthMetadata, data, "authorization server metadata")
    return AuthorizationServerMetadata.from_dict(data)


def _coerce_metadata(metadata: MetadataInput) -> Optional[AuthorizationServerMetadata]:
    if metadata is None or isinstance(metadata, AuthorizationServerMetadata):
        return metadata
    return _parse_metadata(metadata)


def _token_set(token: OAuthToken, refresh_token: Optional[str] = None) -> TokenSet:
    """Token set for a token response; ``expires_at`` is stamped when it is saved."""
    return TokenSet(
        access_token=token.access_token,
        token_type=token.token_type,
        refresh_token=token.refresh_token or refresh_token,
        expires_in=token.expires_in,
        scope=token.scope,
    )


# ---------------------------------------------------------------------------
# Authorization client
# ---------------------------------------------------------------------------


class AuthorizationClient:
    """Talks to authorization servers on behalf of :class:`OAuthProvider` objects.

    Args:
        transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests.
        timeout: Timeout in seconds for each authorization-server request.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._transport = transport
        self._timeout = timeout

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self._timeout,
            follow_redirects=False,
        )

    async def authorize(
        self,
        provider: OAuthProvider,
        server_url: str,
        metadata: MetadataInput = None,
        authorization_code: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> AuthorizationOutcome:
        """Obtain a usable token set for ``provider``'s server, or start a redirect."""
        try:
            return await self._authorize(provider, server_url, metadata, authorization_code, scope)
        except (InvalidClientError, UnauthorizedClientError) as e:
            logger.warning(
                "Client rejected for server '%s' (%s); re-registering and retrying once",
                provider.server.name,
                e.error_code,
            )
            await provider.invalidate_credentials("all")
            return await self._authorize(provider, server_url, metadata, authorization_code, scope)
        except InvalidGrantError:
            logger.warning(
                "Grant rejected for server '%s'; dropping tokens and retrying once",
                provider.server.name,
            )
            await provider.invalidate_credentials("tokens")
            return await self._authorize(provider, server_url, metadata, authorization_code, scope)

    async def _authorize(
        self,
        provider: OAuthProvider,
        server_url: str,
        metadata: MetadataInput,
        authorization_code: Optional[str],
        scope: Optional[str],
    ) -> AuthorizationOutcome:
        resource = resource_url_from_server_url(server_url)

        server_metadata = _coerce_metadata(metadata)
        if server_metadata is None:
            server_metadata = await self.discover_metadata(server_url) or fallback_metadata(
                server_url
            )

        client_info = provider.client_information()
        if client_info is None:
            if authorization_code is not None:
                raise MCPChatError(
                    "Existing OAuth client information is required when exchanging "
                    "an authorization code"
                )
            client_info = await self.register_client(server_metadata, provider.client_metadata)
            await provider.save_client_information(client_info)

        if authorization_code is not None:
            code_verifier = await provider.code_verifier()
            tokens = await self.exchange_authorization(
                server_metadata,
                client_info,
                authorization_code,
                code_verifier,
                provider.redirect_url,
                resource,
            )
            tokens = await provider.save_tokens(tokens)
            return AuthorizationOutcome(AuthResult.AUTHORIZED, tokens)

        tokens = await provider.tokens()
        if tokens is not None and not tokens.is_expired():
            return AuthorizationOutcome(AuthResult.AUTHORIZED, tokens)

        if tokens is not None and tokens.refresh_token:
            try:
                refreshed = await self.refresh_authorization(
                    server_metadata,
                    client_info,
                    tokens.refresh_token,
                    resource,
                )
            except OAuthError as e:
                if isinstance(e, ServerError) or type(e) is OAuthError:
                    raise
                logger.warning(
                    "Token refresh for server '%s' failed with %s; starting a new authorization",
                    provider.server.name,
                    e.error_code,
                )
            else:
                refreshed = await provider.save_tokens(refreshed)
                return AuthorizationOutcome(AuthResult.AUTHORIZED, refreshed)

        authorization_url, code_verifier = self.start_authorization(
            server_metadata,
            client_info,
            redirect_url=provider.redirect_url,
            state=provider.state(),
            scope=scope or provider.client_metadata.get("scope"),
            resource=resource,
        )
        await provider.save_code_verifier(code_verifier)
        await provider.redirect_to_authorization(authorization_url)
        return AuthorizationOutcome(AuthResult.REDIRECT)

    # -- discovery ------------------------------------------------------------

    async def discover_metadata(self, server_url: str) -> Optional[AuthorizationServerMetadata]:
        """Look up authorization server metadata next to a tool server URL.

        Returns None when no well-known document exists.
        """
        origin = _origin(server_url)
        path = urlsplit(str(server_url)).path.rstrip("/")
        candidates = []
        if path:
            candidates.append(f"{origin}/.well-known/oauth-authorization-server{path}")
        candidates.append(f"{origin}/.well-known/oauth-authorization-server")
        candidates.append(f"{origin}/.well-known/openid-configuration")

        async with self._http() as client:
            for url in candidates:
                response = await client.get(
                    url,
                    headers={
                        "Accept": "application/json",
                        "MCP-Protocol-Version": MCP_PROTOCOL_VERSION,
                    },
                )
                if response.status_code == 404:
                    continue
                if not response.is_success:
                    raise MCPChatError(
                        f"HTTP {response.status_code} loading OAuth metadata from {url}",
                        status_code=response.status_code,
                    )
                logger.info("Discovered OAuth metadata at %s", url)
                return _parse_metadata(_json_body(response, url))
        logger.info("No OAuth metadata published for %s; using default endpoints", origin)
        return None

    # -- registration ---------------------------------------------------------

    async def register_client(
        self,
        metadata: AuthorizationServerMetadata,
        client_metadata: dict[str, Any],
    ) -> ClientRegistration:
        """Dynamically register this backend as an OAuth client."""
        if not metadata.registration_endpoint:
            raise MCPChatError(
                "Incompatible auth server: does not support dynamic client registration"
            )
        async with self._http() as client:
            response = await client.post(metadata.registration_endpoint, json=client_metadata)
        if not response.is_success:
            _raise_oauth_error(response)
        data = _json_body(response, "Client registration endpoint")
        if not isinstance(data, dict):
            raise ServerError("Client registration endpoint returned no JSON object")
        # Servers may omit echoed request metadata.
        _validate(
            OAuthClientInformationFull,
            {**client_metadata, **data},
            "client registration response",
        )
        registration = ClientRegistration.from_dict(data)
        logger.info("Registered OAuth client with %s", metadata.issuer or metadata.token_endpoint)
        return registration

    # -- token endpoint -------------------------------------------------------

    async def exchange_authorization(
        self,
        metadata: AuthorizationServerMetadata,
        client_info: ClientRegistration,
        authorization_code: str,
        code_verifier: str,
        redirect_url: Optional[str],
        resource: Optional[str] = None,
    ) -> TokenSet:
        """Exchange an authorization code for tokens."""
        form: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "code_verifier": code_verifier,
        }
        if redirect_url:
            form["redirect_uri"] = redirect_url
        if resource:
            form["resource"] = resource
        token = await self._token_request(metadata, client_info, form)
        return _token_set(token)

    async def refresh_authorization(
        self,
        metadata: AuthorizationServerMetadata,
        client_info: ClientRegistration,
        refresh_token: str,
        resource: Optional[str] = None,
    ) -> TokenSet:
        """Exchange a refresh token for a new token set.

        The old refresh token is kept when the server does not rotate it.
        """
        form: dict[str, str] = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if resource:
            form["resource"] = resource
        token = await self._token_request(metadata, client_info, form)
        logger.info("Refreshed OAuth token at %s", metadata.token_endpoint)
        return _token_set(token, refresh_token)

    async def _token_request(
        self,
        metadata: AuthorizationServerMetadata,
        client_info: ClientRegistration,
        form: dict[str, str],
    ) -> OAuthToken:
        auth: Optional[tuple[str, str]] = None
        method = client_info.metadata.get("token_endpoint_auth_method")
        if method == "client_secret_basic" and client_info.client_secret:
            auth = (client_info.client_id, client_info.client_secret)
        else:
            form["client_id"] = client_info.client_id
            if client_info.client_secret and method != "none":
                form["client_secret"] = client_info.client_secret

        async with self._http() as client:
            response = await client.post(
                metadata.token_endpoint,
                data=form,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        if not response.is_success:
            _raise_oauth_error(response)
        token = _validate(OAuthToken, _json_body(response, "Token endpoint"), "token response")
        if not token.access_token:
            raise ServerError("Token endpoint returned no access_token")
        return token

    # -- authorization redirect -----------------------------------------------

    def start_authorization(
        self,
        metadata: AuthorizationServerMetadata,
        client_info: ClientRegistration,
        redirect_url: Optional[str],
        state: Optional[str] = None,
        scope: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> tuple[str, str]:
        """Build the authorization URL for a new PKCE flow.

        Returns:
            ``(authorization_url, code_verifier)``; the verifier must be saved
            until the code comes back.
        """
        if "code" not in metadata.response_types_supported:
            raise MCPChatError("Incompatible auth server: does not support response type 'code'")
        methods = metadata.code_challenge_methods_supported
        if methods is not None and "S256" not in methods:
            raise MCPChatError(
                "Incompatible auth server: does not support code challenge method 'S256'"
            )

        code_verifier = generate_code_verifier()
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": client_info.client_id,
            "code_challenge": code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        if redirect_url:
            params["redirect_uri"] = redirect_url
        if state:
            params["state"] = state
        if scope:
            params["scope"] = scope
        if resource:
            params["resource"] = resource

        endpoint = metadata.authorization_endpoint
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}", code_verifier


def _raise_oauth_error(response: httpx.Response) -> None:
    """Raise the OAuthError matching an authorization server error response."""
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        error = oauth_error_from_response(
            data["error"],
            data.get("error_description"),
            status_code=response.status_code,
        )
    else:
        error = ServerError(
            f"Invalid OAuth error response: HTTP {response.status_code}",
            status_code=response.status_code,
        )
    logger.warning(
        "Authorization server error from %s: %s",
        response.request.url,
        _strip_secrets_from_error(str(error)),
    )
    raise error
