"""
mcpchat - Per-server OAuth client provider.

Holds everything the authorization flow needs to know about one tool server:
the redirect URL, the client metadata used for dynamic registration, and
accessors for the persisted token set, PKCE verifier and client registration.
"""

from __future__ import annotations

import base64
import inspect
import json
import logging
from typing import Any, Callable, Optional

from ..exceptions import InvalidRequestError
from ..models import ClientRegistration, ServerMetadata, TokenSet, now_ms
from ..token_cache import CODE_VERIFIER_TTL_SECONDS, TokenCache, code_verifier_key

logger = logging.getLogger("mcpchat.auth.provider")

INVALIDATION_SCOPES = ("all", "client", "tokens", "verifier")


async def call_hook(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    if hook is None:
        return
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


def encode_state(server_id: str) -> str:
    """Encode the OAuth ``state`` parameter carrying the server id."""
    raw = json.dumps({"serverId": server_id}, separators=(",", ":"))
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_state(state: str) -> dict[str, str]:
    """Decode an OAuth ``state`` parameter produced by :func:`encode_state`.

    Raises:
        ValueError: If the state is not base64-encoded JSON with a ``serverId``.
    """
    try:
        data = json.loads(base64.b64decode(state.encode("ascii"), validate=True))
    except (ValueError, UnicodeError) as e:
        raise ValueError(f"Malformed OAuth state: {e}") from None
    if not isinstance(data, dict) or not data.get("serverId"):
        raise ValueError("OAuth state does not carry a serverId")
    return data


class OAuthProvider:
    """OAuth client relationship between this backend and one tool server."""

    def __init__(
        self,
        server: ServerMetadata,
        token_cache: TokenCache,
        redirect_url: Optional[str] = None,
        save_client_info: Optional[Callable[[Optional[dict[str, Any]]], Any]] = None,
    ) -> None:
        self.server = server
        self._cache = token_cache
        self._redirect_url = redirect_url
        self._save_client_info = save_client_info
        self.on_redirect: Optional[Callable[[str], Any]] = None

        client_metadata: dict[str, Any] = {
            "redirect_uris": [redirect_url] if redirect_url else [],
            "token_endpoint_auth_method": "client_secret_post",
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "client_name": server.name,
        }
        scope = (server.oauth_client_info or {}).get("scope")
        if scope:
            client_metadata["scope"] = scope
        self._client_metadata = client_metadata

    @property
    def redirect_url(self) -> Optional[str]:
        return self._redirect_url

    @property
    def client_metadata(self) -> dict[str, Any]:
        return self._client_metadata

    @property
    def server_id(self) -> str:
        return self.server.id

    def state(self) -> str:
        return encode_state(self.server.id)

    # -- tokens ---------------------------------------------------------------

    async def tokens(self) -> Optional[TokenSet]:
        """Load the cached token set, or None when nothing usable is stored."""
        raw = await self._cache.get(self.server.id)
        if not raw:
            return None
        data = json.loads(raw)
        if not isinstance(data, dict) or not data.get("access_token"):
            return None
        return TokenSet.from_dict(data)

    async def save_tokens(self, tokens: TokenSet) -> TokenSet:
        """Persist a token set, stamping ``expires_at`` from ``expires_in``."""
        if tokens.expires_in:
            tokens.expires_at = now_ms() + tokens.expires_in * 1000
        await self._cache.put(self.server.id, json.dumps(tokens.to_dict()))
        logger.info("Saved OAuth tokens for server '%s'", self.server.name)
        return tokens

    async def delete_tokens(self) -> None:
        await self._cache.delete(self.server.id)

    # -- PKCE -----------------------------------------------------------------

    async def save_code_verifier(self, code_verifier: str) -> None:
        await self._cache.put(
            code_verifier_key(self.server.id),
            code_verifier,
            CODE_VERIFIER_TTL_SECONDS,
        )

    async def code_verifier(self) -> str:
        """Return the PKCE verifier saved when the redirect was started."""
        verifier = await self._cache.get(code_verifier_key(self.server.id))
        if not verifier:
            raise InvalidRequestError(
                "No PKCE code verifier for this server; the authorization attempt "
                "expired or was never started"
            )
        return verifier

    # -- client registration ----------------------------------------------------

    def client_information(self) -> Optional[ClientRegistration]:
        info = self.server.oauth_client_info
        if not info or not info.get("client_id"):
            return None
        return ClientRegistration.from_dict(info)

    async def save_client_information(self, registration: ClientRegistration) -> None:
        self.server.oauth_client_info = registration.to_dict()
        await call_hook(self._save_client_info, self.server.oauth_client_info)

    async def invalidate_credentials(self, scope: str) -> None:
        """Forget cached credentials.

        ``scope`` is one of ``all`` (tokens, client registration and verifier),
        ``client``, ``tokens`` or ``verifier``.
        """
        if scope not in INVALIDATION_SCOPES:
            raise ValueError(f"Unknown invalidation scope: {scope}")
        logger.info("Invalidating '%s' credentials for server '%s'", scope, self.server.name)
        if scope in ("all", "tokens"):
            await self.delete_tokens()
        if scope in ("all", "verifier"):
            await self._cache.delete(code_verifier_key(self.server.id))
        if scope in ("all", "client"):
            self.server.oauth_client_info = None
            await call_hook(self._save_client_info, None)

    # -- redirect -------------------------------------------------------------

    async def redirect_to_authorization(self, authorization_url: str) -> None:
        await call_hook(self.on_redirect, authorization_url)
