"""
mcpchat.auth - OAuth 2.0 client relationship with remote tool servers.
"""

from .flow import (
    AuthorizationClient,
    AuthorizationOutcome,
    code_challenge,
    fallback_metadata,
    generate_code_verifier,
    resource_url_from_server_url,
)
from .provider import OAuthProvider, decode_state, encode_state

__all__ = [
    "AuthorizationClient",
    "AuthorizationOutcome",
    "OAuthProvider",
    "code_challenge",
    "decode_state",
    "encode_state",
    "fallback_metadata",
    "generate_code_verifier",
    "resource_url_from_server_url",
]
