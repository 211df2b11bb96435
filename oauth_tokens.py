"""
oauth_tokens.py — Token minting and verification for the memory server.

Access tokens are compact HS256 JWTs carrying the API key id (sub), the
entity name, the fixed "mcp:full" scope, the issuer and an RFC 8707
audience. Authorization codes and refresh tokens are opaque random strings
whose state lives in the ephemeral store; this module only generates them.
"""

import base64
import hashlib
import hmac
import secrets
import time
from typing import Any, Iterable

import jwt

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_SCOPE = "mcp:full"
API_KEY_PREFIX = "msk_"
MIN_API_KEY_LENGTH = 32


class SigningKeyUnavailable(RuntimeError):
    """Raised when a token must be signed or verified but no secret is configured."""


# ---------------------------------------------------------------------------
# Hashing / PKCE
# ---------------------------------------------------------------------------

def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest used as the credential store lookup key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge: base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str, challenge: str) -> bool:
    try:
        computed = pkce_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(computed.encode(), challenge.encode())


def looks_like_api_key(value: str) -> bool:
    return value.startswith(API_KEY_PREFIX)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------

def new_authorization_code() -> str:
    return secrets.token_hex(32)


def new_refresh_token() -> str:
    return secrets.token_hex(32)


def new_family_id() -> str:
    return secrets.token_hex(16)


def new_client_id() -> str:
    return f"client_{secrets.token_hex(16)}"


def new_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_hex(32)


# ---------------------------------------------------------------------------
# TokenSigner
# ---------------------------------------------------------------------------

class TokenSigner:
    """HMAC signer for short-lived access tokens.

    A signer without a secret fails closed: both ``sign`` and ``verify``
    raise ``SigningKeyUnavailable`` rather than minting or accepting
    anything.
    """

    def __init__(self, secret: str | None, issuer: str, lifetime: int = 3600):
        self.secret = secret or None
        self.issuer = issuer.rstrip("/")
        self.lifetime = lifetime

    def _key(self) -> str:
        if not self.secret:
            raise SigningKeyUnavailable("no JWT signing secret configured")
        return self.secret

    def sign(self, subject: str, entity: str, audience: str | None = None,
             now: float | None = None) -> str:
        """Mint an access token for ``subject``; audience defaults to the issuer."""
        key = self._key()
        issued = int(now if now is not None else time.time())
        payload = {
            "sub": subject,
            "entity": entity,
            "scope": ACCESS_TOKEN_SCOPE,
            "iss": self.issuer,
            "aud": audience or self.issuer,
            "iat": issued,
            "exp": issued + self.lifetime,
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, key, algorithm=JWT_ALGORITHM)

    def verify(self, token: str, audience: str | Iterable[str]) -> dict[str, Any]:
        """Decode ``token`` and check signature, issuer, audience and expiry.

        Raises ``jwt.InvalidTokenError`` (or a subclass) on any failure.
        """
        key = self._key()
        if not isinstance(audience, str):
            audience = list(audience)
        return jwt.decode(
            token,
            key,
            algorithms=[JWT_ALGORITHM],
            issuer=self.issuer,
            audience=audience,
            options={"require": ["sub", "exp", "iss", "aud"]},
        )
