"""
memory_oauth.py — OAuth 2.1 authorization server + dual bearer gate for the memory server.

Self-hosted authorization server whose "login" is the user's own API key:
the authorize page asks for an ``msk_...`` key, and the resulting access
token is an HS256 JWT bound to that key's id and entity name.

Implements:
  /.well-known/oauth-authorization-server   — RFC 8414 metadata
  /.well-known/oauth-protected-resource     — RFC 9728 metadata
  /oauth/register                           — RFC 7591 dynamic client registration
  /oauth/authorize                          — GET → API key form, POST → 302 with code
  /oauth/token                              — authorization_code (PKCE) + refresh_token

Every other path is protected. A bearer value starting with ``msk_`` is
treated as a raw API key; anything else must be a valid access token whose
audience is the server origin or the protected resource URL.

Security properties:
  - S256-only PKCE (plain rejected)
  - Authorization codes and refresh tokens are redeemed with an atomic
    take on the ephemeral store: at most one concurrent redemption wins
  - Refresh tokens rotate on every use; the old token is gone before the
    API key is re-validated
  - Replaying a rotated refresh token revokes the whole token family
  - Fail-closed when no signing key is configured
  - Structured audit logging (JSON-lines to memory-audit logger)
"""

import asyncio
import hmac
import json
import logging
import time
import urllib.parse
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

import jwt
from pydantic import BaseModel, Field, ValidationError, field_validator
from starlette.types import ASGIApp, Receive, Scope, Send

from oauth_pages import authorize_page, error_page
from oauth_stores import (
    AUTH_CODE_TTL,
    CLIENT_PREFIX,
    CLIENT_REGISTRATION_TTL,
    CODE_PREFIX,
    FAMILY_REVOKED_PREFIX,
    REFRESH_PREFIX,
    REFRESH_TOKEN_TTL,
    REFRESH_USED_PREFIX,
    AuthorizationCodeRecord,
    ClientRegistration,
    CredentialStore,
    EphemeralStore,
    RefreshTokenRecord,
    RefreshTombstone,
    StoreUnavailable,
    get_record,
    put_record,
    take_record,
)
from oauth_tokens import (
    ACCESS_TOKEN_SCOPE,
    MIN_API_KEY_LENGTH,
    SigningKeyUnavailable,
    TokenSigner,
    hash_api_key,
    looks_like_api_key,
    new_authorization_code,
    new_client_id,
    new_family_id,
    new_refresh_token,
    verify_pkce,
)

logger = logging.getLogger("memory-oauth")
audit_logger = logging.getLogger("memory-audit")

RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX_REQUESTS = 30  # per window per IP per endpoint
SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
FORBIDDEN_REDIRECT_SCHEMES = {"javascript", "data", "vbscript", "file"}
DEFAULT_CLIENT_ID = "default"

AUTHORIZE_PATHS = ("/oauth/authorize", "/authorize")
TOKEN_PATHS = ("/oauth/token", "/token")
REGISTER_PATHS = ("/oauth/register", "/register")
AS_METADATA_PATHS = ("/.well-known/oauth-authorization-server",
                     "/.well-known/openid-configuration")

INVALID_KEY_MESSAGE = "Invalid API key. Please check and try again."
EXPIRED_KEY_MESSAGE = "API key has expired."


# ---------------------------------------------------------------------------
# Audit logging
# ---------------------------------------------------------------------------

def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


def _redact(secret: str) -> str:
    return secret[:8] + "..." if secret else ""


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class _RateLimiter:
    """In-memory sliding window rate limiter (per process)."""

    def __init__(self, max_requests: int = RATE_LIMIT_MAX_REQUESTS,
                 window: int = RATE_LIMIT_WINDOW, clock=time.time):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._buckets: dict[str, deque[float]] = {}

    def is_allowed(self, key: str) -> bool:
        now = self._clock()
        cutoff = now - self.window
        bucket = self._buckets.setdefault(key, deque())
        while bucket and bucket[0] < cutoff:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def cleanup(self) -> None:
        """Drop buckets with no request inside the current window."""
        cutoff = self._clock() - self.window
        stale = [k for k, v in self._buckets.items() if not v or v[-1] < cutoff]
        for k in stale:
            del self._buckets[k]

    def __len__(self) -> int:
        return len(self._buckets)


def _get_client_ip(scope: Scope, trust_cf_header: bool = False) -> str:
    """Client IP; CF-Connecting-IP is only believed behind Cloudflare."""
    if trust_cf_header:
        headers = dict(scope.get("headers", []))
        cf_ip = headers.get(b"cf-connecting-ip")
        if cf_ip:
            return cf_ip.decode("ascii", errors="replace").strip()
    client = scope.get("client")
    if client:
        return client[0]
    return "unknown"


# ---------------------------------------------------------------------------
# Errors / principal
# ---------------------------------------------------------------------------

class OAuthError(Exception):
    """OAuth-standard error, rendered as ``{"error", "error_description"}``."""

    def __init__(self, error: str, description: str | None = None, status: int = 400):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status = status

    def as_json(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class CredentialKind(Enum):
    API_KEY = "api_key"
    ACCESS_TOKEN = "oauth"


def classify_bearer(value: str) -> CredentialKind:
    if looks_like_api_key(value):
        return CredentialKind.API_KEY
    return CredentialKind.ACCESS_TOKEN


@dataclass(frozen=True)
class Principal:
    api_key_id: str
    entity_name: str
    auth_type: str


# ---------------------------------------------------------------------------
# ASGI helpers
# ---------------------------------------------------------------------------

async def _read_body(receive: Receive) -> bytes:
    body = b""
    while True:
        message = await receive()
        body += message.get("body", b"")
        if not message.get("more_body", False):
            break
    return body


async def _send_json(send: Send, status: int, data: dict, extra_headers: list | None = None) -> None:
    body = json.dumps(data).encode()
    headers = [
        [b"content-type", b"application/json"],
        [b"content-length", str(len(body)).encode()],
        [b"cache-control", b"no-store"],
    ]
    if extra_headers:
        headers.extend(extra_headers)
    await send({"type": "http.response.start", "status": status, "headers": headers})
    await send({"type": "http.response.body", "body": body})


async def _send_html(send: Send, status: int, html: str) -> None:
    body = html.encode()
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [
            [b"content-type", b"text/html; charset=utf-8"],
            [b"content-length", str(len(body)).encode()],
            [b"cache-control", b"no-store"],
        ],
    })
    await send({"type": "http.response.body", "body": body})


async def _send_redirect(send: Send, location: str) -> None:
    await send({
        "type": "http.response.start",
        "status": 302,
        "headers": [
            [b"location", location.encode()],
            [b"content-length", b"0"],
            [b"cache-control", b"no-store"],
        ],
    })
    await send({"type": "http.response.body", "body": b""})


def _parse_qs(query: str) -> dict[str, str]:
    """Parse query string, returning first value for each key."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def _parse_form(body: bytes) -> dict[str, str]:
    """Parse application/x-www-form-urlencoded body."""
    return _parse_qs(body.decode("utf-8", errors="replace"))


def _parse_token_body(body: bytes, content_type: str) -> dict[str, str]:
    """Token requests may be form-encoded or JSON."""
    if "application/json" not in content_type:
        return _parse_form(body)
    try:
        data = json.loads(body or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise OAuthError("invalid_request", "Malformed JSON body")
    if not isinstance(data, dict):
        raise OAuthError("invalid_request", "JSON body must be an object")
    return {k: str(v) for k, v in data.items() if v is not None}


# ---------------------------------------------------------------------------
# Redirect URIs
# ---------------------------------------------------------------------------

def valid_redirect_uri(uri: str) -> bool:
    parsed = urllib.parse.urlparse(uri)
    if not parsed.scheme or parsed.fragment:
        return False
    scheme = parsed.scheme.lower()
    if scheme in FORBIDDEN_REDIRECT_SCHEMES:
        return False
    if scheme in ("http", "https") and not parsed.netloc:
        return False
    return True


def append_query(redirect_uri: str, params: dict[str, str]) -> str:
    """Append ``params`` to the redirect URI as given, keeping its existing query."""
    if "?" not in redirect_uri:
        sep = "?"
    elif redirect_uri.endswith(("?", "&")):
        sep = ""
    else:
        sep = "&"
    return f"{redirect_uri}{sep}{urllib.parse.urlencode(params)}"


class ClientRegistrationRequest(BaseModel):
    """RFC 7591 registration payload. Unknown fields are ignored."""

    client_name: str | None = Field(default=None, max_length=256)
    redirect_uris: list[str] = Field(default_factory=list)
    grant_types: list[str] | None = None
    response_types: list[str] | None = None
    token_endpoint_auth_method: str | None = None

    @field_validator("redirect_uris")
    @classmethod
    def _check_redirect_uris(cls, uris: list[str]) -> list[str]:
        for uri in uris:
            if not valid_redirect_uri(uri):
                raise ValueError(f"invalid redirect_uri: {uri}")
        return uris

    @field_validator("grant_types")
    @classmethod
    def _check_grant_types(cls, grant_types: list[str] | None) -> list[str] | None:
        if grant_types:
            unsupported = set(grant_types) - set(SUPPORTED_GRANT_TYPES)
            if unsupported:
                raise ValueError(f"unsupported grant_types: {', '.join(sorted(unsupported))}")
        return grant_types

    @field_validator("response_types")
    @classmethod
    def _check_response_types(cls, response_types: list[str] | None) -> list[str] | None:
        if response_types and set(response_types) != {"code"}:
            raise ValueError("only the 'code' response_type is supported")
        return response_types


# ---------------------------------------------------------------------------
# MemoryOAuthMiddleware
# ---------------------------------------------------------------------------

class MemoryOAuthMiddleware:
    """ASGI middleware implementing the OAuth server and the dual-auth gate.

    Intercepts OAuth-related paths before they reach the wrapped app.
    All other paths require a valid API key or access token.
    """

    OPEN_PATHS = {"/health"}

    def __init__(
        self,
        app: ASGIApp,
        *,
        signer: TokenSigner,
        credentials: CredentialStore,
        store: EphemeralStore,
        issuer_url: str,
        resource_path: str = "/mcp",
        registration_secret: str | None = None,
        revoke_family_on_reuse: bool = True,
        refresh_token_ttl: int = REFRESH_TOKEN_TTL,
        rate_limiter: _RateLimiter | None = None,
        trust_cf_connecting_ip: bool = False,
    ):
        self.app = app
        self.signer = signer
        self.credentials = credentials
        self.store = store
        self.issuer_url = issuer_url.rstrip("/")
        self.resource_path = "/" + resource_path.strip("/")
        self.registration_secret = registration_secret
        self.revoke_family_on_reuse = revoke_family_on_reuse
        self.refresh_token_ttl = refresh_token_ttl
        self._rate_limiter = rate_limiter or _RateLimiter()
        self.trust_cf_connecting_ip = trust_cf_connecting_ip
        self._last_cleanup = time.time()
        self._background: set[asyncio.Task] = set()

    def _client_ip(self, scope: Scope) -> str:
        return _get_client_ip(scope, self.trust_cf_connecting_ip)

    @property
    def resource_url(self) -> str:
        return f"{self.issuer_url}{self.resource_path}"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.issuer_url}/.well-known/oauth-protected-resource"

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await self.app(scope, receive, send)
            return
        if scope["type"] != "http":
            await send({"type": "websocket.close", "code": 1008})
            return

        path = scope.get("path", "")
        method = scope.get("method", "GET")

        # Periodic cleanup (every 5 minutes)
        now = time.time()
        if now - self._last_cleanup > 300:
            self._rate_limiter.cleanup()
            self._last_cleanup = now

        if path in AUTHORIZE_PATHS + TOKEN_PATHS + REGISTER_PATHS:
            client_ip = self._client_ip(scope)
            if not self._rate_limiter.is_allowed(f"{path}:{client_ip}"):
                _audit("rate_limited", ip=client_ip, path=path)
                await _send_json(send, 429, {
                    "error": "too_many_requests",
                    "error_description": "Rate limit exceeded. Try again later.",
                }, [[b"retry-after", str(self._rate_limiter.window).encode()]])
                return

        # --- Open endpoints ---

        if path in self.OPEN_PATHS:
            await _send_json(send, 200, {"status": "healthy"})
            return

        if path in AS_METADATA_PATHS:
            await _send_json(send, 200, self.authorization_server_metadata())
            return

        if path in ("/.well-known/oauth-protected-resource",
                    f"/.well-known/oauth-protected-resource{self.resource_path}"):
            await _send_json(send, 200, self.protected_resource_metadata())
            return

        if path in REGISTER_PATHS:
            if method != "POST":
                await _send_json(send, 405, {"error": "method_not_allowed"})
                return
            body = await _read_body(receive)
            await self._handle_register(send, body, scope)
            return

        if path in AUTHORIZE_PATHS:
            if method == "GET":
                qs = _parse_qs(scope.get("query_string", b"").decode("utf-8", errors="replace"))
                await self._handle_authorize_get(send, qs)
            elif method == "POST":
                body = await _read_body(receive)
                await self._handle_authorize_post(send, body, scope)
            else:
                await _send_json(send, 405, {"error": "method_not_allowed"})
            return

        if path in TOKEN_PATHS:
            if method != "POST":
                await _send_json(send, 405, {"error": "method_not_allowed"})
                return
            body = await _read_body(receive)
            await self._handle_token(send, body, scope)
            return

        # --- All other paths: dual auth gate ---

        await self._gate(scope, receive, send)

    # --- Metadata ---

    def authorization_server_metadata(self) -> dict[str, Any]:
        """RFC 8414 — OAuth Authorization Server Metadata."""
        return {
            "issuer": self.issuer_url,
            "authorization_endpoint": f"{self.issuer_url}/oauth/authorize",
            "token_endpoint": f"{self.issuer_url}/oauth/token",
            "registration_endpoint": f"{self.issuer_url}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["none"],
            "scopes_supported": [ACCESS_TOKEN_SCOPE],
        }

    def protected_resource_metadata(self) -> dict[str, Any]:
        """RFC 9728 — OAuth Protected Resource Metadata."""
        return {
            "resource": self.resource_url,
            "authorization_servers": [self.issuer_url],
            "bearer_methods_supported": ["header"],
            "scopes_supported": [ACCESS_TOKEN_SCOPE],
        }

    # --- Client registration ---

    async def _handle_register(self, send: Send, body: bytes, scope: Scope) -> None:
        """RFC 7591 — Dynamic Client Registration. Clients are always public."""
        client_ip = self._client_ip(scope)

        if self.registration_secret:
            headers = dict(scope.get("headers", []))
            auth = headers.get(b"authorization", b"").decode(errors="replace")
            if not hmac.compare_digest(auth, f"Bearer {self.registration_secret}"):
                _audit("register_rejected", ip=client_ip, reason="bad_secret")
                await _send_json(send, 401, {
                    "error": "unauthorized",
                    "error_description": "Valid registration secret required.",
                })
                return

        try:
            data = json.loads(body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            await _send_json(send, 400, {"error": "invalid_request",
                                         "error_description": "Malformed JSON body"})
            return
        if not isinstance(data, dict):
            await _send_json(send, 400, {"error": "invalid_request",
                                         "error_description": "JSON body must be an object"})
            return

        try:
            req = ClientRegistrationRequest.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            _audit("register_rejected", ip=client_ip, reason="invalid_metadata")
            await _send_json(send, 400, {
                "error": "invalid_client_metadata",
                "error_description": f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}",
            })
            return

        if req.token_endpoint_auth_method not in (None, "none"):
            logger.info("register: coercing token_endpoint_auth_method %s -> none",
                        req.token_endpoint_auth_method)

        client = ClientRegistration(
            client_id=new_client_id(),
            client_name=req.client_name or "MCP Client",
            redirect_uris=req.redirect_uris,
            grant_types=req.grant_types or list(SUPPORTED_GRANT_TYPES),
            response_types=req.response_types or ["code"],
            token_endpoint_auth_method="none",
        )
        try:
            await put_record(self.store, CLIENT_PREFIX + client.client_id, client,
                             CLIENT_REGISTRATION_TTL)
        except StoreUnavailable:
            logger.exception("register: store unavailable")
            await _send_json(send, 500, {"error": "server_error"})
            return

        _audit("client_registered", client_id=client.client_id,
               client_name=client.client_name, ip=client_ip)
        await _send_json(send, 201, client.model_dump(exclude={"created_at"}))

    async def _lookup_client(self, client_id: str) -> ClientRegistration | None:
        if not client_id or client_id == DEFAULT_CLIENT_ID:
            return None
        return await get_record(self.store, CLIENT_PREFIX + client_id, ClientRegistration)

    async def _check_redirect(
        self, client_id: str, redirect_uri: str,
    ) -> tuple[ClientRegistration | None, str | None]:
        """Return (registered client or None, error message or None)."""
        if not valid_redirect_uri(redirect_uri):
            return None, "Invalid redirect_uri."
        client = await self._lookup_client(client_id)
        if client and client.redirect_uris and redirect_uri not in client.redirect_uris:
            return client, "redirect_uri does not match the client registration."
        return client, None

    # --- Authorization endpoint ---

    async def _handle_authorize_get(self, send: Send, params: dict[str, str]) -> None:
        """Render the API key entry form."""
        client_id = params.get("client_id", "")
        redirect_uri = params.get("redirect_uri", "")
        state = params.get("state", "")
        code_challenge = params.get("code_challenge", "")
        code_challenge_method = params.get("code_challenge_method", "")
        resource = params.get("resource", "")

        if not redirect_uri or not code_challenge or code_challenge_method != "S256":
            await _send_html(send, 400, error_page(
                "Invalid Request",
                "Invalid OAuth request. Missing required parameters or unsupported "
                "code_challenge_method (only S256 supported).",
            ))
            return

        try:
            client, problem = await self._check_redirect(client_id, redirect_uri)
        except StoreUnavailable:
            logger.exception("authorize: store unavailable")
            await _send_html(send, 500, error_page("Server Error", "Please try again later."))
            return
        if problem:
            _audit("authorize_rejected", reason="redirect_uri", client_id=client_id)
            await _send_html(send, 400, error_page("Invalid Request", problem))
            return

        await _send_html(send, 200, authorize_page(
            client_id=client_id,
            redirect_uri=redirect_uri,
            state=state,
            code_challenge=code_challenge,
            resource=resource,
            client_name=client.client_name if client else "",
        ))

    async def _handle_authorize_post(self, send: Send, body: bytes, scope: Scope) -> None:
        """Validate the submitted API key and redirect back with a single-use code."""
        form = _parse_form(body)
        client_ip = self._client_ip(scope)
        api_key = form.get("api_key", "").strip()
        client_id = form.get("client_id", "")
        redirect_uri = form.get("redirect_uri", "")
        state = form.get("state", "")
        code_challenge = form.get("code_challenge", "")
        code_challenge_method = form.get("code_challenge_method", "S256")
        resource = form.get("resource", "")

        if not api_key or not redirect_uri or not code_challenge:
            await _send_html(send, 400, error_page("Invalid Request", "Missing required fields."))
            return
        if code_challenge_method != "S256":
            await _send_html(send, 400, error_page(
                "Invalid Request", "Only S256 code_challenge_method is supported."))
            return

        try:
            client, problem = await self._check_redirect(client_id, redirect_uri)
            if problem:
                _audit("authorize_rejected", reason="redirect_uri", client_id=client_id, ip=client_ip)
                await _send_html(send, 400, error_page("Invalid Request", problem))
                return

            def _form_with_error(message: str) -> str:
                return authorize_page(
                    client_id=client_id, redirect_uri=redirect_uri, state=state,
                    code_challenge=code_challenge, resource=resource,
                    client_name=client.client_name if client else "", error=message,
                )

            credential = await self.credentials.get_by_hash(hash_api_key(api_key))
            if credential is None or not credential.is_active:
                _audit("authorize_rejected", reason="invalid_key", client_id=client_id, ip=client_ip)
                await _send_html(send, 200, _form_with_error(INVALID_KEY_MESSAGE))
                return
            if credential.is_expired():
                _audit("authorize_rejected", reason="expired_key", client_id=client_id, ip=client_ip)
                await _send_html(send, 200, _form_with_error(EXPIRED_KEY_MESSAGE))
                return

            code = new_authorization_code()
            await put_record(self.store, CODE_PREFIX + code, AuthorizationCodeRecord(
                code_challenge=code_challenge,
                api_key_id=credential.id,
                client_id=client_id or DEFAULT_CLIENT_ID,
                redirect_uri=redirect_uri,
                resource=resource or None,
            ), AUTH_CODE_TTL)
        except StoreUnavailable:
            logger.exception("authorize: store unavailable")
            await _send_html(send, 500, error_page("Server Error", "Please try again later."))
            return

        _audit("authorize_approved", client_id=client_id or DEFAULT_CLIENT_ID,
               api_key_id=credential.id, ip=client_ip)

        params = {"code": code}
        if state:
            params["state"] = state
        await _send_redirect(send, append_query(redirect_uri, params))

    # --- Token endpoint ---

    async def _handle_token(self, send: Send, body: bytes, scope: Scope) -> None:
        headers = dict(scope.get("headers", []))
        content_type = headers.get(b"content-type", b"").decode(errors="replace").lower()
        client_ip = self._client_ip(scope)
        grant_type = ""
        try:
            params = _parse_token_body(body, content_type)
            grant_type = params.get("grant_type", "")
            if grant_type not in SUPPORTED_GRANT_TYPES:
                raise OAuthError("unsupported_grant_type")
            if not self.signer.secret:
                raise SigningKeyUnavailable("no JWT signing secret configured")
            if grant_type == "authorization_code":
                payload = await self.exchange_code(params)
            else:
                payload = await self.refresh(params)
        except OAuthError as e:
            _audit("token_rejected", grant_type=grant_type, error=e.error,
                   reason=e.description or "", ip=client_ip)
            await _send_json(send, e.status, e.as_json())
            return
        except SigningKeyUnavailable:
            _audit("server_misconfigured", reason="no_signing_key")
            logger.error("token: refusing to issue tokens without a signing key")
            await _send_json(send, 500, {"error": "server_error"})
            return
        except StoreUnavailable:
            logger.exception("token: store unavailable")
            await _send_json(send, 500, {"error": "server_error"})
            return

        await _send_json(send, 200, payload)

    async def exchange_code(self, params: dict[str, str]) -> dict[str, Any]:
        """authorization_code grant. The code is consumed before anything is checked."""
        code = params.get("code", "")
        code_verifier = params.get("code_verifier", "")
        if not code or not code_verifier:
            raise OAuthError("invalid_request", "Missing code or code_verifier")

        record = await take_record(self.store, CODE_PREFIX + code, AuthorizationCodeRecord)
        if record is None:
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")

        if not verify_pkce(code_verifier, record.code_challenge):
            raise OAuthError("invalid_grant", "PKCE verification failed")

        client_id = params.get("client_id", "")
        if client_id and record.client_id != DEFAULT_CLIENT_ID and client_id != record.client_id:
            raise OAuthError("invalid_grant", "client_id mismatch")
        redirect_uri = params.get("redirect_uri", "")
        if redirect_uri and redirect_uri != record.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri mismatch")

        credential = await self.credentials.get_by_id(record.api_key_id)
        if credential is None or not credential.is_usable():
            raise OAuthError("invalid_grant", "API key no longer valid")

        audience = record.resource or self.issuer_url
        tokens = await self._issue_tokens(credential.id, credential.entity_name,
                                          audience, new_family_id())
        _audit("token_issued", api_key_id=credential.id, client_id=record.client_id,
               audience=audience, expires_in=self.signer.lifetime)
        return tokens

    async def refresh(self, params: dict[str, str]) -> dict[str, Any]:
        """refresh_token grant. The presented token is deleted before re-validation."""
        token = params.get("refresh_token", "")
        if not token:
            raise OAuthError("invalid_request", "Missing refresh_token")

        record = await take_record(self.store, REFRESH_PREFIX + token, RefreshTokenRecord)
        if record is None:
            await self._detect_reuse(token)
            raise OAuthError("invalid_grant", "Invalid or expired refresh token")

        if self.revoke_family_on_reuse:
            await put_record(self.store, REFRESH_USED_PREFIX + token, RefreshTombstone(
                family_id=record.family_id, api_key_id=record.api_key_id,
            ), self.refresh_token_ttl)
            if await self.store.get(FAMILY_REVOKED_PREFIX + record.family_id) is not None:
                raise OAuthError("invalid_grant", "Refresh token family revoked")

        credential = await self.credentials.get_by_id(record.api_key_id)
        if credential is None or not credential.is_usable():
            raise OAuthError("invalid_grant", "API key no longer valid")

        tokens = await self._issue_tokens(credential.id, credential.entity_name,
                                          record.audience, record.family_id)
        _audit("token_refreshed", api_key_id=credential.id, family_id=record.family_id)
        return tokens

    async def _detect_reuse(self, token: str) -> None:
        if not self.revoke_family_on_reuse:
            return
        tombstone = await get_record(self.store, REFRESH_USED_PREFIX + token, RefreshTombstone)
        if tombstone is None:
            return
        await put_record(self.store, FAMILY_REVOKED_PREFIX + tombstone.family_id,
                         tombstone, self.refresh_token_ttl)
        _audit("refresh_reuse_detected", family_id=tombstone.family_id,
               api_key_id=tombstone.api_key_id, token=_redact(token))
        logger.warning("refresh token replayed; family %s revoked", tombstone.family_id)

    async def _issue_tokens(self, api_key_id: str, entity_name: str,
                            audience: str, family_id: str) -> dict[str, Any]:
        access_token = self.signer.sign(api_key_id, entity_name, audience)
        refresh_token = new_refresh_token()
        await put_record(self.store, REFRESH_PREFIX + refresh_token, RefreshTokenRecord(
            api_key_id=api_key_id,
            entity_name=entity_name,
            audience=audience,
            family_id=family_id,
        ), self.refresh_token_ttl)
        return {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.signer.lifetime,
            "refresh_token": refresh_token,
            "scope": ACCESS_TOKEN_SCOPE,
        }

    # --- Dual auth gate ---

    async def _gate(self, scope: Scope, receive: Receive, send: Send) -> None:
        www_auth = (f'Bearer resource="{self.resource_metadata_url}", '
                    f'resource_metadata="{self.resource_metadata_url}"').encode()
        unauthorized = {
            "error": "unauthorized",
            "hint": "Provide an API key (Bearer msk_...) or an OAuth access token",
        }

        headers = dict(scope.get("headers", []))
        auth = headers.get(b"authorization", b"").decode(errors="replace")
        token = auth[7:].strip() if auth[:7].lower() == "bearer " else ""
        if not token:
            await _send_json(send, 401, unauthorized, [[b"www-authenticate", www_auth]])
            return

        try:
            principal = await self.authenticate(token)
        except SigningKeyUnavailable:
            _audit("server_misconfigured", reason="no_signing_key")
            await _send_json(send, 500, {"error": "server_error"})
            return
        except StoreUnavailable:
            logger.exception("gate: credential store unavailable")
            await _send_json(send, 500, {"error": "server_error"})
            return

        if principal is None:
            _audit("auth_failed", path=scope.get("path", ""), ip=self._client_ip(scope))
            await _send_json(send, 401, unauthorized, [[b"www-authenticate", www_auth]])
            return

        scope.setdefault("state", {})["principal"] = principal
        await self.app(scope, receive, send)

    async def authenticate(self, token: str) -> Principal | None:
        """Classify the bearer value, then run exactly one verification path."""
        kind = classify_bearer(token)
        if kind is CredentialKind.API_KEY:
            return await self._authenticate_api_key(token)
        return await self._authenticate_access_token(token)

    async def _authenticate_api_key(self, token: str) -> Principal | None:
        if len(token) < MIN_API_KEY_LENGTH:
            return None
        credential = await self.credentials.get_by_hash(hash_api_key(token))
        if credential is None or not credential.is_usable():
            return None
        self._touch_later(credential.id)
        return Principal(credential.id, credential.entity_name, CredentialKind.API_KEY.value)

    async def _authenticate_access_token(self, token: str) -> Principal | None:
        try:
            claims = self.signer.verify(token, [self.issuer_url, self.resource_url])
        except jwt.ExpiredSignatureError:
            _audit("token_rejected", reason="expired")
            return None
        except jwt.InvalidTokenError as e:
            _audit("token_rejected", reason=str(e))
            return None
        api_key_id = str(claims.get("sub", ""))
        self._touch_later(api_key_id)
        return Principal(api_key_id, str(claims.get("entity", "")),
                         CredentialKind.ACCESS_TOKEN.value)

    def _touch_later(self, api_key_id: str) -> None:
        """Bump last_used_at without holding up the request."""
        task = asyncio.get_running_loop().create_task(self._touch(api_key_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch(self, api_key_id: str) -> None:
        try:
            await self.credentials.touch(api_key_id, int(time.time()))
        except Exception:
            logger.warning("failed to update last_used_at for %s", api_key_id, exc_info=True)
