"""Shared fixtures: an OAuth middleware in front of a tiny protected app."""
import sys
from pathlib import Path

import httpx
import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

# Add project root to path so the flat modules import without installation
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from memory_oauth import MemoryOAuthMiddleware, _RateLimiter
from oauth_stores import ApiKeyCredential, MemoryCredentialStore, MemoryEphemeralStore
from oauth_tokens import TokenSigner, hash_api_key

ISSUER = "https://memory.example.com"
SECRET = "test-signing-secret-0123456789abcdef"
API_KEY = "msk_" + "a1" * 32
KEY_ID = "key-1"
ENTITY = "Claude Desktop - Laptop"


async def _whoami(request: Request) -> JSONResponse:
    principal = request.state.principal
    return JSONResponse({
        "api_key_id": principal.api_key_id,
        "entity_name": principal.entity_name,
        "auth_type": principal.auth_type,
    })


def protected_app() -> Starlette:
    return Starlette(routes=[
        Route("/mcp", _whoami, methods=["GET", "POST"]),
        Route("/api/memories", _whoami, methods=["GET"]),
    ])


@pytest.fixture
def credential():
    return ApiKeyCredential(id=KEY_ID, key_hash=hash_api_key(API_KEY), entity_name=ENTITY)


@pytest.fixture
def credentials(credential):
    return MemoryCredentialStore([credential])


@pytest.fixture
def ephemeral_store():
    return MemoryEphemeralStore()


@pytest.fixture
def signer():
    return TokenSigner(SECRET, ISSUER)


@pytest.fixture
def make_oauth(signer, credentials, ephemeral_store):
    """Factory so tests can override individual middleware options."""
    def _make(**overrides):
        options = dict(
            signer=signer,
            credentials=credentials,
            store=ephemeral_store,
            issuer_url=ISSUER,
            rate_limiter=_RateLimiter(max_requests=1000),
        )
        options.update(overrides)
        return MemoryOAuthMiddleware(protected_app(), **options)
    return _make


@pytest.fixture
def oauth(make_oauth):
    return make_oauth()


@pytest.fixture
def http():
    def _client(app) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=ISSUER)
    return _client
