"""Tests for the dual-auth gate: raw API keys and access tokens on protected paths."""
import asyncio
import logging
import time
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import API_KEY, ENTITY, ISSUER, KEY_ID
from memory_oauth import CredentialKind, classify_bearer
from oauth_stores import MemoryCredentialStore
from oauth_tokens import TokenSigner

RESOURCE_METADATA = f"{ISSUER}/.well-known/oauth-protected-resource"


def _bearer(token: str) -> dict[str, str]:
    return {"authorization": f"Bearer {token}"}


class TestClassify:
    def test_api_key(self):
        assert classify_bearer(API_KEY) is CredentialKind.API_KEY

    def test_short_prefixed_value_is_still_an_api_key(self):
        assert classify_bearer("msk_short") is CredentialKind.API_KEY

    def test_anything_else_is_a_token(self):
        assert classify_bearer("eyJhbGciOiJIUzI1NiJ9.e30.x") is CredentialKind.ACCESS_TOKEN
        assert classify_bearer("MSK_" + "a" * 40) is CredentialKind.ACCESS_TOKEN


class TestChallenge:
    @pytest.mark.asyncio
    async def test_missing_header(self, oauth, http):
        async with http(oauth) as client:
            resp = await client.post("/mcp")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == (
            f'Bearer resource="{RESOURCE_METADATA}", '
            f'resource_metadata="{RESOURCE_METADATA}"'
        )
        assert resp.json()["error"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_non_bearer_scheme(self, oauth, http):
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers={"authorization": f"Basic {API_KEY}"})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_and_invalid_look_the_same(self, oauth, http):
        async with http(oauth) as client:
            missing = await client.get("/mcp")
            bad_key = await client.get("/mcp", headers=_bearer("msk_" + "0" * 64))
            bad_token = await client.get("/mcp", headers=_bearer("not-a-jwt"))
        assert missing.status_code == bad_key.status_code == bad_token.status_code == 401
        assert missing.content == bad_key.content == bad_token.content
        assert bad_key.headers["www-authenticate"] == missing.headers["www-authenticate"]

    @pytest.mark.asyncio
    async def test_health_is_open(self, oauth, http):
        async with http(oauth) as client:
            resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_every_other_path_is_gated(self, oauth, http):
        async with http(oauth) as client:
            resp = await client.get("/api/memories")
        assert resp.status_code == 401


class TestApiKeyPath:
    @pytest.mark.asyncio
    async def test_valid_key(self, oauth, http):
        async with http(oauth) as client:
            resp = await client.get("/api/memories", headers=_bearer(API_KEY))
        assert resp.status_code == 200
        assert resp.json() == {"api_key_id": KEY_ID, "entity_name": ENTITY,
                               "auth_type": "api_key"}

    @pytest.mark.asyncio
    async def test_bumps_last_used(self, oauth, http, credentials):
        assert credentials.credentials[KEY_ID].last_used_at is None
        async with http(oauth) as client:
            await client.get("/mcp", headers=_bearer(API_KEY))
        await asyncio.sleep(0.01)
        assert credentials.credentials[KEY_ID].last_used_at is not None

    @pytest.mark.asyncio
    async def test_unknown_key(self, oauth, http):
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer("msk_" + "0" * 64))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_revoked_key(self, oauth, http, credentials):
        credentials.credentials[KEY_ID].is_active = False
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(API_KEY))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_key(self, oauth, http, credentials):
        credentials.credentials[KEY_ID].expires_at = int(time.time()) - 1
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(API_KEY))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_short_key(self, oauth, http):
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer("msk_short"))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_works_without_signing_key(self, make_oauth, http):
        app = make_oauth(signer=TokenSigner(None, ISSUER))
        async with http(app) as client:
            resp = await client.get("/mcp", headers=_bearer(API_KEY))
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_touch_failure_does_not_fail_request(self, make_oauth, http, credential,
                                                       caplog):
        class BrokenTouch(MemoryCredentialStore):
            async def touch(self, key_id, when):
                raise RuntimeError("disk full")

        app = make_oauth(credentials=BrokenTouch([credential]))
        with caplog.at_level(logging.WARNING, logger="memory-oauth"):
            async with http(app) as client:
                resp = await client.get("/mcp", headers=_bearer(API_KEY))
            await asyncio.sleep(0.01)
        assert resp.status_code == 200
        assert "failed to update last_used_at" in caplog.text


class TestAccessTokenPath:
    @pytest.mark.asyncio
    async def test_valid_token(self, oauth, http, signer):
        token = signer.sign(KEY_ID, ENTITY)
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json() == {"api_key_id": KEY_ID, "entity_name": ENTITY,
                               "auth_type": "oauth"}

    @pytest.mark.asyncio
    async def test_resource_audience_accepted(self, oauth, http, signer):
        token = signer.sign(KEY_ID, ENTITY, audience=f"{ISSUER}/mcp")
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(token))
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_foreign_audience_rejected(self, oauth, http, signer):
        token = signer.sign(KEY_ID, ENTITY, audience="https://other.example.com")
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(token))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_expired_token(self, oauth, http, signer):
        token = signer.sign(KEY_ID, ENTITY, now=time.time() - 7200)
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(token))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_secret(self, oauth, http):
        token = TokenSigner("some-other-secret-0123456789abcdef", ISSUER).sign(KEY_ID, ENTITY)
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(token))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, oauth, http, signer):
        token = TokenSigner(signer.secret, "https://evil.example.com").sign(
            KEY_ID, ENTITY, audience=ISSUER)
        async with http(oauth) as client:
            resp = await client.get("/mcp", headers=_bearer(token))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_no_signing_key_is_server_error(self, make_oauth, http, signer):
        token = signer.sign(KEY_ID, ENTITY)
        app = make_oauth(signer=TokenSigner(None, ISSUER))
        async with http(app) as client:
            resp = await client.get("/mcp", headers=_bearer(token))
        assert resp.status_code == 500
        assert resp.json() == {"error": "server_error"}

    @pytest.mark.asyncio
    async def test_bumps_last_used(self, oauth, http, signer, credentials):
        async with http(oauth) as client:
            await client.get("/mcp", headers=_bearer(signer.sign(KEY_ID, ENTITY)))
        await asyncio.sleep(0.01)
        assert credentials.credentials[KEY_ID].last_used_at is not None

    @pytest.mark.asyncio
    async def test_token_from_oauth_flow(self, oauth, http):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        async with http(oauth) as client:
            resp = await client.post("/oauth/authorize", data={
                "api_key": API_KEY, "redirect_uri": "https://app/cb",
                "code_challenge": "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
                "code_challenge_method": "S256", "resource": f"{ISSUER}/mcp",
            })
            code = parse_qs(urlparse(resp.headers["location"]).query)["code"][0]
            tokens = (await client.post("/oauth/token", data={
                "grant_type": "authorization_code", "code": code, "code_verifier": verifier,
            })).json()
            resp = await client.post("/mcp", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["auth_type"] == "oauth"
        assert resp.json()["entity_name"] == ENTITY
