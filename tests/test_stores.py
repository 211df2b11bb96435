"""Tests for oauth_stores.py."""
import asyncio

import pytest

from oauth_stores import (
    ApiKeyCredential,
    AuthorizationCodeRecord,
    MemoryCredentialStore,
    MemoryEphemeralStore,
    SQLiteCredentialStore,
    SQLiteDatabase,
    SQLiteEphemeralStore,
    StoreUnavailable,
    create_api_key,
    get_record,
    put_record,
    revoke_api_key,
    take_record,
    update_api_key,
)
from oauth_tokens import hash_api_key


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, clock):
    if request.param == "memory":
        return MemoryEphemeralStore(clock=clock)
    return SQLiteEphemeralStore(SQLiteDatabase(":memory:"), clock=clock)


@pytest.fixture(params=["memory", "sqlite"])
def credential_store(request):
    if request.param == "memory":
        return MemoryCredentialStore()
    return SQLiteCredentialStore(SQLiteDatabase(":memory:"))


# ---------------------------------------------------------------------------
# EphemeralStore
# ---------------------------------------------------------------------------

class TestEphemeralStore:
    @pytest.mark.asyncio
    async def test_put_get(self, store):
        await store.put("k", "v", 60)
        assert await store.get("k") == "v"
        # get does not consume
        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_missing_key(self, store):
        assert await store.get("nope") is None
        assert await store.take("nope") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store, clock):
        await store.put("k", "v", 300)
        clock.advance(299)
        assert await store.get("k") == "v"
        clock.advance(2)
        assert await store.get("k") is None
        assert await store.take("k") is None

    @pytest.mark.asyncio
    async def test_take_is_single_use(self, store):
        await store.put("k", "v", 60)
        assert await store.take("k") == "v"
        assert await store.take("k") is None
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_concurrent_take_at_most_once(self, store):
        await store.put("code", "payload", 60)
        results = await asyncio.gather(*[store.take("code") for _ in range(20)])
        assert [r for r in results if r is not None] == ["payload"]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.put("k", "v", 60)
        await store.delete("k")
        assert await store.get("k") is None
        # deleting a missing key is a no-op
        await store.delete("k")

    @pytest.mark.asyncio
    async def test_put_overwrites(self, store):
        await store.put("k", "one", 60)
        await store.put("k", "two", 60)
        assert await store.take("k") == "two"

    @pytest.mark.asyncio
    async def test_record_helpers(self, store):
        record = AuthorizationCodeRecord(
            code_challenge="c", api_key_id="key-1", client_id="default",
            redirect_uri="https://app/cb", resource=None,
        )
        await put_record(store, "oauth_code:x", record, 300)
        assert await get_record(store, "oauth_code:x", AuthorizationCodeRecord) == record
        assert await take_record(store, "oauth_code:x", AuthorizationCodeRecord) == record
        assert await take_record(store, "oauth_code:x", AuthorizationCodeRecord) is None


class TestMemoryEphemeralStore:
    @pytest.mark.asyncio
    async def test_expired_items_purged_on_put(self, clock):
        store = MemoryEphemeralStore(clock=clock)
        await store.put("old", "v", 10)
        clock.advance(11)
        await store.put("new", "v", 10)
        assert len(store) == 1


class TestSQLiteDatabase:
    @pytest.mark.asyncio
    async def test_errors_wrapped(self):
        db = SQLiteDatabase(":memory:")
        db.close()
        with pytest.raises(StoreUnavailable):
            await db.run("SELECT 1")

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "memory.db"
        db = SQLiteDatabase(path)
        assert path.exists()
        db.close()

    @pytest.mark.asyncio
    async def test_state_survives_reopen(self, tmp_path):
        path = tmp_path / "memory.db"
        db = SQLiteDatabase(path)
        await SQLiteEphemeralStore(db).put("k", "v", 60)
        db.close()
        reopened = SQLiteEphemeralStore(SQLiteDatabase(path))
        assert await reopened.take("k") == "v"


# ---------------------------------------------------------------------------
# CredentialStore
# ---------------------------------------------------------------------------

class TestCredentialStore:
    @pytest.mark.asyncio
    async def test_create_and_lookup(self, credential_store):
        credential, plaintext = await create_api_key(credential_store, "  Laptop  ", notes="test")
        assert plaintext.startswith("msk_")
        assert credential.entity_name == "Laptop"
        assert credential.key_hash == hash_api_key(plaintext)
        found = await credential_store.get_by_hash(hash_api_key(plaintext))
        assert found is not None
        assert found.id == credential.id
        assert found.is_usable()
        assert (await credential_store.get_by_id(credential.id)).notes == "test"

    @pytest.mark.asyncio
    async def test_unknown_hash(self, credential_store):
        assert await credential_store.get_by_hash(hash_api_key("msk_nope")) is None
        assert await credential_store.get_by_id("nope") is None

    @pytest.mark.asyncio
    async def test_empty_entity_rejected(self, credential_store):
        with pytest.raises(ValueError, match="entity_name"):
            await create_api_key(credential_store, "   ")

    @pytest.mark.asyncio
    async def test_expiry(self, credential_store):
        credential, _ = await create_api_key(credential_store, "Temp", expires_in_days=1)
        assert credential.expires_at == credential.created_at + 86400
        assert not credential.is_expired()
        assert credential.is_expired(now=credential.expires_at + 1)

    @pytest.mark.asyncio
    async def test_revoke(self, credential_store):
        credential, plaintext = await create_api_key(credential_store, "Laptop")
        assert await revoke_api_key(credential_store, credential.id)
        found = await credential_store.get_by_hash(hash_api_key(plaintext))
        assert found is not None
        assert not found.is_active
        assert not found.is_usable()
        assert not await revoke_api_key(credential_store, "missing")

    @pytest.mark.asyncio
    async def test_revoke_twice(self, credential_store):
        credential, _ = await create_api_key(credential_store, "Laptop")
        assert await revoke_api_key(credential_store, credential.id)
        assert not await revoke_api_key(credential_store, credential.id)

    @pytest.mark.asyncio
    async def test_update_entity_and_notes(self, credential_store):
        credential, plaintext = await create_api_key(credential_store, "Laptop", notes="old")
        updated = await update_api_key(credential_store, credential.id,
                                       entity_name="  Desktop ", notes="moved")
        assert updated.entity_name == "Desktop"
        assert updated.notes == "moved"
        assert updated.key_hash == hash_api_key(plaintext)
        assert updated.is_active

    @pytest.mark.asyncio
    async def test_update_single_field(self, credential_store):
        credential, _ = await create_api_key(credential_store, "Laptop", notes="keep me")
        updated = await update_api_key(credential_store, credential.id, entity_name="Desktop")
        assert updated.entity_name == "Desktop"
        assert updated.notes == "keep me"
        updated = await update_api_key(credential_store, credential.id, notes="")
        assert updated.entity_name == "Desktop"
        assert updated.notes == ""

    @pytest.mark.asyncio
    async def test_update_unknown(self, credential_store):
        assert await update_api_key(credential_store, "missing", notes="x") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("changes", [{}, {"entity_name": "   "}])
    async def test_update_rejects_empty(self, credential_store, changes):
        credential, _ = await create_api_key(credential_store, "Laptop")
        with pytest.raises(ValueError):
            await update_api_key(credential_store, credential.id, **changes)

    @pytest.mark.asyncio
    async def test_list_hides_revoked(self, credential_store):
        keep, _ = await create_api_key(credential_store, "Keep")
        gone, _ = await create_api_key(credential_store, "Gone")
        await revoke_api_key(credential_store, gone.id)
        assert [k.id for k in await credential_store.list_keys()] == [keep.id]
        everything = await credential_store.list_keys(include_inactive=True)
        assert {k.id for k in everything} == {keep.id, gone.id}

    @pytest.mark.asyncio
    async def test_touch(self, credential_store):
        credential, _ = await create_api_key(credential_store, "Laptop")
        await credential_store.touch(credential.id, 1_700_000_123)
        assert (await credential_store.get_by_id(credential.id)).last_used_at == 1_700_000_123


class TestApiKeyCredential:
    def test_no_expiry(self):
        credential = ApiKeyCredential(id="k", key_hash="h", entity_name="e")
        assert not credential.is_expired()
        assert credential.is_usable()

    def test_inactive_not_usable(self):
        credential = ApiKeyCredential(id="k", key_hash="h", entity_name="e", is_active=False)
        assert not credential.is_usable()
