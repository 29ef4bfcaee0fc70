"""
Unit tests for the client and grant stores.
"""

import pytest

from models import ACCESS_TOKEN, AUTHORIZATION_CODE, Grant


def make_grant(clock, kind=AUTHORIZATION_CODE, ttl=600, client_id="client-1"):
    return Grant(
        kind=kind,
        client_id=client_id,
        scope="read write mcp",
        created_at=clock(),
        expires_at=clock() + ttl,
    )


class TestClientStore:

    @pytest.mark.asyncio
    async def test_registrations_are_unique(self, client_store):
        first = await client_store.register(["https://cb.example/cb"])
        second = await client_store.register(["https://cb.example/cb"])

        assert first.client_id != second.client_id
        assert first.client_secret != second.client_secret
        assert len(first.client_secret) == 64
        assert client_store.count() == 2

    @pytest.mark.asyncio
    async def test_registered_client_has_fixed_grant_metadata(self, client_store):
        client = await client_store.register(["https://a.example/cb", "https://b.example/cb"], "My App")

        assert client.redirect_uris == ["https://a.example/cb", "https://b.example/cb"]
        assert client.client_name == "My App"
        assert client.grant_types == ["authorization_code"]
        assert client.response_types == ["code"]
        assert client.scope == "read write mcp"

    @pytest.mark.asyncio
    async def test_lookup(self, client_store):
        client = await client_store.register([])

        assert client_store.lookup(client.client_id) == client
        assert client_store.lookup("missing") is None
        assert client_store.lookup(None) is None


class TestGrantStore:

    @pytest.mark.asyncio
    async def test_get_returns_live_grant(self, grant_store, clock):
        await grant_store.put("code-1", make_grant(clock))

        grant = grant_store.get("code-1")
        assert grant is not None
        assert grant.client_id == "client-1"

    @pytest.mark.asyncio
    async def test_expired_grant_is_invisible_before_sweep(self, grant_store, clock):
        await grant_store.put("code-1", make_grant(clock, ttl=600))

        clock.advance(600)

        assert grant_store.get("code-1") is None
        # still physically present until a sweep removes it
        assert "code-1" in grant_store

    @pytest.mark.asyncio
    async def test_get_filters_by_kind(self, grant_store, clock):
        await grant_store.put("code-1", make_grant(clock, kind=AUTHORIZATION_CODE))

        assert grant_store.get("code-1", kind=ACCESS_TOKEN) is None
        assert grant_store.get("code-1", kind=AUTHORIZATION_CODE) is not None

    def test_get_missing_or_empty_key(self, grant_store):
        assert grant_store.get("nope") is None
        assert grant_store.get("") is None
        assert grant_store.get(None) is None

    @pytest.mark.asyncio
    async def test_replace_consumes_old_key_once(self, grant_store, clock):
        await grant_store.put("code-1", make_grant(clock))
        token = make_grant(clock, kind=ACCESS_TOKEN, ttl=3600)

        assert await grant_store.replace("code-1", "token-1", token) is True
        assert "code-1" not in grant_store
        assert grant_store.get("token-1", kind=ACCESS_TOKEN) == token

        assert await grant_store.replace("code-1", "token-2", token) is False
        assert "token-2" not in grant_store

    @pytest.mark.asyncio
    async def test_replace_refuses_expired_code(self, grant_store, clock):
        await grant_store.put("code-1", make_grant(clock, ttl=10))
        clock.advance(11)

        assert await grant_store.replace("code-1", "token-1", make_grant(clock, kind=ACCESS_TOKEN)) is False
        assert "token-1" not in grant_store

    @pytest.mark.asyncio
    async def test_remove_if_expired_is_idempotent(self, grant_store, clock):
        await grant_store.put("old", make_grant(clock, ttl=1))
        await grant_store.put("live", make_grant(clock, ttl=1000))
        clock.advance(5)

        async with grant_store.lock:
            assert grant_store.remove_if_expired("old") is True
            assert grant_store.remove_if_expired("old") is False
            assert grant_store.remove_if_expired("live") is False

        assert len(grant_store) == 1
