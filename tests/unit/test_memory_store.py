"""
Unit tests for the in-memory immudb endpoint.

Tests cover:
- Login and database selection rules
- Token enforcement
- Failure injection helpers
"""

import httpx
import pytest

from sdk.immustreams.errors import AuthError
from sdk.immustreams.memory import InMemoryImmuDB
from sdk.immustreams.session import Credentials


class TestInMemoryImmuDB:
    """Tests for InMemoryImmuDB."""

    @pytest.mark.asyncio
    async def test_wrong_password(self, store):
        """Unknown credentials fail at the login step."""
        session = store.session(credentials=Credentials("immudb", "wrong"))

        with pytest.raises(AuthError) as exc_info:
            await session.login()

        assert exc_info.value.step == "login"
        await session.close()

    @pytest.mark.asyncio
    async def test_unknown_database(self, store):
        """Selecting a database that does not exist fails at use_database."""
        session = store.session(database="missing")

        with pytest.raises(AuthError) as exc_info:
            await session.login()

        assert exc_info.value.step == "use_database"
        assert exc_info.value.status == 404
        await session.close()

    @pytest.mark.asyncio
    async def test_requests_need_a_token(self, store):
        """Verified reads without a database token are rejected."""
        async with httpx.AsyncClient(transport=store.transport(), base_url="http://immudb.local:3323") as client:
            response = await client.post("/db/verified/get", json={"keyRequest": {"key": "YQ=="}})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_databases_are_isolated(self):
        """Records written to one database are invisible in another."""
        store = InMemoryImmuDB(databases=("defaultdb", "other"))
        async with store.session(database="other") as session:
            response = await session.request(
                "POST",
                "/db/verified/set",
                json={"setRequest": {"KVs": [{"key": "YQ==", "value": "Yg=="}]}},
            )

        assert response.status_code == 200
        assert store.get(b"a", database="other") == b"b"
        assert store.get_record_count("other") == 1
        assert store.get_record_count() == 0

    @pytest.mark.asyncio
    async def test_injected_failure_is_consumed(self, store):
        """Injected failures answer exactly `times` requests."""
        store.inject_failure("/login", status=503, times=1)

        session = store.session()
        with pytest.raises(AuthError):
            await session.login()
        await session.login()

        assert session.is_authenticated
        assert store.count_requests("/login") == 2
        await session.close()

    @pytest.mark.asyncio
    async def test_unsupported_endpoint(self, store):
        async with store.session() as session:
            response = await session.request("POST", "/db/scan", json={})

        assert response.status_code == 501
