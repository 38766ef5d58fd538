"""Tests for the in-memory Store.

Exercises the Store contract that services rely on: email normalization,
connection upsert, cascade delete, merge helpers and transaction rollback.
"""

import uuid
from datetime import UTC, datetime, timedelta

import pytest

from oauth_broker.storage.memory import MemoryStore


async def _user(store: MemoryStore, email: str = "a@example.com", credits: int = 500):
    return await store.create_user(primary_email=email, provider="google", credits=credits)


async def _connection(store: MemoryStore, user_id, *, provider="google", email="a@example.com"):
    return await store.upsert_connection(
        user_id=user_id,
        provider=provider,
        email=email,
        scopes=["email"],
        access_token="enc-access",
        refresh_token="enc-refresh",
        expires_at=datetime.now(UTC) + timedelta(hours=1),
    )


class TestUsers:
    async def test_create_user_links_primary_email(self, memory_store: MemoryStore):
        user = await _user(memory_store, "  Ada@Example.COM ")

        assert user.primary_email == "ada@example.com"
        linked = await memory_store.list_linked_emails(user.id)
        assert [(e.email, e.is_primary) for e in linked] == [("ada@example.com", True)]

    async def test_find_user_by_email_is_normalized(self, memory_store: MemoryStore):
        user = await _user(memory_store, "ada@example.com")
        found = await memory_store.find_user_by_email("ADA@example.com ")
        assert found is not None
        assert found.id == user.id

    async def test_duplicate_email_rejected(self, memory_store: MemoryStore):
        await _user(memory_store, "ada@example.com")
        with pytest.raises(ValueError, match="already linked"):
            await _user(memory_store, "Ada@example.com")

    async def test_add_credits(self, memory_store: MemoryStore):
        user = await _user(memory_store, credits=500)
        await memory_store.add_credits(user.id, 250)
        assert (await memory_store.get_user(user.id)).credits == 750

    async def test_returned_records_are_copies(self, memory_store: MemoryStore):
        user = await _user(memory_store, credits=500)
        user.credits = 0
        assert (await memory_store.get_user(user.id)).credits == 500

    async def test_delete_user_cascades(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        await _connection(memory_store, user.id)
        await memory_store.create_session(
            user_id=user.id,
            session_id="s1",
            expires_at=datetime.now(UTC) + timedelta(days=1),
        )

        assert await memory_store.delete_user(user.id) is True

        assert memory_store.linked_emails == {}
        assert memory_store.connections == {}
        assert memory_store.sessions == {}
        assert await memory_store.delete_user(user.id) is False


class TestConnections:
    async def test_upsert_creates_then_updates(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        first = await _connection(memory_store, user.id)
        await memory_store.update_connection(
            first.id, refresh_failure_count=2, is_healthy=False
        )

        second = await memory_store.upsert_connection(
            user_id=user.id,
            provider="google",
            email="A@example.com",
            scopes=["email", "calendar"],
            access_token="enc-access-2",
            refresh_token=None,
            expires_at=None,
        )

        assert second.id == first.id
        assert len(memory_store.connections) == 1
        assert second.access_token == "enc-access-2"
        assert second.refresh_token == "enc-refresh"  # kept when none supplied
        assert second.scopes == ["email", "calendar"]
        assert second.is_healthy is True
        assert second.refresh_failure_count == 0

    async def test_multiple_accounts_per_provider(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        await _connection(memory_store, user.id, email="a@example.com")
        await _connection(memory_store, user.id, email="work@example.com")

        connections = await memory_store.list_connections(user.id)
        assert {c.email for c in connections} == {"a@example.com", "work@example.com"}

    async def test_get_connection_returns_most_recently_used(
        self, memory_store: MemoryStore
    ):
        user = await _user(memory_store)
        old = await _connection(memory_store, user.id, email="a@example.com")
        recent = await _connection(memory_store, user.id, email="b@example.com")
        await memory_store.update_connection(
            old.id, last_used_at=datetime.now(UTC) - timedelta(days=1)
        )

        found = await memory_store.get_connection(user.id, "google")
        assert found.id == recent.id

    async def test_find_connection_by_email(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        await _connection(memory_store, user.id)
        found = await memory_store.find_connection_by_email("google", "A@EXAMPLE.com")
        assert found is not None
        assert found.user_id == user.id
        assert await memory_store.find_connection_by_email("github", "a@example.com") is None

    async def test_update_rejects_unknown_fields(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        conn = await _connection(memory_store, user.id)
        with pytest.raises(ValueError, match="Unknown fields"):
            await memory_store.update_connection(conn.id, user_id=uuid.uuid4())

    async def test_update_missing_returns_none(self, memory_store: MemoryStore):
        assert await memory_store.update_connection(uuid.uuid4(), is_healthy=False) is None

    async def test_delete_connections_by_email(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        await _connection(memory_store, user.id, email="a@example.com")
        await _connection(memory_store, user.id, email="b@example.com")

        assert await memory_store.delete_connections(user.id, "google", "b@example.com") == 1
        assert await memory_store.delete_connections(user.id, "google") == 1
        assert await memory_store.list_connections(user.id) == []


class TestMergeHelpers:
    async def test_reassign_connections_drops_duplicates(self, memory_store: MemoryStore):
        keep = await _user(memory_store, "keep@example.com")
        merge = await _user(memory_store, "merge@example.com")
        await _connection(memory_store, keep.id, email="shared@example.com")
        await _connection(memory_store, merge.id, email="shared@example.com")
        await _connection(memory_store, merge.id, provider="github", email="m@example.com")

        moved = await memory_store.reassign_connections(merge.id, keep.id)

        assert moved == 1
        keep_conns = await memory_store.list_connections(keep.id)
        assert sorted(c.provider for c in keep_conns) == ["github", "google"]
        assert await memory_store.list_connections(merge.id) == []

    async def test_move_linked_emails(self, memory_store: MemoryStore):
        keep = await _user(memory_store, "keep@example.com")
        merge = await _user(memory_store, "merge@example.com")

        moved = await memory_store.move_linked_emails(merge.id, keep.id)

        assert moved == 1
        emails = await memory_store.list_linked_emails(keep.id)
        assert {(e.email, e.is_primary) for e in emails} == {
            ("keep@example.com", True),
            ("merge@example.com", False),
        }

    async def test_reassign_sessions(self, memory_store: MemoryStore):
        keep = await _user(memory_store, "keep@example.com")
        merge = await _user(memory_store, "merge@example.com")
        await memory_store.create_session(
            user_id=merge.id,
            session_id="s1",
            expires_at=datetime.now(UTC) + timedelta(days=1),
        )

        assert await memory_store.reassign_sessions(merge.id, keep.id) == 1
        assert (await memory_store.get_session("s1")).user_id == keep.id


class TestSessions:
    async def test_delete_expired_sessions(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        now = datetime.now(UTC)
        await memory_store.create_session(
            user_id=user.id, session_id="old", expires_at=now - timedelta(seconds=1)
        )
        await memory_store.create_session(
            user_id=user.id, session_id="live", expires_at=now + timedelta(days=1)
        )

        assert await memory_store.delete_expired_sessions(now) == 1
        assert await memory_store.get_session("old") is None
        assert await memory_store.get_session("live") is not None

    async def test_duplicate_session_id_rejected(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        expires = datetime.now(UTC) + timedelta(days=1)
        await memory_store.create_session(user_id=user.id, session_id="s", expires_at=expires)
        with pytest.raises(ValueError):
            await memory_store.create_session(
                user_id=user.id, session_id="s", expires_at=expires
            )

    async def test_update_session_metadata(self, memory_store: MemoryStore):
        user = await _user(memory_store)
        await memory_store.create_session(
            user_id=user.id,
            session_id="s",
            expires_at=datetime.now(UTC) + timedelta(days=1),
            metadata={"user_agent": "cli"},
        )
        updated = await memory_store.update_session("s", metadata={"user_agent": "web"})
        assert updated.metadata == {"user_agent": "web"}

    async def test_update_session_rejects_unknown_fields(self, memory_store: MemoryStore):
        with pytest.raises(ValueError):
            await memory_store.update_session("s", user_id=uuid.uuid4())


class TestTransaction:
    async def test_commits_on_success(self, memory_store: MemoryStore):
        async with memory_store.transaction() as tx:
            await _user(tx, "a@example.com")

        assert await memory_store.find_user_by_email("a@example.com") is not None

    async def test_rolls_back_on_error(self, memory_store: MemoryStore):
        existing = await _user(memory_store, "existing@example.com", credits=100)

        with pytest.raises(RuntimeError):
            async with memory_store.transaction() as tx:
                await _user(tx, "new@example.com")
                await tx.add_credits(existing.id, 900)
                raise RuntimeError("fail mid-way")

        assert await memory_store.find_user_by_email("new@example.com") is None
        assert (await memory_store.get_user(existing.id)).credits == 100
        assert len(memory_store.users) == 1
