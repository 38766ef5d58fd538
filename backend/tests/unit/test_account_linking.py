"""Tests for secure account linking.

Exact-match identity classification and all-or-nothing account merges.
"""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from oauth_broker.core.errors import AlreadyConnectedError, NotFoundError, ValidationError
from oauth_broker.services.account_linking import LinkingAction, SecureAccountLinking
from oauth_broker.storage.memory import MemoryStore


@pytest.fixture
def linking(memory_store: MemoryStore) -> SecureAccountLinking:
    return SecureAccountLinking(memory_store)


async def _user(store: MemoryStore, email: str, credits: int = 500):
    return await store.create_user(primary_email=email, provider="google", credits=credits)


async def _connect(store: MemoryStore, user_id, provider: str, email: str):
    return await store.upsert_connection(
        user_id=user_id,
        provider=provider,
        email=email,
        scopes=["email"],
        access_token="enc",
        refresh_token="enc-r",
        expires_at=datetime.now(UTC) + timedelta(hours=1),
    )


class TestCheckExistingAccount:
    async def test_unknown_email_is_pending(self, linking: SecureAccountLinking):
        decision = await linking.check_existing_account("new@example.com", "google")

        assert decision.action is LinkingAction.PENDING_USER_CHOICE
        assert decision.existing_user_id is None

    async def test_exact_match_adds_to_existing(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        user = await _user(memory_store, "ada@example.com")

        decision = await linking.check_existing_account("ada@example.com", "github")

        assert decision.action is LinkingAction.ADD_TO_EXISTING
        assert decision.existing_user_id == user.id

    async def test_match_is_case_insensitive(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        user = await _user(memory_store, "ada@example.com")

        decision = await linking.check_existing_account(" ADA@Example.com", "github")

        assert decision.existing_user_id == user.id

    async def test_similar_email_is_not_matched(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        """No fuzzy matching: a look-alike address is a different identity."""
        await _user(memory_store, "ada@example.com")

        for lookalike in ("ada@examp1e.com", "ada+work@example.com", "ada@example.co"):
            decision = await linking.check_existing_account(lookalike, "github")
            assert decision.action is LinkingAction.PENDING_USER_CHOICE

    async def test_already_connected_raises_with_owner(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        user = await _user(memory_store, "ada@example.com")
        await _connect(memory_store, user.id, "google", "ada@example.com")

        with pytest.raises(AlreadyConnectedError) as exc_info:
            await linking.check_existing_account("ada@example.com", "google")

        assert exc_info.value.user_id == user.id

    async def test_other_email_same_provider_adds(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        """A second account of the same provider for a linked email is allowed."""
        user = await _user(memory_store, "ada@example.com")
        await memory_store.add_linked_email(
            user_id=user.id, email="work@example.com", provider="google"
        )
        await _connect(memory_store, user.id, "google", "ada@example.com")

        decision = await linking.check_existing_account("work@example.com", "google")

        assert decision.action is LinkingAction.ADD_TO_EXISTING


class TestMergeVerifiedAccounts:
    async def test_merge_moves_everything(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        keep = await _user(memory_store, "keep@example.com", credits=500)
        merge = await _user(memory_store, "merge@example.com", credits=300)
        await _connect(memory_store, merge.id, "github", "merge@example.com")
        await memory_store.create_session(
            user_id=merge.id,
            session_id="merge-session",
            expires_at=datetime.now(UTC) + timedelta(days=1),
        )

        result = await linking.merge_verified_accounts(keep.id, merge.id)

        assert result.connections_moved == 1
        assert result.emails_moved == 1
        assert result.sessions_moved == 1
        assert result.credits_added == 300
        assert (await memory_store.get_user(keep.id)).credits == 800
        assert await memory_store.get_user(merge.id) is None
        owner = await memory_store.find_user_by_email("merge@example.com")
        assert owner.id == keep.id
        assert (await memory_store.get_session("merge-session")).user_id == keep.id
        assert [c.provider for c in await memory_store.list_connections(keep.id)] == [
            "github"
        ]

    async def test_merge_without_credits(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        keep = await _user(memory_store, "keep@example.com", credits=500)
        merge = await _user(memory_store, "merge@example.com", credits=0)

        result = await linking.merge_verified_accounts(keep.id, merge.id)

        assert result.credits_added == 0
        assert (await memory_store.get_user(keep.id)).credits == 500

    async def test_merge_into_self_rejected(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        user = await _user(memory_store, "a@example.com")
        with pytest.raises(ValidationError):
            await linking.merge_verified_accounts(user.id, user.id)

    async def test_missing_user(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        keep = await _user(memory_store, "keep@example.com")
        with pytest.raises(NotFoundError):
            await linking.merge_verified_accounts(keep.id, uuid.uuid4())

    async def test_failure_mid_merge_rolls_back(
        self, linking: SecureAccountLinking, memory_store: MemoryStore
    ):
        keep = await _user(memory_store, "keep@example.com", credits=500)
        merge = await _user(memory_store, "merge@example.com", credits=300)
        await _connect(memory_store, merge.id, "github", "merge@example.com")

        with (
            patch.object(
                MemoryStore,
                "reassign_sessions",
                new_callable=AsyncMock,
                side_effect=RuntimeError("connection lost"),
            ),
            pytest.raises(RuntimeError),
        ):
            await linking.merge_verified_accounts(keep.id, merge.id)

        assert (await memory_store.get_user(keep.id)).credits == 500
        assert await memory_store.get_user(merge.id) is not None
        assert [c.user_id for c in await memory_store.list_connections(merge.id)] == [
            merge.id
        ]
        owner = await memory_store.find_user_by_email("merge@example.com")
        assert owner.id == merge.id
