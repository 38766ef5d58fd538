"""Secure account linking.

Decides how a freshly verified provider identity relates to existing users.
Matching is exact only: the normalized email either is a linked email of an
existing user or it is not. There is no similarity matching and no hint
about accounts with similar addresses, so a login can never be steered into
someone else's account.

Merging two users is allowed only after the caller has verified ownership of
both (the user completed OAuth with each).
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum

from oauth_broker.core.errors import AlreadyConnectedError, NotFoundError, ValidationError
from oauth_broker.storage.base import Store, normalize_email

logger = logging.getLogger(__name__)


class LinkingAction(Enum):
    """Outcome of an identity check."""

    ADD_TO_EXISTING = "add_to_existing"
    PENDING_USER_CHOICE = "pending_user_choice"


@dataclass(frozen=True)
class LinkingDecision:
    """What to do with a verified provider identity.

    Attributes:
        action: ADD_TO_EXISTING or PENDING_USER_CHOICE.
        existing_user_id: Owner of the matching email for ADD_TO_EXISTING.
    """

    action: LinkingAction
    existing_user_id: uuid.UUID | None = None

    @classmethod
    def add_to_existing(cls, user_id: uuid.UUID) -> "LinkingDecision":
        return cls(action=LinkingAction.ADD_TO_EXISTING, existing_user_id=user_id)

    @classmethod
    def pending_user_choice(cls) -> "LinkingDecision":
        return cls(action=LinkingAction.PENDING_USER_CHOICE)


@dataclass(frozen=True)
class MergeResult:
    """Counts of what moved from the merged user to the kept user."""

    kept_user_id: uuid.UUID
    merged_user_id: uuid.UUID
    connections_moved: int
    emails_moved: int
    sessions_moved: int
    credits_added: int


class SecureAccountLinking:
    """Account-linking decision engine.

    Args:
        store: Persistence. Callers inside a transaction pass the
            transaction-bound store per call instead.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def check_existing_account(
        self,
        email: str,
        provider: str,
        *,
        store: Store | None = None,
    ) -> LinkingDecision:
        """Classify a verified (email, provider) identity.

        Args:
            email: Email reported by the provider.
            provider: Provider name.
            store: Transaction-bound store to use, if any.

        Returns:
            ADD_TO_EXISTING with the owner's id when the exact email is
            already linked, PENDING_USER_CHOICE otherwise.

        Raises:
            AlreadyConnectedError: If the owner already has this provider
                connected for this exact email. Carries the owner's id.
        """
        db = store or self._store
        normalized = normalize_email(email)

        user = await db.find_user_by_email(normalized)
        if user is None:
            return LinkingDecision.pending_user_choice()

        if await db.find_connection(user.id, provider, normalized) is not None:
            raise AlreadyConnectedError(provider, user_id=user.id)

        return LinkingDecision.add_to_existing(user.id)

    async def merge_verified_accounts(
        self,
        keep_user_id: uuid.UUID,
        merge_user_id: uuid.UUID,
    ) -> MergeResult:
        """Fold merge_user into keep_user, all-or-nothing.

        Moves connections and sessions, moves linked emails (dropping ones
        keep_user already has), adds the merged user's credits, then deletes
        the merged user. Any failure rolls back every step.

        Raises:
            ValidationError: If both ids are the same.
            NotFoundError: If either user does not exist.
        """
        if keep_user_id == merge_user_id:
            raise ValidationError("Cannot merge an account into itself")

        async with self._store.transaction() as tx:
            keep_user = await tx.get_user(keep_user_id)
            if keep_user is None:
                raise NotFoundError("User", str(keep_user_id))
            merge_user = await tx.get_user(merge_user_id)
            if merge_user is None:
                raise NotFoundError("User", str(merge_user_id))

            connections_moved = await tx.reassign_connections(merge_user_id, keep_user_id)
            emails_moved = await tx.move_linked_emails(merge_user_id, keep_user_id)

            credits_added = 0
            if merge_user.credits > 0:
                await tx.add_credits(keep_user_id, merge_user.credits)
                credits_added = merge_user.credits

            sessions_moved = await tx.reassign_sessions(merge_user_id, keep_user_id)
            await tx.delete_user(merge_user_id)

        logger.info(
            "Accounts merged",
            extra={
                "kept_user_id": str(keep_user_id),
                "merged_user_id": str(merge_user_id),
                "connections_moved": connections_moved,
            },
        )
        return MergeResult(
            kept_user_id=keep_user_id,
            merged_user_id=merge_user_id,
            connections_moved=connections_moved,
            emails_moved=emails_moved,
            sessions_moved=sessions_moved,
            credits_added=credits_added,
        )
