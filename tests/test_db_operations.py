"""Tests for database CRUD operations."""

import sqlite3
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.db import (
    atomic,
    create_card_definition,
    create_user,
    credit_packs,
    debit_packs,
    delete_setting,
    get_card_definition,
    get_packs_balance,
    get_rarity_tier,
    get_setting,
    get_user,
    get_user_instances,
    lock_users,
    require_user,
    set_setting,
)
from cardvault.models.card import RarityTier
from cardvault.models.failure import (
    ConflictError,
    InsufficientAssetsError,
    NotFoundError,
    ValidationError,
)
from cardvault.models.identity import Caller
from cardvault.services.registry import return_to_pool
from cardvault.timeutil import utcnow


class TestUserOperations:
    async def test_create_user(self, session: AsyncSession) -> None:
        """Can register a user with an opening balance."""
        user = await create_user(session, "alice", "Alice", packs=3)
        await session.commit()

        assert user.id == "alice"
        assert (await get_user(session, "alice")).packs == 3

    async def test_get_missing_user(self, session: AsyncSession) -> None:
        assert await get_user(session, "nobody") is None

    async def test_require_missing_user(self, session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await require_user(session, "nobody")

    async def test_negative_opening_balance(self, session: AsyncSession) -> None:
        with pytest.raises(ValidationError):
            await create_user(session, "alice", "Alice", packs=-2)

    async def test_duplicate_username(self, session: AsyncSession) -> None:
        await create_user(session, "alice", "Alice")

        with pytest.raises(IntegrityError):
            await create_user(session, "alice2", "Alice")


class TestPacksLedger:
    async def test_debit_and_credit(self, session: AsyncSession, make_user) -> None:
        await make_user("alice", packs=5)

        async with atomic(session):
            await debit_packs(session, "alice", 2)
            await credit_packs(session, "alice", 4)

        assert await get_packs_balance(session, "alice") == 7

    async def test_debit_more_than_balance(self, session: AsyncSession, make_user) -> None:
        """A debit that would go negative fails and changes nothing."""
        await make_user("alice", packs=1)

        with pytest.raises(InsufficientAssetsError):
            async with atomic(session):
                await debit_packs(session, "alice", 2)

        assert await get_packs_balance(session, "alice") == 1

    async def test_debit_exact_balance(self, session: AsyncSession, make_user) -> None:
        await make_user("alice", packs=3)

        async with atomic(session):
            await debit_packs(session, "alice", 3)

        assert await get_packs_balance(session, "alice") == 0

    async def test_zero_amount_is_noop(self, session: AsyncSession, make_user) -> None:
        await make_user("alice")

        async with atomic(session):
            await debit_packs(session, "alice", 0)
            await credit_packs(session, "alice", 0)

        assert await get_packs_balance(session, "alice") == 0

    async def test_negative_amount(self, session: AsyncSession, make_user) -> None:
        await make_user("alice", packs=5)

        with pytest.raises(ValidationError):
            await debit_packs(session, "alice", -1)
        with pytest.raises(ValidationError):
            await credit_packs(session, "alice", -1)

    async def test_credit_unknown_user(self, session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await credit_packs(session, "ghost", 1)

    async def test_balance_of_unknown_user(self, session: AsyncSession) -> None:
        with pytest.raises(NotFoundError):
            await get_packs_balance(session, "ghost")


class TestCardDefinitionOperations:
    async def test_create_with_tiers(self, session: AsyncSession) -> None:
        definition = await create_card_definition(
            session,
            "Tide Caller",
            [RarityTier("Common", 1000), RarityTier("Legendary", 5)],
            image_url="https://img.example/tide-caller.png",
        )
        await session.commit()

        loaded = await get_card_definition(session, definition.id)
        assert loaded.name == "Tide Caller"
        assert sorted(t.rarity for t in loaded.rarities) == ["Common", "Legendary"]

        tier = await get_rarity_tier(session, definition.id, "Legendary")
        assert tier.total_copies == 5
        assert tier.minted_count == 0

    async def test_missing_definition(self, session: AsyncSession) -> None:
        assert await get_card_definition(session, 404) is None
        assert await get_rarity_tier(session, 404, "Rare") is None

    @pytest.mark.parametrize(
        ("name", "tiers"),
        [
            ("  ", [RarityTier("Rare", 10)]),
            ("Empty", []),
            ("Zero Cap", [RarityTier("Rare", 0)]),
            ("Duplicate", [RarityTier("Rare", 10), RarityTier("Rare", 20)]),
        ],
    )
    async def test_rejects_invalid_definitions(
        self, session: AsyncSession, name: str, tiers: list[RarityTier]
    ) -> None:
        with pytest.raises(ValidationError):
            await create_card_definition(session, name, tiers)

    async def test_rejects_inverted_window(self, session: AsyncSession) -> None:
        now = utcnow()
        tier = RarityTier("Event", 50, available_from=now, available_to=now - timedelta(days=1))

        with pytest.raises(ValidationError):
            await create_card_definition(session, "Backwards", [tier])


class TestCollectionQueries:
    async def test_excludes_retired_instances(
        self, session: AsyncSession, make_user, make_card, mint
    ) -> None:
        await make_user("alice")
        card = await make_card()
        kept = await mint(card.id, "alice")
        retired = await mint(card.id, "alice")
        kept_id, retired_id = kept.id, retired.id

        await return_to_pool(session, Caller("admin", is_admin=True), retired_id)

        instances = await get_user_instances(session, "alice")
        assert [i.id for i in instances] == [kept_id]

    async def test_empty_collection(self, session: AsyncSession, make_user) -> None:
        await make_user("bob")

        assert await get_user_instances(session, "bob") == []


class TestSettingOperations:
    async def test_set_and_get(self, session: AsyncSession) -> None:
        await set_setting(session, "display.remaining.1.Rare", 12)
        await session.commit()

        assert await get_setting(session, "display.remaining.1.Rare") == 12

    async def test_overwrite(self, session: AsyncSession) -> None:
        await set_setting(session, "motd", "hello")
        await set_setting(session, "motd", "goodbye")
        await session.commit()

        assert await get_setting(session, "motd") == "goodbye"

    async def test_delete(self, session: AsyncSession) -> None:
        await set_setting(session, "motd", "hello")
        await session.commit()

        assert await delete_setting(session, "motd") is True
        await session.commit()
        assert await get_setting(session, "motd") is None

    async def test_delete_missing(self, session: AsyncSession) -> None:
        assert await delete_setting(session, "never-set") is False


class _PostgresError(Exception):
    def __init__(self, sqlstate: str):
        super().__init__(f"SQLSTATE {sqlstate}")
        self.sqlstate = sqlstate


class TestAtomic:
    async def test_commits_on_success(self, session: AsyncSession) -> None:
        async with atomic(session):
            await create_user(session, "dave", "Dave")

        assert await get_user(session, "dave") is not None

    @pytest.mark.parametrize(
        "orig",
        [
            _PostgresError("40P01"),
            _PostgresError("40001"),
            sqlite3.OperationalError("database is locked"),
        ],
        ids=["deadlock", "serialization", "sqlite-busy"],
    )
    async def test_lock_contention_becomes_conflict(
        self, session: AsyncSession, orig: Exception
    ) -> None:
        """A transaction the database aborted under contention is a retryable conflict."""
        with pytest.raises(ConflictError) as exc_info:
            async with atomic(session):
                await create_user(session, "dave", "Dave")
                raise OperationalError("UPDATE users SET packs = ?", (1,), orig)

        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert await get_user(session, "dave") is None

    async def test_other_database_errors_pass_through(self, session: AsyncSession) -> None:
        with pytest.raises(OperationalError):
            async with atomic(session):
                await create_user(session, "dave", "Dave")
                raise OperationalError("SELECT 1", (), sqlite3.OperationalError("disk I/O error"))

        assert await get_user(session, "dave") is None

    async def test_integrity_errors_stay_integrity_errors(self, session: AsyncSession) -> None:
        async with atomic(session):
            await create_user(session, "dave", "Dave")

        with pytest.raises(IntegrityError):
            async with atomic(session):
                await create_user(session, "dave", "Dave again")


class TestLockUsers:
    async def test_locks_known_users_and_ignores_empty(self, session: AsyncSession) -> None:
        async with atomic(session):
            await create_user(session, "erin", "Erin", packs=2)

        async with atomic(session):
            await lock_users(session, ["erin", "ghost", "erin"])
            await lock_users(session, [])
            await credit_packs(session, "erin", 1)

        assert await get_packs_balance(session, "erin") == 3
