"""Tests for the Supply Allocator and display-only supply statistics."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cardvault.db import atomic, create_card_definition, create_user
from cardvault.models.card import InstanceStatus, RarityTier
from cardvault.models.db import Base, CardInstanceDB, MintLogDB
from cardvault.models.failure import (
    ContentUnavailableError,
    ForbiddenError,
    NotFoundError,
    SupplyExhaustedError,
)
from cardvault.models.identity import Caller
from cardvault.services.events import INSTANCE_MINTED
from cardvault.services.supply import allocate_instance, query_remaining_supply
from cardvault.services.supply_display import (
    displayed_remaining_supply,
    set_display_override,
)
from cardvault.timeutil import utcnow

ADMIN = Caller("admin", is_admin=True)


class TestAllocateInstance:
    async def test_mints_sequential_numbers(self, session: AsyncSession, make_user, make_card):
        """Mint numbers start at 1 and go up by one."""
        await make_user("alice")
        card = await make_card()

        first = await allocate_instance(session, card.id, "Rare", "alice")
        second = await allocate_instance(session, card.id, "Rare", "alice")

        assert first.mint_number == 1
        assert second.mint_number == 2
        assert first.status == InstanceStatus.AVAILABLE
        assert first.owner_id == "alice"
        assert first.slabbed is False

    async def test_rarities_count_independently(
        self, session: AsyncSession, make_user, make_card
    ) -> None:
        """Each rarity tier has its own mint sequence."""
        await make_user("alice")
        card = await make_card()

        rare = await allocate_instance(session, card.id, "Rare", "alice")
        event = await allocate_instance(session, card.id, "Event", "alice")

        assert rare.mint_number == 1
        assert event.mint_number == 1

    async def test_supply_exhausted_at_cap(self, session: AsyncSession, make_user, make_card):
        """Minting past total_copies fails SupplyExhausted."""
        await make_user("alice")
        card = await make_card(tiers=[RarityTier("Divine", 1)])
        card_id = card.id

        await allocate_instance(session, card_id, "Divine", "alice")
        with pytest.raises(SupplyExhaustedError) as exc_info:
            await allocate_instance(session, card_id, "Divine", "alice")

        assert exc_info.value.total_copies == 1
        assert await query_remaining_supply(session, card_id, "Divine") == 0

    async def test_outside_window_is_unavailable(
        self, session: AsyncSession, make_user, make_card
    ) -> None:
        """A tier whose window has closed fails ContentUnavailable."""
        await make_user("alice")
        now = utcnow()
        card = await make_card(
            tiers=[
                RarityTier(
                    "Event",
                    50,
                    available_from=now - timedelta(days=10),
                    available_to=now - timedelta(days=1),
                )
            ]
        )
        card_id = card.id

        with pytest.raises(ContentUnavailableError):
            await allocate_instance(session, card_id, "Event", "alice", now=now)

        assert await query_remaining_supply(session, card_id, "Event") == 50

    async def test_window_not_yet_open(self, session: AsyncSession, make_user, make_card):
        await make_user("alice")
        now = utcnow()
        card = await make_card(
            tiers=[RarityTier("Event", 50, available_from=now + timedelta(hours=1))]
        )

        with pytest.raises(ContentUnavailableError):
            await allocate_instance(session, card.id, "Event", "alice", now=now)

    async def test_inside_window_mints(self, session: AsyncSession, make_user, make_card):
        await make_user("alice")
        now = utcnow()
        card = await make_card(
            tiers=[
                RarityTier(
                    "Event",
                    50,
                    available_from=now - timedelta(days=1),
                    available_to=now + timedelta(days=1),
                )
            ]
        )

        instance = await allocate_instance(session, card.id, "Event", "alice", now=now)

        assert instance.mint_number == 1

    async def test_unknown_tier(self, session: AsyncSession, make_user, make_card):
        await make_user("alice")
        card = await make_card()

        with pytest.raises(NotFoundError):
            await allocate_instance(session, card.id, "Mythic", "alice")

    async def test_unknown_owner(self, session: AsyncSession, make_card):
        card = await make_card()
        card_id = card.id

        with pytest.raises(NotFoundError):
            await allocate_instance(session, card_id, "Rare", "ghost")

        assert await query_remaining_supply(session, card_id, "Rare") == 300

    async def test_writes_mint_log(self, session: AsyncSession, make_user, make_card):
        """Every allocation appends a mint log row."""
        await make_user("alice")
        card = await make_card()

        instance = await allocate_instance(session, card.id, "Rare", "alice")

        result = await session.execute(select(MintLogDB))
        [entry] = result.scalars().all()
        assert entry.instance_id == instance.id
        assert entry.user_id == "alice"
        assert entry.mint_number == 1
        assert entry.total_copies == 300

    async def test_emits_minted_event(
        self, session: AsyncSession, make_user, make_card, recorder
    ) -> None:
        recorder.listen(INSTANCE_MINTED)
        await make_user("alice")
        card = await make_card()

        instance = await allocate_instance(session, card.id, "Rare", "alice")

        [payload] = recorder.payloads(INSTANCE_MINTED)
        assert payload["instance_id"] == instance.id
        assert payload["mint_number"] == 1


class TestConcurrentAllocation:
    async def test_no_duplicate_mint_numbers(self, tmp_path) -> None:
        """N concurrent allocations against cap C yield exactly {1..C}."""
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'mint.db'}",
            connect_args={"timeout": 30},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        cap = 5
        attempts = 12
        async with factory() as session, atomic(session):
            await create_user(session, "alice", "alice-name")
            card = await create_card_definition(session, "Storm Ibis", [RarityTier("Rare", cap)])
        card_id = card.id

        async def one_allocation() -> int:
            async with factory() as session:
                instance = await allocate_instance(session, card_id, "Rare", "alice")
                return instance.mint_number

        try:
            results = await asyncio.gather(
                *(one_allocation() for _ in range(attempts)), return_exceptions=True
            )

            minted = sorted(r for r in results if isinstance(r, int))
            failures = [r for r in results if not isinstance(r, int)]
            assert minted == list(range(1, cap + 1))
            assert len(failures) == attempts - cap
            assert all(isinstance(f, SupplyExhaustedError) for f in failures)

            async with factory() as session:
                rows = await session.execute(
                    select(CardInstanceDB.mint_number).where(
                        CardInstanceDB.definition_id == card_id
                    )
                )
                assert sorted(rows.scalars().all()) == list(range(1, cap + 1))
        finally:
            await engine.dispose()


class TestDisplayedSupply:
    async def test_defaults_to_actual_remaining(
        self, session: AsyncSession, make_user, make_card
    ) -> None:
        await make_user("alice")
        card = await make_card()
        await allocate_instance(session, card.id, "Rare", "alice")

        displayed = await displayed_remaining_supply(session, card.id, "Rare")

        assert displayed.remaining == 299
        assert displayed.overridden is False

    async def test_override_changes_display_only(
        self, session: AsyncSession, make_user, make_card
    ) -> None:
        """A display override never lets allocation pass the real cap."""
        await make_user("alice")
        card = await make_card(tiers=[RarityTier("Mythic", 2)])
        card_id = card.id

        async with atomic(session):
            await set_display_override(session, ADMIN, card_id, "Mythic", 500)

        await allocate_instance(session, card_id, "Mythic", "alice")
        await allocate_instance(session, card_id, "Mythic", "alice")
        with pytest.raises(SupplyExhaustedError):
            await allocate_instance(session, card_id, "Mythic", "alice")

        displayed = await displayed_remaining_supply(session, card_id, "Mythic")
        assert displayed.remaining == 500
        assert displayed.overridden is True
        assert await query_remaining_supply(session, card_id, "Mythic") == 0

    async def test_zero_override_does_not_block_allocation(
        self, session: AsyncSession, make_user, make_card
    ) -> None:
        await make_user("alice")
        card = await make_card()

        async with atomic(session):
            await set_display_override(session, ADMIN, card.id, "Rare", 0)
        instance = await allocate_instance(session, card.id, "Rare", "alice")

        assert instance.mint_number == 1

    async def test_clear_override(self, session: AsyncSession, make_card):
        card = await make_card()

        async with atomic(session):
            await set_display_override(session, ADMIN, card.id, "Rare", 7)
        async with atomic(session):
            await set_display_override(session, ADMIN, card.id, "Rare", None)

        displayed = await displayed_remaining_supply(session, card.id, "Rare")
        assert displayed.remaining == 300
        assert displayed.overridden is False

    async def test_override_requires_admin(self, session: AsyncSession, make_card):
        card = await make_card()

        with pytest.raises(ForbiddenError):
            await set_display_override(session, Caller("alice"), card.id, "Rare", 7)
