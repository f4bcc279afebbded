"""
Database CRUD operations.

Provides async functions for users, card definitions, settings and the
packs ledger. Functions flush but never commit; the caller owns the
transaction.
"""

from collections.abc import Iterable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cardvault.models.card import InstanceStatus, RarityTier
from cardvault.models.db import (
    CardDefinitionDB,
    CardInstanceDB,
    RarityTierDB,
    SettingDB,
    UserDB,
)
from cardvault.models.failure import InsufficientAssetsError, NotFoundError, ValidationError

# --- User Operations ---


async def get_user(session: AsyncSession, user_id: str) -> UserDB | None:
    """
    Get a user by id.

    Returns None if no such user exists.
    """
    return await session.get(UserDB, user_id)


async def require_user(session: AsyncSession, user_id: str) -> UserDB:
    """Get a user by id or raise NotFoundError."""
    user = await get_user(session, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def create_user(
    session: AsyncSession, user_id: str, username: str, packs: int = 0
) -> UserDB:
    """
    Register a user with an opening packs balance.

    Raises IntegrityError if the id or username is taken.
    """
    if packs < 0:
        raise ValidationError("Opening pack balance cannot be negative")
    user = UserDB(id=user_id, username=username, packs=packs)
    session.add(user)
    await session.flush()
    return user


# --- Packs Ledger ---


async def get_packs_balance(session: AsyncSession, user_id: str) -> int:
    """Read a user's current packs balance from the database."""
    packs = await session.scalar(select(UserDB.packs).where(UserDB.id == user_id))
    if packs is None:
        raise NotFoundError(f"User {user_id} not found")
    return int(packs)


async def debit_packs(session: AsyncSession, user_id: str, amount: int) -> None:
    """
    Remove packs from a balance.

    The balance check and the write are one conditional UPDATE, so two
    concurrent debits can never take a balance below zero.
    """
    if amount < 0:
        raise ValidationError("Pack amount cannot be negative")
    if amount == 0:
        return

    result = await session.execute(
        update(UserDB)
        .where(UserDB.id == user_id, UserDB.packs >= amount)
        .values(packs=UserDB.packs - amount)
        .execution_options(synchronize_session=False)
    )
    # rowcount is available on UPDATE results; type stubs incomplete for async
    if int(result.rowcount) == 0:  # type: ignore[attr-defined]
        raise InsufficientAssetsError(
            f"User {user_id} does not have {amount} pack(s)",
            detail=f"debit user={user_id} amount={amount}",
        )


async def credit_packs(session: AsyncSession, user_id: str, amount: int) -> None:
    """Add packs to a balance."""
    if amount < 0:
        raise ValidationError("Pack amount cannot be negative")
    if amount == 0:
        return

    result = await session.execute(
        update(UserDB)
        .where(UserDB.id == user_id)
        .values(packs=UserDB.packs + amount)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount) == 0:  # type: ignore[attr-defined]
        raise NotFoundError(f"User {user_id} not found")


async def lock_users(session: AsyncSession, user_ids: Iterable[str]) -> None:
    """
    Row-lock users in ascending id order before their balances move.

    Exchanges take both parties here, once, before any debit or credit.
    """
    ids = sorted(set(user_ids))
    if not ids:
        return
    await session.execute(
        select(UserDB.id).where(UserDB.id.in_(ids)).order_by(UserDB.id).with_for_update()
    )


# --- Card Definition Operations ---


async def create_card_definition(
    session: AsyncSession,
    name: str,
    tiers: list[RarityTier],
    image_url: str = "",
    flavor_text: str | None = None,
) -> CardDefinitionDB:
    """
    Create a card definition with its rarity tiers.

    Validates caps and availability windows before writing.
    """
    if not name.strip():
        raise ValidationError("Card name cannot be empty")
    if not tiers:
        raise ValidationError("A card definition needs at least one rarity tier")

    seen: set[str] = set()
    for tier in tiers:
        if tier.rarity in seen:
            raise ValidationError(f"Duplicate rarity tier: {tier.rarity}")
        seen.add(tier.rarity)
        if tier.total_copies < 1:
            raise ValidationError(f"Rarity {tier.rarity} must allow at least one copy")
        if (
            tier.available_from is not None
            and tier.available_to is not None
            and tier.available_from > tier.available_to
        ):
            raise ValidationError(f"Rarity {tier.rarity} availability window is inverted")

    definition = CardDefinitionDB(name=name, image_url=image_url, flavor_text=flavor_text)
    definition.rarities = [
        RarityTierDB(
            rarity=tier.rarity,
            total_copies=tier.total_copies,
            minted_count=0,
            available_from=tier.available_from,
            available_to=tier.available_to,
        )
        for tier in tiers
    ]
    session.add(definition)
    await session.flush()
    return definition


async def get_card_definition(
    session: AsyncSession, definition_id: int
) -> CardDefinitionDB | None:
    """Get a card definition with its rarity tiers eagerly loaded."""
    result = await session.execute(
        select(CardDefinitionDB)
        .where(CardDefinitionDB.id == definition_id)
        .options(selectinload(CardDefinitionDB.rarities))
    )
    return result.scalar_one_or_none()


async def get_rarity_tier(
    session: AsyncSession, definition_id: int, rarity: str
) -> RarityTierDB | None:
    """Get one rarity tier, always re-reading from the database."""
    result = await session.execute(
        select(RarityTierDB)
        .where(RarityTierDB.definition_id == definition_id, RarityTierDB.rarity == rarity)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# --- Collection Queries ---


async def get_user_instances(session: AsyncSession, owner_id: str) -> list[CardInstanceDB]:
    """Get every non-retired instance a user owns, newest first."""
    result = await session.execute(
        select(CardInstanceDB)
        .where(
            CardInstanceDB.owner_id == owner_id,
            CardInstanceDB.status != InstanceStatus.RETIRED,
        )
        .order_by(CardInstanceDB.acquired_at.desc(), CardInstanceDB.id.desc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


# --- Settings Operations ---


async def get_setting(session: AsyncSession, key: str) -> Any | None:
    """Get a setting value, or None if unset."""
    setting = await session.get(SettingDB, key)
    return setting.value if setting else None


async def set_setting(session: AsyncSession, key: str, value: Any) -> SettingDB:
    """Insert or update a setting."""
    existing = await session.get(SettingDB, key)
    if existing:
        existing.value = value
        await session.flush()
        return existing

    setting = SettingDB(key=key, value=value)
    session.add(setting)
    await session.flush()
    return setting


async def delete_setting(session: AsyncSession, key: str) -> bool:
    """
    Delete a setting.

    Returns True if deleted, False if not found.
    """
    existing = await session.get(SettingDB, key)
    if not existing:
        return False
    await session.delete(existing)
    return True
