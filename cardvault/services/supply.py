"""
Supply Allocator — mint-number assignment under a fixed cap.

INVARIANTS:
- Within a (definition, rarity) pair every issued mint number is distinct
  and lies in 1..total_copies
- Increment-and-check is ONE conditional UPDATE. There is never a
  "read the count, then write" window between two statements
- The unique constraint on (definition, rarity, mint_number) is the
  final backstop; a violation surfaces as ConflictError
- Mint numbers are never reissued. The counter only moves up, so retired
  instances keep their number forever

Nothing in this module reads display overrides (see supply_display).
"""

import logging
from datetime import datetime
from typing import NoReturn

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.db.database import atomic
from cardvault.db.operations import get_rarity_tier, require_user
from cardvault.models.card import InstanceStatus
from cardvault.models.db import CardInstanceDB, MintLogDB, RarityTierDB
from cardvault.models.failure import (
    ConflictError,
    ContentUnavailableError,
    NotFoundError,
    SupplyExhaustedError,
)
from cardvault.services.events import INSTANCE_MINTED, EventBus, get_event_bus, log_audit
from cardvault.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)


def is_within_window(tier: RarityTierDB, now: datetime) -> bool:
    """Check a tier's optional [available_from, available_to] window."""
    if tier.available_from is not None and now < as_utc(tier.available_from):
        return False
    if tier.available_to is not None and now > as_utc(tier.available_to):
        return False
    return True


async def _explain_allocation_failure(
    session: AsyncSession, definition_id: int, rarity: str, now: datetime
) -> NoReturn:
    """Work out why the conditional increment matched no row, and raise it."""
    tier = await get_rarity_tier(session, definition_id, rarity)
    if tier is None:
        raise NotFoundError(f"Card {definition_id} has no {rarity} rarity tier")
    if not is_within_window(tier, now):
        raise ContentUnavailableError(
            f"The {rarity} version of this card is not available right now.",
            detail=f"window={tier.available_from}..{tier.available_to} now={now}",
        )
    if tier.minted_count >= tier.total_copies:
        raise SupplyExhaustedError(definition_id, rarity, tier.total_copies)
    raise ConflictError(f"Allocation for card {definition_id} ({rarity}) did not apply")


async def allocate_instance(
    session: AsyncSession,
    definition_id: int,
    rarity: str,
    owner_id: str,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> CardInstanceDB:
    """
    Mint the next copy of a card at a rarity and give it to `owner_id`.

    Runs as its own transaction. Safe under any number of concurrent
    callers: the database serialises the counter increment per tier.

    Raises:
        NotFoundError: Unknown owner or no such rarity tier
        ContentUnavailableError: Tier is outside its availability window
        SupplyExhaustedError: Every copy has already been minted
        ConflictError: Uniqueness backstop fired; caller may retry
    """
    now = now or utcnow()

    async with atomic(session):
        await require_user(session, owner_id)

        result = await session.execute(
            update(RarityTierDB)
            .where(
                RarityTierDB.definition_id == definition_id,
                RarityTierDB.rarity == rarity,
                RarityTierDB.minted_count < RarityTierDB.total_copies,
                or_(RarityTierDB.available_from.is_(None), RarityTierDB.available_from <= now),
                or_(RarityTierDB.available_to.is_(None), RarityTierDB.available_to >= now),
            )
            .values(minted_count=RarityTierDB.minted_count + 1)
            .returning(RarityTierDB.minted_count, RarityTierDB.total_copies)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            await _explain_allocation_failure(session, definition_id, rarity, now)
        mint_number, total_copies = row

        instance = CardInstanceDB(
            definition_id=definition_id,
            rarity=rarity,
            mint_number=mint_number,
            owner_id=owner_id,
            status=InstanceStatus.AVAILABLE,
            slabbed=False,
            acquired_at=now,
            version=1,
        )
        session.add(instance)
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Mint number {mint_number} for card {definition_id} ({rarity}) already issued",
                detail="uniqueness backstop",
            ) from e

        session.add(
            MintLogDB(
                user_id=owner_id,
                instance_id=instance.id,
                definition_id=definition_id,
                rarity=rarity,
                mint_number=mint_number,
                total_copies=total_copies,
                minted_at=now,
            )
        )
        await session.flush()

    logger.info(
        "Minted card %d (%s) #%d/%d for %s",
        definition_id,
        rarity,
        mint_number,
        total_copies,
        owner_id,
    )
    log_audit(
        "Instance Minted",
        instance_id=instance.id,
        definition_id=definition_id,
        rarity=rarity,
        mint_number=mint_number,
        owner_id=owner_id,
    )
    (bus or get_event_bus()).emit(
        INSTANCE_MINTED,
        instance_id=instance.id,
        owner_id=owner_id,
        definition_id=definition_id,
        rarity=rarity,
        mint_number=mint_number,
    )
    return instance


async def query_remaining_supply(session: AsyncSession, definition_id: int, rarity: str) -> int:
    """
    Copies still available to mint (cap minus allocated).

    Advisory only. Safe to serve from a lagging replica; allocation never
    consults this value.
    """
    tier = await get_rarity_tier(session, definition_id, rarity)
    if tier is None:
        raise NotFoundError(f"Card {definition_id} has no {rarity} rarity tier")
    return max(tier.total_copies - tier.minted_count, 0)
