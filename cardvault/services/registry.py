"""
Instance Registry — authoritative store of card instances.

Every status or ownership change in the system goes through
`transition_status`, a compare-and-swap on (status, owner). Market,
trading and grading never set flags of their own; they ask the registry
to move an instance between states.

State machine:
    available -> listed -> available           (listing cancelled/expired)
    listed -> available under a new owner      (offer accepted)
    available -> available under a new owner   (trade accepted)
    available -> grading_requested -> grading_complete -> available
    available -> retired                       (returned to the pool)

INVARIANT: A stale write matches zero rows and raises ConflictError. It
never silently overwrites a concurrent change.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.db.database import atomic
from cardvault.models.card import ALLOWED_TRANSITIONS, CardSnapshot, InstanceStatus
from cardvault.models.db import CardDefinitionDB, CardInstanceDB
from cardvault.models.failure import (
    ConflictError,
    ForbiddenError,
    InstanceBusyError,
    InsufficientAssetsError,
    NotFoundError,
    ValidationError,
)
from cardvault.models.identity import Caller
from cardvault.services.events import INSTANCE_RETIRED, EventBus, get_event_bus, log_audit
from cardvault.timeutil import utcnow

logger = logging.getLogger(__name__)


async def get_instance(
    session: AsyncSession, instance_id: int, *, for_update: bool = False
) -> CardInstanceDB:
    """
    Read an instance straight from the database.

    Always bypasses the identity map so callers validate against the
    committed state, not an object loaded earlier in the session.
    """
    stmt = (
        select(CardInstanceDB)
        .where(CardInstanceDB.id == instance_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    instance = (await session.execute(stmt)).scalar_one_or_none()
    if instance is None:
        raise NotFoundError(f"Card instance {instance_id} not found")
    return instance


async def get_instances(
    session: AsyncSession, instance_ids: Iterable[int], *, for_update: bool = False
) -> list[CardInstanceDB]:
    """
    Read several instances, preserving the requested order.

    Raises NotFoundError naming the first missing id.
    """
    ids = list(instance_ids)
    if not ids:
        return []
    stmt = (
        select(CardInstanceDB)
        .where(CardInstanceDB.id.in_(ids))
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.order_by(CardInstanceDB.id).with_for_update()
    found = {inst.id: inst for inst in (await session.execute(stmt)).scalars().all()}
    for instance_id in ids:
        if instance_id not in found:
            raise NotFoundError(f"Card instance {instance_id} not found")
    return [found[instance_id] for instance_id in ids]


async def lock_instances(session: AsyncSession, instance_ids: Iterable[int]) -> None:
    """
    Row-lock a set of instances in ascending id order.

    Every exchange takes its instance locks here, once, before any other
    instance read. Missing ids are left for the later checks to report.
    """
    ids = sorted(set(instance_ids))
    if not ids:
        return
    await session.execute(
        select(CardInstanceDB.id)
        .where(CardInstanceDB.id.in_(ids))
        .order_by(CardInstanceDB.id)
        .with_for_update()
    )


async def transition_status(
    session: AsyncSession,
    instance_id: int,
    expected: InstanceStatus,
    next_status: InstanceStatus,
    *,
    owner_id: str | None = None,
    changes: dict[str, Any] | None = None,
) -> None:
    """
    Compare-and-swap an instance's status.

    Args:
        expected: Status the caller observed. The write only lands if the
            row still has it.
        next_status: Status to move to. Must be a legal move from `expected`.
        owner_id: When given, the row must also still belong to this user.
        changes: Extra column values written in the same statement
            (new owner, grading fields, ...).

    Raises:
        ValidationError: `expected -> next_status` is not a legal move
        NotFoundError: No such instance
        ConflictError: The row no longer matches what the caller observed
    """
    if next_status not in ALLOWED_TRANSITIONS[expected]:
        raise ValidationError(
            f"Illegal status transition {expected.value} -> {next_status.value}",
            detail=f"instance={instance_id}",
        )

    stmt = update(CardInstanceDB).where(
        CardInstanceDB.id == instance_id,
        CardInstanceDB.status == expected,
    )
    if owner_id is not None:
        stmt = stmt.where(CardInstanceDB.owner_id == owner_id)

    values: dict[str, Any] = dict(changes or {})
    values["status"] = next_status
    values["version"] = CardInstanceDB.version + 1

    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    if int(result.rowcount) == 0:  # type: ignore[attr-defined]
        exists = await session.scalar(
            select(CardInstanceDB.id).where(CardInstanceDB.id == instance_id)
        )
        if exists is None:
            raise NotFoundError(f"Card instance {instance_id} not found")
        raise ConflictError(
            f"Card instance {instance_id} changed since it was read",
            detail=f"expected status={expected.value} owner={owner_id}",
        )

    logger.debug("Instance %d: %s -> %s", instance_id, expected.value, next_status.value)


async def transfer_instance(
    session: AsyncSession,
    instance_id: int,
    from_owner: str,
    to_owner: str,
    expected: InstanceStatus,
    now: datetime,
) -> None:
    """
    Move an instance to a new owner and release any claim on it.

    The instance lands as AVAILABLE under `to_owner`.
    """
    await transition_status(
        session,
        instance_id,
        expected,
        InstanceStatus.AVAILABLE,
        owner_id=from_owner,
        changes={"owner_id": to_owner, "acquired_at": now},
    )


def require_available(instance: CardInstanceDB) -> None:
    """Raise InstanceBusyError unless no subsystem holds a claim on the instance."""
    if instance.status != InstanceStatus.AVAILABLE:
        raise InstanceBusyError(instance.id, instance.status.value)


async def require_owned_available(
    session: AsyncSession, instance_ids: Iterable[int], owner_id: str
) -> list[CardInstanceDB]:
    """
    Load instances and check they all belong to `owner_id` and are AVAILABLE.

    Ownership is checked before status, so an instance that changed hands
    reports InsufficientAssetsError rather than InstanceBusyError.
    """
    ids = list(instance_ids)
    if len(set(ids)) != len(ids):
        raise ValidationError("The same card instance was referenced more than once")

    instances = await get_instances(session, ids, for_update=True)
    for instance in instances:
        if instance.owner_id != owner_id:
            raise InsufficientAssetsError(
                f"User {owner_id} does not own card instance {instance.id}",
                detail=f"instance={instance.id} owner={instance.owner_id}",
            )
    for instance in instances:
        require_available(instance)
    return instances


async def snapshot_instances(
    session: AsyncSession, instances: list[CardInstanceDB]
) -> list[CardSnapshot]:
    """Capture display attributes for a set of instances."""
    if not instances:
        return []
    definition_ids = {inst.definition_id for inst in instances}
    result = await session.execute(
        select(CardDefinitionDB).where(CardDefinitionDB.id.in_(definition_ids))
    )
    definitions = {d.id: d for d in result.scalars().all()}

    snapshots = []
    for inst in instances:
        definition = definitions[inst.definition_id]
        snapshots.append(
            CardSnapshot(
                instance_id=inst.id,
                name=definition.name,
                rarity=inst.rarity,
                mint_number=inst.mint_number,
                image_url=definition.image_url,
                flavor_text=definition.flavor_text,
                slabbed=inst.slabbed,
                grade=inst.grade,
            )
        )
    return snapshots


async def return_to_pool(
    session: AsyncSession,
    caller: Caller,
    instance_id: int,
    bus: EventBus | None = None,
) -> CardInstanceDB:
    """
    Retire an instance (admin only).

    The row stays for provenance with no owner. Its mint number is never
    handed out again because the allocation counter never decreases.
    """
    if not caller.is_admin:
        raise ForbiddenError("Only admins can return card instances to the pool")

    async with atomic(session):
        instance = await get_instance(session, instance_id, for_update=True)
        require_available(instance)
        previous_owner = instance.owner_id
        await transition_status(
            session,
            instance_id,
            InstanceStatus.AVAILABLE,
            InstanceStatus.RETIRED,
            owner_id=previous_owner,
            changes={"owner_id": None},
        )
        instance = await get_instance(session, instance_id)

    log_audit(
        "Instance Returned To Pool",
        instance_id=instance_id,
        previous_owner=previous_owner,
        admin=caller.user_id,
        at=utcnow(),
    )
    (bus or get_event_bus()).emit(
        INSTANCE_RETIRED, instance_id=instance_id, previous_owner=previous_owner
    )
    return instance
