"""
Grading Pipeline — timed grading built on the registry state machine.

    available -> grading_requested -> grading_complete -> available

The only business rules here are eligibility (owner, not the
non-gradable rarity, not already slabbed) and the deadline.

INVARIANT: The deadline is always recomputed from the stored
grading_requested_at. There is no timer; readiness is evaluated when
someone asks, so behaviour survives restarts unchanged.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.config import GRADE_WEIGHTS, MAX_GRADE, MIN_GRADE, settings
from cardvault.db.database import atomic
from cardvault.models.card import InstanceStatus
from cardvault.models.db import CardInstanceDB
from cardvault.models.failure import ConflictError, ForbiddenError, ValidationError
from cardvault.models.identity import Caller
from cardvault.services.events import (
    GRADING_COMPLETED,
    GRADING_REQUESTED,
    GRADING_REVEALED,
    EventBus,
    get_event_bus,
    log_audit,
)
from cardvault.services.registry import get_instance, require_available, transition_status
from cardvault.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradingStatus:
    """Where an instance stands in the grading pipeline."""

    instance_id: int
    status: InstanceStatus
    slabbed: bool
    grade: float | None
    requested_at: datetime | None
    deadline: datetime | None
    ready: bool
    seconds_remaining: int


def grading_duration() -> timedelta:
    return timedelta(hours=settings.grading_duration_hours)


def grading_deadline(instance: CardInstanceDB) -> datetime | None:
    """When grading may complete without an override, or None if not requested."""
    if instance.grading_requested_at is None:
        return None
    return as_utc(instance.grading_requested_at) + grading_duration()


def is_grading_due(instance: CardInstanceDB, now: datetime) -> bool:
    deadline = grading_deadline(instance)
    return (
        instance.status == InstanceStatus.GRADING_REQUESTED
        and deadline is not None
        and now >= deadline
    )


def weighted_random_grade(rng: random.Random | None = None) -> int:
    """Draw a grade using GRADE_WEIGHTS. Middle grades are most likely."""
    grades = list(GRADE_WEIGHTS)
    weights = [GRADE_WEIGHTS[g] for g in grades]
    return (rng or random).choices(grades, weights=weights, k=1)[0]


def _validate_grade(grade: float) -> None:
    if not MIN_GRADE <= grade <= MAX_GRADE:
        raise ValidationError(f"Grade must be between {MIN_GRADE} and {MAX_GRADE}, got {grade}")


async def request_grading(
    session: AsyncSession,
    caller: Caller,
    instance_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> CardInstanceDB:
    """
    Send an owned, available instance for grading.

    Raises:
        ForbiddenError: Not the owner, non-gradable rarity, or already slabbed
        InstanceBusyError: Instance is listed, grading or retired
    """
    now = now or utcnow()

    async with atomic(session):
        instance = await get_instance(session, instance_id, for_update=True)
        if instance.owner_id != caller.user_id:
            raise ForbiddenError("You can only grade cards you own")
        if instance.rarity == settings.non_gradable_rarity:
            raise ForbiddenError(f"{instance.rarity} cards cannot be graded")
        if instance.slabbed:
            raise ForbiddenError("This card has already been graded")
        require_available(instance)

        await transition_status(
            session,
            instance_id,
            InstanceStatus.AVAILABLE,
            InstanceStatus.GRADING_REQUESTED,
            owner_id=caller.user_id,
            changes={"grading_requested_at": now},
        )
        instance = await get_instance(session, instance_id)

    logger.info("Grading requested for instance %d by %s", instance_id, caller.user_id)
    log_audit("Grading Requested", instance_id=instance_id, owner_id=caller.user_id, at=now)
    (bus or get_event_bus()).emit(
        GRADING_REQUESTED,
        instance_id=instance_id,
        owner_id=caller.user_id,
        deadline=grading_deadline(instance),
    )
    return instance


async def _finalize(
    session: AsyncSession, instance: CardInstanceDB, grade: float, now: datetime
) -> None:
    await transition_status(
        session,
        instance.id,
        InstanceStatus.GRADING_REQUESTED,
        InstanceStatus.GRADING_COMPLETE,
        owner_id=instance.owner_id,
        changes={"grade": grade, "slabbed": True, "graded_at": now},
    )


async def complete_grading(
    session: AsyncSession,
    caller: Caller,
    instance_id: int,
    grade: float | None = None,
    *,
    admin_override: bool = False,
    now: datetime | None = None,
    rng: random.Random | None = None,
    bus: EventBus | None = None,
) -> CardInstanceDB:
    """
    Assign a grade and slab the instance.

    Without `admin_override` this only succeeds once
    now >= grading_requested_at + grading duration. Only admins may
    override the deadline or choose the grade; otherwise the grade is drawn
    with `weighted_random_grade`.
    """
    now = now or utcnow()

    if not caller.is_admin:
        if admin_override:
            raise ForbiddenError("Only admins can bypass the grading deadline")
        if grade is not None:
            raise ForbiddenError("Only admins can choose a grade")
    if grade is not None:
        _validate_grade(grade)

    async with atomic(session):
        instance = await get_instance(session, instance_id, for_update=True)
        if not caller.is_admin and instance.owner_id != caller.user_id:
            raise ForbiddenError("You can only complete grading for cards you own")
        if instance.status != InstanceStatus.GRADING_REQUESTED:
            raise ConflictError(
                f"Card instance {instance_id} is not awaiting grading",
                detail=f"status={instance.status.value}",
            )

        deadline = grading_deadline(instance)
        if not admin_override and (deadline is None or now < deadline):
            raise ForbiddenError(
                "Grading is still in progress.",
                detail=f"ready at {deadline.isoformat() if deadline else 'unknown'}",
                suggestion="Come back once the grading period has passed.",
            )

        final_grade = grade if grade is not None else weighted_random_grade(rng)
        await _finalize(session, instance, final_grade, now)
        instance = await get_instance(session, instance_id)

    logger.info(
        "Grading completed for instance %d: grade %s (override=%s)",
        instance_id,
        final_grade,
        admin_override,
    )
    log_audit(
        "Grading Completed",
        instance_id=instance_id,
        grade=final_grade,
        admin_override=admin_override,
        by=caller.user_id,
    )
    (bus or get_event_bus()).emit(
        GRADING_COMPLETED, instance_id=instance_id, owner_id=instance.owner_id, grade=final_grade
    )
    return instance


async def reveal_graded(
    session: AsyncSession,
    caller: Caller,
    instance_id: int,
    *,
    bus: EventBus | None = None,
) -> CardInstanceDB:
    """
    Release a graded instance back to AVAILABLE.

    The instance stays slabbed with its grade; this only ends the
    pipeline's claim on it.
    """
    async with atomic(session):
        instance = await get_instance(session, instance_id, for_update=True)
        if not caller.is_admin and instance.owner_id != caller.user_id:
            raise ForbiddenError("You can only reveal cards you own")
        if instance.status != InstanceStatus.GRADING_COMPLETE:
            raise ConflictError(
                f"Card instance {instance_id} has no grade waiting to be revealed",
                detail=f"status={instance.status.value}",
            )
        await transition_status(
            session,
            instance_id,
            InstanceStatus.GRADING_COMPLETE,
            InstanceStatus.AVAILABLE,
            owner_id=instance.owner_id,
            changes={"grading_requested_at": None},
        )
        instance = await get_instance(session, instance_id)

    log_audit("Grade Revealed", instance_id=instance_id, owner_id=instance.owner_id)
    (bus or get_event_bus()).emit(
        GRADING_REVEALED, instance_id=instance_id, owner_id=instance.owner_id, grade=instance.grade
    )
    return instance


async def get_grading_status(
    session: AsyncSession, instance_id: int, *, now: datetime | None = None
) -> GradingStatus:
    """Report deadline and readiness, computed from stored state."""
    now = now or utcnow()
    instance = await get_instance(session, instance_id)
    deadline = grading_deadline(instance)

    remaining = 0
    if instance.status == InstanceStatus.GRADING_REQUESTED and deadline is not None:
        remaining = max(int((deadline - now).total_seconds()), 0)

    return GradingStatus(
        instance_id=instance.id,
        status=instance.status,
        slabbed=instance.slabbed,
        grade=instance.grade,
        requested_at=(
            as_utc(instance.grading_requested_at) if instance.grading_requested_at else None
        ),
        deadline=deadline,
        ready=is_grading_due(instance, now),
        seconds_remaining=remaining,
    )


async def finalize_due_gradings(
    session: AsyncSession,
    owner_id: str,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
    bus: EventBus | None = None,
) -> list[int]:
    """
    Complete every grading of a user's that has passed its deadline.

    Called when a collection is read. Instances someone else finalized in
    the meantime are skipped. Returns the ids that were finalized here.
    """
    now = now or utcnow()
    cutoff = now - grading_duration()

    finalized: list[tuple[int, float]] = []
    async with atomic(session):
        result = await session.execute(
            select(CardInstanceDB)
            .where(
                CardInstanceDB.owner_id == owner_id,
                CardInstanceDB.status == InstanceStatus.GRADING_REQUESTED,
                CardInstanceDB.grading_requested_at <= cutoff,
            )
            .execution_options(populate_existing=True)
        )
        for instance in result.scalars().all():
            grade = weighted_random_grade(rng)
            try:
                await _finalize(session, instance, grade, now)
            except ConflictError:
                logger.debug("Instance %d finalized concurrently, skipping", instance.id)
                continue
            finalized.append((instance.id, grade))

    event_bus = bus or get_event_bus()
    for instance_id, grade in finalized:
        log_audit("Grading Completed", instance_id=instance_id, grade=grade, lazy=True)
        event_bus.emit(GRADING_COMPLETED, instance_id=instance_id, owner_id=owner_id, grade=grade)
    if finalized:
        logger.info("Finalized %d due grading(s) for %s", len(finalized), owner_id)
    return [instance_id for instance_id, _ in finalized]
