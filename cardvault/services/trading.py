"""
Exchange Coordinator — direct two-party trades.

A trade reserves nothing when it is created. Both sides' instances and
packs are re-validated at accept time and swapped in one commit; if
anything drifted in the meantime the accept fails InsufficientAssets and
nothing moves. An instance that is still owned but has since been listed
or sent for grading fails InstanceBusy instead.

Counter-offers (`counter_of`) create an independent trade. The trade it
answers stays open until someone closes it; accept-time re-validation is
what stops the same assets from being committed twice.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cardvault.config import settings
from cardvault.db.database import atomic
from cardvault.db.operations import (
    credit_packs,
    debit_packs,
    get_packs_balance,
    lock_users,
    require_user,
)
from cardvault.models.card import InstanceStatus, TradeSide, TradeStatus
from cardvault.models.db import TradeDB, TradeItemDB
from cardvault.models.failure import (
    AlreadyClosedError,
    ForbiddenError,
    InsufficientAssetsError,
    NotFoundError,
    ValidationError,
)
from cardvault.models.identity import Caller
from cardvault.services.events import (
    INSTANCE_TRANSFERRED,
    TRADE_CLOSED,
    TRADE_CREATED,
    EventBus,
    get_event_bus,
    log_audit,
)
from cardvault.services.registry import (
    get_instances,
    lock_instances,
    require_owned_available,
    snapshot_instances,
    transfer_instance,
)
from cardvault.timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)

TRADE_EXPIRED_REASON = "Trade expired"


# --- Lookups ---


async def get_trade(
    session: AsyncSession, trade_id: int, *, for_update: bool = False
) -> TradeDB:
    """Get a trade (any status) with its items, re-read from the database."""
    stmt = (
        select(TradeDB)
        .where(TradeDB.id == trade_id)
        .options(selectinload(TradeDB.items))
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    trade = (await session.execute(stmt)).scalar_one_or_none()
    if trade is None:
        raise NotFoundError(f"Trade {trade_id} not found")
    return trade


async def get_trades_for_user(
    session: AsyncSession,
    user_id: str,
    *,
    direction: str | None = None,
    status: TradeStatus | None = None,
) -> list[TradeDB]:
    """
    Get a user's trades, newest first.

    Args:
        direction: "incoming", "outgoing" or None for both
        status: Only trades in this status
    """
    if direction == "incoming":
        party = TradeDB.recipient_id == user_id
    elif direction == "outgoing":
        party = TradeDB.sender_id == user_id
    elif direction is None:
        party = or_(TradeDB.sender_id == user_id, TradeDB.recipient_id == user_id)
    else:
        raise ValidationError(f"Unknown trade direction: {direction}")

    stmt = (
        select(TradeDB)
        .where(party)
        .options(selectinload(TradeDB.items))
        .order_by(TradeDB.created_at.desc(), TradeDB.id.desc())
    )
    if status is not None:
        stmt = stmt.where(TradeDB.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def is_expired(trade: TradeDB, now: datetime) -> bool:
    return trade.expires_at is not None and now >= as_utc(trade.expires_at)


async def _close_trade_row(
    session: AsyncSession,
    trade_id: int,
    status: TradeStatus,
    now: datetime,
    reason: str = "",
) -> bool:
    result = await session.execute(
        update(TradeDB)
        .where(TradeDB.id == trade_id, TradeDB.status == TradeStatus.PENDING)
        .values(status=status, cancellation_reason=reason, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount) > 0  # type: ignore[attr-defined]


# --- Trade Operations ---


async def create_trade(
    session: AsyncSession,
    caller: Caller,
    recipient_id: str,
    offered_instance_ids: Sequence[int] = (),
    requested_instance_ids: Sequence[int] = (),
    offered_packs: int = 0,
    requested_packs: int = 0,
    counter_of: int | None = None,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> TradeDB:
    """
    Propose a trade to another user.

    The sender must own every offered instance (AVAILABLE) and hold the
    offered packs now. What is requested from the recipient is only
    checked for existence; ownership is settled at accept time.

    Raises:
        ValidationError: Self-trade, empty trade, negative packs, overlap
        NotFoundError: Recipient, an instance or the countered trade missing
        InsufficientAssetsError: Sender lacks an instance or the packs
        InstanceBusyError: An offered instance is listed, grading or retired
    """
    now = now or utcnow()
    sender_id = caller.user_id
    offered_ids = list(offered_instance_ids)
    requested_ids = list(requested_instance_ids)

    if sender_id == recipient_id:
        raise ValidationError("You cannot trade with yourself")
    if offered_packs < 0 or requested_packs < 0:
        raise ValidationError("Pack amounts cannot be negative")
    if not (offered_ids or requested_ids or offered_packs or requested_packs):
        raise ValidationError("A trade must include at least one card or pack")
    if max(len(offered_ids), len(requested_ids)) > settings.max_offered_instances:
        raise ValidationError(
            f"Each side of a trade can include at most {settings.max_offered_instances} cards"
        )
    if len(set(requested_ids)) != len(requested_ids):
        raise ValidationError("The same card instance was requested more than once")
    if set(offered_ids) & set(requested_ids):
        raise ValidationError("A card instance cannot be both offered and requested")

    async with atomic(session):
        await require_user(session, sender_id)
        await require_user(session, recipient_id)

        offered = await require_owned_available(session, offered_ids, sender_id)
        requested = await get_instances(session, requested_ids)
        for instance in requested:
            if instance.owner_id == sender_id:
                raise ValidationError(f"You already own card instance {instance.id}")

        balance = await get_packs_balance(session, sender_id)
        if balance < offered_packs:
            raise InsufficientAssetsError(
                f"You only have {balance} pack(s)",
                detail=f"offered={offered_packs} balance={balance}",
            )

        if counter_of is not None:
            original = await get_trade(session, counter_of)
            if {original.sender_id, original.recipient_id} != {sender_id, recipient_id}:
                raise ValidationError(
                    f"Trade {counter_of} is not between the same two users",
                    detail=f"counter_of={counter_of}",
                )

        expires_at = None
        if settings.trade_expiry_days is not None:
            expires_at = now + timedelta(days=settings.trade_expiry_days)

        trade = TradeDB(
            sender_id=sender_id,
            recipient_id=recipient_id,
            offered_packs=offered_packs,
            requested_packs=requested_packs,
            status=TradeStatus.PENDING,
            counter_of_id=counter_of,
            expires_at=expires_at,
            created_at=now,
        )
        offered_snapshots = await snapshot_instances(session, offered)
        requested_snapshots = await snapshot_instances(session, requested)
        trade.items = [
            TradeItemDB(instance_id=s.instance_id, side=TradeSide.OFFERED, card=s.to_dict())
            for s in offered_snapshots
        ] + [
            TradeItemDB(instance_id=s.instance_id, side=TradeSide.REQUESTED, card=s.to_dict())
            for s in requested_snapshots
        ]
        session.add(trade)
        await session.flush()

    logger.info("Trade %d proposed: %s -> %s", trade.id, sender_id, recipient_id)
    log_audit(
        "Trade Created",
        trade_id=trade.id,
        sender=sender_id,
        recipient=recipient_id,
        offered=offered_ids,
        requested=requested_ids,
        offered_packs=offered_packs,
        requested_packs=requested_packs,
        counter_of=counter_of,
    )
    (bus or get_event_bus()).emit(
        TRADE_CREATED,
        trade_id=trade.id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        counter_of=counter_of,
    )
    return trade


async def accept_trade(
    session: AsyncSession,
    caller: Caller,
    trade_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> TradeDB:
    """
    Accept a trade and swap both sides in one commit.

    INVARIANT: If either side's instances or packs drifted since the trade
    was created, this raises InsufficientAssetsError and neither party's
    holdings change.

    Raises:
        ForbiddenError: Caller is not the recipient
        AlreadyClosedError: Trade is closed or has expired
        InsufficientAssetsError: A side no longer owns a named instance or
            cannot cover its packs
        InstanceBusyError: A named instance is still owned by the right party
            but has since been listed, sent for grading or retired. This is
            reported instead of InsufficientAssetsError, and nothing moves.
    """
    now = now or utcnow()

    async with atomic(session):
        trade = await get_trade(session, trade_id, for_update=True)
        if trade.recipient_id != caller.user_id:
            raise ForbiddenError("Only the recipient can accept this trade")
        if trade.status != TradeStatus.PENDING:
            raise AlreadyClosedError("trade", trade_id, trade.status.value)
        if is_expired(trade, now):
            raise AlreadyClosedError("trade", trade_id, "expired")

        sender_id = trade.sender_id
        recipient_id = trade.recipient_id
        offered_ids = trade.instance_ids(TradeSide.OFFERED)
        requested_ids = trade.instance_ids(TradeSide.REQUESTED)

        await lock_instances(session, [*offered_ids, *requested_ids])
        await lock_users(session, [sender_id, recipient_id])

        if not await _close_trade_row(session, trade_id, TradeStatus.ACCEPTED, now):
            current = await get_trade(session, trade_id)
            raise AlreadyClosedError("trade", trade_id, current.status.value)

        offered = await require_owned_available(session, offered_ids, sender_id)
        requested = await require_owned_available(session, requested_ids, recipient_id)

        for instance in offered:
            await transfer_instance(
                session, instance.id, sender_id, recipient_id, InstanceStatus.AVAILABLE, now
            )
        for instance in requested:
            await transfer_instance(
                session, instance.id, recipient_id, sender_id, InstanceStatus.AVAILABLE, now
            )

        # Debit both sides first so each balance is checked before any credit
        await debit_packs(session, sender_id, trade.offered_packs)
        await debit_packs(session, recipient_id, trade.requested_packs)
        await credit_packs(session, recipient_id, trade.offered_packs)
        await credit_packs(session, sender_id, trade.requested_packs)

        trade = await get_trade(session, trade_id)

    logger.info("Trade %d accepted: %s <-> %s", trade_id, sender_id, recipient_id)
    log_audit(
        "Trade Accepted",
        trade_id=trade_id,
        sender=sender_id,
        recipient=recipient_id,
        offered=offered_ids,
        requested=requested_ids,
        offered_packs=trade.offered_packs,
        requested_packs=trade.requested_packs,
    )

    event_bus = bus or get_event_bus()
    event_bus.emit(TRADE_CLOSED, trade_id=trade_id, status="accepted", reason="")
    for instance_id in offered_ids:
        event_bus.emit(
            INSTANCE_TRANSFERRED,
            instance_id=instance_id,
            from_owner=sender_id,
            to_owner=recipient_id,
            via="trade",
        )
    for instance_id in requested_ids:
        event_bus.emit(
            INSTANCE_TRANSFERRED,
            instance_id=instance_id,
            from_owner=recipient_id,
            to_owner=sender_id,
            via="trade",
        )
    return trade


async def _close_pending_trade(
    session: AsyncSession,
    trade_id: int,
    status: TradeStatus,
    reason: str,
    now: datetime,
) -> TradeDB:
    if not await _close_trade_row(session, trade_id, status, now, reason):
        current = await get_trade(session, trade_id)
        raise AlreadyClosedError("trade", trade_id, current.status.value)
    return await get_trade(session, trade_id)


async def reject_trade(
    session: AsyncSession,
    caller: Caller,
    trade_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> TradeDB:
    """Recipient (or an admin) declines a pending trade. Status only."""
    now = now or utcnow()

    async with atomic(session):
        trade = await get_trade(session, trade_id, for_update=True)
        if trade.recipient_id != caller.user_id and not caller.is_admin:
            raise ForbiddenError("Only the recipient can reject this trade")
        if trade.status != TradeStatus.PENDING:
            raise AlreadyClosedError("trade", trade_id, trade.status.value)
        if trade.recipient_id == caller.user_id:
            reason = "Rejected by recipient"
        else:
            reason = "Rejected by admin"
        trade = await _close_pending_trade(session, trade_id, TradeStatus.REJECTED, reason, now)

    log_audit("Trade Rejected", trade_id=trade_id, by=caller.user_id)
    (bus or get_event_bus()).emit(TRADE_CLOSED, trade_id=trade_id, status="rejected", reason=reason)
    return trade


async def cancel_trade(
    session: AsyncSession,
    caller: Caller,
    trade_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> TradeDB:
    """Sender (or an admin) withdraws a pending trade. Status only."""
    now = now or utcnow()

    async with atomic(session):
        trade = await get_trade(session, trade_id, for_update=True)
        if trade.sender_id != caller.user_id and not caller.is_admin:
            raise ForbiddenError("Only the sender can cancel this trade")
        if trade.status != TradeStatus.PENDING:
            raise AlreadyClosedError("trade", trade_id, trade.status.value)
        if trade.sender_id == caller.user_id:
            reason = "Cancelled by sender"
        else:
            reason = "Cancelled by admin"
        trade = await _close_pending_trade(session, trade_id, TradeStatus.CANCELLED, reason, now)

    log_audit("Trade Cancelled", trade_id=trade_id, by=caller.user_id, reason=reason)
    (bus or get_event_bus()).emit(
        TRADE_CLOSED, trade_id=trade_id, status="cancelled", reason=reason
    )
    return trade


async def expire_trades(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> list[int]:
    """Cancel every pending trade whose expiry has passed."""
    now = now or utcnow()

    async with atomic(session):
        result = await session.execute(
            update(TradeDB)
            .where(
                TradeDB.status == TradeStatus.PENDING,
                TradeDB.expires_at.is_not(None),
                TradeDB.expires_at <= now,
            )
            .values(
                status=TradeStatus.CANCELLED,
                cancellation_reason=TRADE_EXPIRED_REASON,
                closed_at=now,
            )
            .returning(TradeDB.id)
            .execution_options(synchronize_session=False)
        )
        expired = [row[0] for row in result.all()]

    event_bus = bus or get_event_bus()
    for trade_id in expired:
        log_audit("Trade Expired", trade_id=trade_id)
        event_bus.emit(
            TRADE_CLOSED, trade_id=trade_id, status="cancelled", reason=TRADE_EXPIRED_REASON
        )
    if expired:
        logger.info("Expired %d pending trade(s)", len(expired))
    return expired
