"""
Exchange Coordinator — market listings and offers.

A listing puts one instance into LISTED. Offers against it do not lock
anything: the offered instances and packs are re-validated when the
lister accepts, and the whole exchange lands in one commit.

INVARIANTS:
- At most one active listing per instance, one active offer per offerer
  per listing (partial unique indexes back both)
- AcceptOffer either moves every instance and every pack or nothing
- Closed listings and offers stay as tombstones. Accepting against them
  reports NotFound; closing them again reports AlreadyClosed
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
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
from cardvault.models.card import InstanceStatus, ListingStatus, OfferStatus
from cardvault.models.db import ListingDB, OfferDB
from cardvault.models.failure import (
    AlreadyClosedError,
    ConflictError,
    ForbiddenError,
    InsufficientAssetsError,
    KnownError,
    NotFoundError,
    ValidationError,
)
from cardvault.models.identity import Caller
from cardvault.services.events import (
    INSTANCE_TRANSFERRED,
    LISTING_CLOSED,
    LISTING_CREATED,
    OFFER_CLOSED,
    OFFER_CREATED,
    EventBus,
    get_event_bus,
    log_audit,
)
from cardvault.services.registry import (
    get_instance,
    lock_instances,
    require_available,
    require_owned_available,
    snapshot_instances,
    transfer_instance,
    transition_status,
)
from cardvault.timeutil import utcnow

logger = logging.getLogger(__name__)

LISTING_EXPIRED_REASON = "Listing expired"


@dataclass
class _ListingClosure:
    """What a listing close changed, for post-commit notifications."""

    listing_id: int
    instance_id: int
    owner_id: str
    status: ListingStatus
    reason: str
    closed_offer_ids: list[int] = field(default_factory=list)


# --- Lookups ---


async def _load_listing(
    session: AsyncSession, listing_id: int, *, for_update: bool = False
) -> ListingDB:
    stmt = (
        select(ListingDB)
        .where(ListingDB.id == listing_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    listing = (await session.execute(stmt)).scalar_one_or_none()
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    return listing


async def _load_offer(
    session: AsyncSession, listing_id: int, offer_id: int, *, for_update: bool = False
) -> OfferDB:
    stmt = (
        select(OfferDB)
        .where(OfferDB.id == offer_id, OfferDB.listing_id == listing_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    offer = (await session.execute(stmt)).scalar_one_or_none()
    if offer is None:
        raise NotFoundError(f"Offer {offer_id} not found on listing {listing_id}")
    return offer


async def get_listing(session: AsyncSession, listing_id: int) -> ListingDB:
    """Get a listing (any status) with its offers loaded."""
    result = await session.execute(
        select(ListingDB)
        .where(ListingDB.id == listing_id)
        .options(selectinload(ListingDB.offers))
        .execution_options(populate_existing=True)
    )
    listing = result.scalar_one_or_none()
    if listing is None:
        raise NotFoundError(f"Listing {listing_id} not found")
    return listing


async def list_active_listings(
    session: AsyncSession,
    *,
    rarity: str | None = None,
    owner_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ListingDB]:
    """
    Browse active listings, newest first.

    Advisory: may be served from a read replica.
    """
    stmt = (
        select(ListingDB)
        .where(ListingDB.status == ListingStatus.ACTIVE)
        .options(selectinload(ListingDB.offers))
        .order_by(ListingDB.created_at.desc(), ListingDB.id.desc())
        .limit(limit)
        .offset(offset)
    )
    if owner_id is not None:
        stmt = stmt.where(ListingDB.owner_id == owner_id)
    if rarity is not None:
        stmt = stmt.where(ListingDB.card["rarity"].as_string() == rarity)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# --- Compare-and-swap closers ---


async def _close_listing_row(
    session: AsyncSession,
    listing_id: int,
    status: ListingStatus,
    reason: str,
    now: datetime,
) -> bool:
    result = await session.execute(
        update(ListingDB)
        .where(ListingDB.id == listing_id, ListingDB.status == ListingStatus.ACTIVE)
        .values(status=status, close_reason=reason, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount) > 0  # type: ignore[attr-defined]


async def _pin_active_listing(session: AsyncSession, listing_id: int) -> None:
    """
    Re-check, inside the write transaction, that a listing is still active.

    The no-op UPDATE takes the row lock (or the SQLite write lock), so a
    concurrent sale or cancel either lands before it and fails this check,
    or waits for this transaction and then closes what it wrote.
    """
    result = await session.execute(
        update(ListingDB)
        .where(ListingDB.id == listing_id, ListingDB.status == ListingStatus.ACTIVE)
        .values(status=ListingStatus.ACTIVE)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount) == 0:  # type: ignore[attr-defined]
        raise NotFoundError(f"Listing {listing_id} is no longer available")


async def _close_offer_row(
    session: AsyncSession, offer_id: int, status: OfferStatus, now: datetime
) -> bool:
    result = await session.execute(
        update(OfferDB)
        .where(OfferDB.id == offer_id, OfferDB.status == OfferStatus.ACTIVE)
        .values(status=status, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount) > 0  # type: ignore[attr-defined]


async def _close_open_offers(
    session: AsyncSession,
    listing_id: int,
    status: OfferStatus,
    now: datetime,
    *,
    exclude_offer_id: int | None = None,
) -> list[int]:
    stmt = update(OfferDB).where(
        OfferDB.listing_id == listing_id, OfferDB.status == OfferStatus.ACTIVE
    )
    if exclude_offer_id is not None:
        stmt = stmt.where(OfferDB.id != exclude_offer_id)
    result = await session.execute(
        stmt.values(status=status, closed_at=now)
        .returning(OfferDB.id)
        .execution_options(synchronize_session=False)
    )
    return [row[0] for row in result.all()]


async def _withdraw_listing(
    session: AsyncSession,
    listing: ListingDB,
    status: ListingStatus,
    reason: str,
    now: datetime,
) -> _ListingClosure:
    """Close an active listing, release its instance and cancel its offers."""
    if not await _close_listing_row(session, listing.id, status, reason, now):
        current = await _load_listing(session, listing.id)
        raise AlreadyClosedError("listing", listing.id, current.status.value)

    await transition_status(
        session,
        listing.instance_id,
        InstanceStatus.LISTED,
        InstanceStatus.AVAILABLE,
        owner_id=listing.owner_id,
    )
    offer_ids = await _close_open_offers(session, listing.id, OfferStatus.CANCELLED, now)
    return _ListingClosure(
        listing_id=listing.id,
        instance_id=listing.instance_id,
        owner_id=listing.owner_id,
        status=status,
        reason=reason,
        closed_offer_ids=offer_ids,
    )


def _announce_closure(closure: _ListingClosure, bus: EventBus) -> None:
    log_audit(
        "Listing Closed",
        listing_id=closure.listing_id,
        instance_id=closure.instance_id,
        status=closure.status.value,
        reason=closure.reason,
    )
    bus.emit(
        LISTING_CLOSED,
        listing_id=closure.listing_id,
        owner_id=closure.owner_id,
        status=closure.status.value,
        reason=closure.reason,
    )
    for offer_id in closure.closed_offer_ids:
        bus.emit(OFFER_CLOSED, offer_id=offer_id, listing_id=closure.listing_id, status="cancelled")


# --- Listing Operations ---


async def create_listing(
    session: AsyncSession,
    caller: Caller,
    instance_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> ListingDB:
    """
    List an owned, available instance on the market.

    Raises:
        ForbiddenError: Caller does not own the instance
        InstanceBusyError: Instance is already listed, grading or retired
    """
    now = now or utcnow()

    async with atomic(session):
        instance = await get_instance(session, instance_id, for_update=True)
        if instance.owner_id != caller.user_id:
            raise ForbiddenError("You can only list cards you own")
        require_available(instance)

        await transition_status(
            session,
            instance_id,
            InstanceStatus.AVAILABLE,
            InstanceStatus.LISTED,
            owner_id=caller.user_id,
        )
        [snapshot] = await snapshot_instances(session, [instance])
        listing = ListingDB(
            owner_id=caller.user_id,
            instance_id=instance_id,
            card=snapshot.to_dict(),
            status=ListingStatus.ACTIVE,
            created_at=now,
        )
        session.add(listing)
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Card instance {instance_id} already has an active listing"
            ) from e

    logger.info("Listing %d created for instance %d by %s", listing.id, instance_id, caller.user_id)
    log_audit("Listing Created", listing_id=listing.id, instance_id=instance_id, owner=caller.user_id)
    (bus or get_event_bus()).emit(
        LISTING_CREATED, listing_id=listing.id, instance_id=instance_id, owner_id=caller.user_id
    )
    return listing


async def cancel_listing(
    session: AsyncSession,
    caller: Caller,
    listing_id: int,
    *,
    reason: str = "Cancelled by owner",
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> ListingDB:
    """
    Withdraw a listing. The instance goes back to AVAILABLE and every open
    offer is cancelled. No assets move.

    Raises AlreadyClosedError if the listing is no longer active.
    """
    now = now or utcnow()

    async with atomic(session):
        listing = await _load_listing(session, listing_id, for_update=True)
        if listing.owner_id != caller.user_id and not caller.is_admin:
            raise ForbiddenError("Only the listing owner can cancel this listing")
        if listing.status != ListingStatus.ACTIVE:
            raise AlreadyClosedError("listing", listing_id, listing.status.value)
        if listing.owner_id != caller.user_id:
            reason = "Cancelled by admin"
        closure = await _withdraw_listing(session, listing, ListingStatus.CANCELLED, reason, now)
        listing = await _load_listing(session, listing_id)

    _announce_closure(closure, bus or get_event_bus())
    return listing


async def expire_stale_listings(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    max_age_days: int | None = None,
    bus: EventBus | None = None,
) -> list[int]:
    """
    Expire active listings older than `max_age_days`.

    Each listing is its own transaction, so one failure does not hold up
    the rest. Returns the ids that were expired.
    """
    now = now or utcnow()
    max_age_days = settings.listing_max_age_days if max_age_days is None else max_age_days
    cutoff = now - timedelta(days=max_age_days)

    result = await session.execute(
        select(ListingDB.id).where(
            ListingDB.status == ListingStatus.ACTIVE, ListingDB.created_at < cutoff
        )
    )
    stale_ids = list(result.scalars().all())
    # End the read transaction before the per-listing writes begin
    await session.commit()

    expired: list[int] = []
    event_bus = bus or get_event_bus()
    for listing_id in stale_ids:
        try:
            async with atomic(session):
                listing = await _load_listing(session, listing_id, for_update=True)
                closure = await _withdraw_listing(
                    session, listing, ListingStatus.EXPIRED, LISTING_EXPIRED_REASON, now
                )
        except KnownError as e:
            logger.warning("Could not expire listing %d: %s", listing_id, e.message)
            continue
        _announce_closure(closure, event_bus)
        expired.append(listing_id)

    if expired:
        logger.info("Expired %d stale listing(s)", len(expired))
    return expired


# --- Offer Operations ---


async def make_offer(
    session: AsyncSession,
    caller: Caller,
    listing_id: int,
    offered_instance_ids: Sequence[int] = (),
    offered_packs: int = 0,
    message: str = "",
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> OfferDB:
    """
    Offer instances and/or packs for a listing.

    The offered instances are not locked; AcceptOffer re-checks them.

    Raises:
        ValidationError: Empty offer, negative packs or too many instances
        NotFoundError: Listing missing or no longer active
        ForbiddenError: Offering on your own listing
        InsufficientAssetsError: Offerer lacks an instance or the packs
        InstanceBusyError: An offered instance is listed, grading or retired
        ConflictError: Offerer already has an active offer on this listing
    """
    now = now or utcnow()
    offered_ids = list(offered_instance_ids)

    if offered_packs < 0:
        raise ValidationError("Offered packs cannot be negative")
    if not offered_ids and offered_packs == 0:
        raise ValidationError("An offer must include at least one card or pack")
    if len(offered_ids) > settings.max_offered_instances:
        raise ValidationError(
            f"An offer can include at most {settings.max_offered_instances} cards"
        )

    async with atomic(session):
        listing = await _load_listing(session, listing_id, for_update=True)
        if listing.status != ListingStatus.ACTIVE:
            raise NotFoundError(f"Listing {listing_id} is no longer available")
        if listing.owner_id == caller.user_id:
            raise ForbiddenError("You cannot make an offer on your own listing")

        await require_user(session, caller.user_id)
        instances = await require_owned_available(session, offered_ids, caller.user_id)
        balance = await get_packs_balance(session, caller.user_id)
        if balance < offered_packs:
            raise InsufficientAssetsError(
                f"You only have {balance} pack(s)",
                detail=f"offered={offered_packs} balance={balance}",
            )

        existing = await session.scalar(
            select(OfferDB.id).where(
                OfferDB.listing_id == listing_id,
                OfferDB.offerer_id == caller.user_id,
                OfferDB.status == OfferStatus.ACTIVE,
            )
        )
        if existing is not None:
            raise ConflictError(
                "You already have an active offer on this listing",
                detail=f"offer={existing}",
            )

        snapshots = await snapshot_instances(session, instances)
        offer = OfferDB(
            listing_id=listing_id,
            offerer_id=caller.user_id,
            offered_instance_ids=offered_ids,
            offered_cards=[s.to_dict() for s in snapshots],
            offered_packs=offered_packs,
            message=message,
            status=OfferStatus.ACTIVE,
            created_at=now,
        )
        session.add(offer)
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConflictError("You already have an active offer on this listing") from e
        await _pin_active_listing(session, listing_id)

    logger.info("Offer %d made on listing %d by %s", offer.id, listing_id, caller.user_id)
    log_audit(
        "Offer Created",
        offer_id=offer.id,
        listing_id=listing_id,
        offerer=caller.user_id,
        instances=offered_ids,
        packs=offered_packs,
    )
    (bus or get_event_bus()).emit(
        OFFER_CREATED,
        offer_id=offer.id,
        listing_id=listing_id,
        offerer_id=caller.user_id,
        lister_id=listing.owner_id,
    )
    return offer


async def accept_offer(
    session: AsyncSession,
    caller: Caller,
    listing_id: int,
    offer_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> ListingDB:
    """
    Accept an offer and settle the exchange in one commit.

    Re-validates the listed instance, every offered instance and the
    offerer's packs, then transfers the listed instance to the offerer and
    the offered instances and packs to the lister. The listing is marked
    sold and every other open offer on it is superseded.

    Raises:
        NotFoundError: Listing or offer missing or already closed
        ForbiddenError: Caller is not the lister
        InsufficientAssetsError: Either side no longer has what was offered
        InstanceBusyError: An offered instance got claimed elsewhere
        ConflictError: A concurrent change landed first
    """
    now = now or utcnow()

    async with atomic(session):
        listing = await _load_listing(session, listing_id, for_update=True)
        if listing.owner_id != caller.user_id:
            raise ForbiddenError("Only the listing owner can accept offers")
        if listing.status != ListingStatus.ACTIVE:
            raise NotFoundError(f"Listing {listing_id} is no longer available")

        offer = await _load_offer(session, listing_id, offer_id, for_update=True)
        if offer.status != OfferStatus.ACTIVE:
            raise NotFoundError(f"Offer {offer_id} is no longer available")

        lister_id = listing.owner_id
        offerer_id = offer.offerer_id

        await lock_instances(session, [listing.instance_id, *offer.offered_instance_ids])
        await lock_users(session, [lister_id, offerer_id])
        listed = await get_instance(session, listing.instance_id, for_update=True)
        if listed.owner_id != lister_id:
            raise InsufficientAssetsError(
                f"Card instance {listed.id} no longer belongs to the lister",
                detail=f"instance={listed.id} owner={listed.owner_id}",
            )
        if listed.status != InstanceStatus.LISTED:
            raise ConflictError(
                f"Card instance {listed.id} is no longer listed",
                detail=f"status={listed.status.value}",
            )
        offered = await require_owned_available(session, offer.offered_instance_ids, offerer_id)

        if not await _close_listing_row(session, listing_id, ListingStatus.SOLD, "Sold", now):
            raise ConflictError(f"Listing {listing_id} was closed concurrently")
        if not await _close_offer_row(session, offer_id, OfferStatus.ACCEPTED, now):
            raise ConflictError(f"Offer {offer_id} was closed concurrently")

        await transfer_instance(
            session, listed.id, lister_id, offerer_id, InstanceStatus.LISTED, now
        )
        for instance in offered:
            await transfer_instance(
                session, instance.id, offerer_id, lister_id, InstanceStatus.AVAILABLE, now
            )
        await debit_packs(session, offerer_id, offer.offered_packs)
        await credit_packs(session, lister_id, offer.offered_packs)

        superseded = await _close_open_offers(
            session, listing_id, OfferStatus.SUPERSEDED, now, exclude_offer_id=offer_id
        )
        listing = await _load_listing(session, listing_id)

    logger.info(
        "Offer %d accepted on listing %d: %s -> %s, %d card(s) and %d pack(s) back",
        offer_id,
        listing_id,
        lister_id,
        offerer_id,
        len(offered),
        offer.offered_packs,
    )
    log_audit(
        "Offer Accepted",
        listing_id=listing_id,
        offer_id=offer_id,
        lister=lister_id,
        offerer=offerer_id,
        listed_instance=listed.id,
        offered_instances=[i.id for i in offered],
        packs=offer.offered_packs,
    )

    event_bus = bus or get_event_bus()
    event_bus.emit(
        LISTING_CLOSED, listing_id=listing_id, owner_id=lister_id, status="sold", reason="Sold"
    )
    event_bus.emit(OFFER_CLOSED, offer_id=offer_id, listing_id=listing_id, status="accepted")
    for other_id in superseded:
        event_bus.emit(OFFER_CLOSED, offer_id=other_id, listing_id=listing_id, status="superseded")
    event_bus.emit(
        INSTANCE_TRANSFERRED,
        instance_id=listed.id,
        from_owner=lister_id,
        to_owner=offerer_id,
        via="market",
    )
    for instance in offered:
        event_bus.emit(
            INSTANCE_TRANSFERRED,
            instance_id=instance.id,
            from_owner=offerer_id,
            to_owner=lister_id,
            via="market",
        )
    return listing


async def _close_offer(
    session: AsyncSession,
    listing_id: int,
    offer_id: int,
    status: OfferStatus,
    now: datetime,
) -> OfferDB:
    offer = await _load_offer(session, listing_id, offer_id, for_update=True)
    if offer.status != OfferStatus.ACTIVE:
        raise AlreadyClosedError("offer", offer_id, offer.status.value)
    if not await _close_offer_row(session, offer_id, status, now):
        current = await _load_offer(session, listing_id, offer_id)
        raise AlreadyClosedError("offer", offer_id, current.status.value)
    return await _load_offer(session, listing_id, offer_id)


async def reject_offer(
    session: AsyncSession,
    caller: Caller,
    listing_id: int,
    offer_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> OfferDB:
    """Lister declines an offer. Raises AlreadyClosedError if already closed."""
    now = now or utcnow()

    async with atomic(session):
        listing = await _load_listing(session, listing_id, for_update=True)
        if listing.owner_id != caller.user_id:
            raise ForbiddenError("Only the listing owner can reject offers")
        offer = await _close_offer(session, listing_id, offer_id, OfferStatus.REJECTED, now)

    log_audit("Offer Rejected", offer_id=offer_id, listing_id=listing_id, by=caller.user_id)
    (bus or get_event_bus()).emit(
        OFFER_CLOSED,
        offer_id=offer_id,
        listing_id=listing_id,
        status="rejected",
        offerer_id=offer.offerer_id,
    )
    return offer


async def cancel_offer(
    session: AsyncSession,
    caller: Caller,
    listing_id: int,
    offer_id: int,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> OfferDB:
    """Offerer withdraws an offer. Raises AlreadyClosedError if already closed."""
    now = now or utcnow()

    async with atomic(session):
        offer = await _load_offer(session, listing_id, offer_id)
        if offer.offerer_id != caller.user_id and not caller.is_admin:
            raise ForbiddenError("Only the offerer can cancel this offer")
        offer = await _close_offer(session, listing_id, offer_id, OfferStatus.CANCELLED, now)

    log_audit("Offer Cancelled", offer_id=offer_id, listing_id=listing_id, by=caller.user_id)
    (bus or get_event_bus()).emit(
        OFFER_CLOSED,
        offer_id=offer_id,
        listing_id=listing_id,
        status="cancelled",
        offerer_id=offer.offerer_id,
    )
    return offer
