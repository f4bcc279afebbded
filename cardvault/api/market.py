"""
Market API endpoints.

Listings, offers against them, and the accept/reject/cancel actions.
"""

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.api.deps import CallerDep
from cardvault.db.database import get_read_session, get_session
from cardvault.models.db import ListingDB, OfferDB
from cardvault.services.market import (
    accept_offer,
    cancel_listing,
    cancel_offer,
    create_listing,
    get_listing,
    list_active_listings,
    make_offer,
    reject_offer,
)

router = APIRouter(prefix="/listings", tags=["market"])


class OfferResponse(BaseModel):
    """Response model for an offer."""

    id: int
    listing_id: int
    offerer_id: str
    offered_instance_ids: list[int] = Field(default_factory=list)
    offered_cards: list[dict[str, Any]] = Field(default_factory=list)
    offered_packs: int = 0
    message: str = ""
    status: str
    created_at: datetime


class ListingResponse(BaseModel):
    """Response model for a listing with its offers."""

    id: int
    owner_id: str
    instance_id: int
    card: dict[str, Any] = Field(default_factory=dict)
    status: str
    close_reason: str = ""
    created_at: datetime
    closed_at: datetime | None = None
    offers: list[OfferResponse] = Field(default_factory=list)


class ListingPageResponse(BaseModel):
    """Response model for browsing listings."""

    listings: list[ListingResponse]
    count: int
    limit: int
    offset: int


class CreateListingRequest(BaseModel):
    instance_id: int


class MakeOfferRequest(BaseModel):
    """Request model for an offer on a listing."""

    offered_instance_ids: list[int] = Field(default_factory=list)
    offered_packs: int = Field(default=0, ge=0)
    message: str = Field(default="", max_length=500)


def offer_to_response(offer: OfferDB) -> OfferResponse:
    return OfferResponse(
        id=offer.id,
        listing_id=offer.listing_id,
        offerer_id=offer.offerer_id,
        offered_instance_ids=list(offer.offered_instance_ids),
        offered_cards=list(offer.offered_cards),
        offered_packs=offer.offered_packs,
        message=offer.message,
        status=offer.status.value,
        created_at=offer.created_at,
    )


def listing_to_response(listing: ListingDB, include_offers: bool = True) -> ListingResponse:
    return ListingResponse(
        id=listing.id,
        owner_id=listing.owner_id,
        instance_id=listing.instance_id,
        card=dict(listing.card),
        status=listing.status.value,
        close_reason=listing.close_reason,
        created_at=listing.created_at,
        closed_at=listing.closed_at,
        offers=[offer_to_response(o) for o in listing.offers] if include_offers else [],
    )


@router.get("", response_model=ListingPageResponse)
async def browse_listings(
    session: Annotated[AsyncSession, Depends(get_read_session)],
    rarity: str | None = None,
    owner_id: str | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> ListingPageResponse:
    """
    Browse active listings, newest first.

    Served from the read replica when one is configured; may lag slightly.
    """
    listings = await list_active_listings(
        session, rarity=rarity, owner_id=owner_id, limit=limit, offset=offset
    )
    return ListingPageResponse(
        listings=[listing_to_response(lst) for lst in listings],
        count=len(listings),
        limit=limit,
        offset=offset,
    )


@router.post("", response_model=ListingResponse, status_code=201)
async def list_instance(
    request: CreateListingRequest,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ListingResponse:
    """Put an owned card on the market."""
    listing = await create_listing(session, caller, request.instance_id)
    return listing_to_response(listing, include_offers=False)


@router.get("/{listing_id}", response_model=ListingResponse)
async def listing_detail(
    listing_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ListingResponse:
    """Get a listing and all of its offers."""
    listing = await get_listing(session, listing_id)
    return listing_to_response(listing)


@router.post("/{listing_id}/cancel", response_model=ListingResponse)
async def cancel_market_listing(
    listing_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ListingResponse:
    """Withdraw a listing. Its card returns to the owner's collection."""
    await cancel_listing(session, caller, listing_id)
    return listing_to_response(await get_listing(session, listing_id))


@router.post("/{listing_id}/offers", response_model=OfferResponse, status_code=201)
async def make_listing_offer(
    listing_id: int,
    request: MakeOfferRequest,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> OfferResponse:
    """Offer cards and/or packs for a listing."""
    offer = await make_offer(
        session,
        caller,
        listing_id,
        request.offered_instance_ids,
        request.offered_packs,
        request.message,
    )
    return offer_to_response(offer)


@router.post("/{listing_id}/offers/{offer_id}/accept", response_model=ListingResponse)
async def accept_listing_offer(
    listing_id: int,
    offer_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ListingResponse:
    """Accept an offer. The exchange settles in a single commit."""
    await accept_offer(session, caller, listing_id, offer_id)
    return listing_to_response(await get_listing(session, listing_id))


@router.post("/{listing_id}/offers/{offer_id}/reject", response_model=OfferResponse)
async def reject_listing_offer(
    listing_id: int,
    offer_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> OfferResponse:
    """Decline an offer on your listing."""
    offer = await reject_offer(session, caller, listing_id, offer_id)
    return offer_to_response(offer)


@router.post("/{listing_id}/offers/{offer_id}/cancel", response_model=OfferResponse)
async def cancel_listing_offer(
    listing_id: int,
    offer_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> OfferResponse:
    """Withdraw your own offer."""
    offer = await cancel_offer(session, caller, listing_id, offer_id)
    return offer_to_response(offer)
