"""
Admin API endpoints.

Card definitions, allocation on behalf of pack opening, display
overrides, and returning instances to the pool. Every route requires an
admin caller.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.api.collection import InstanceResponse, instance_to_response
from cardvault.api.deps import get_caller
from cardvault.api.supply import CardDefinitionResponse, definition_to_response
from cardvault.db import atomic, create_card_definition, create_user, get_card_definition
from cardvault.db.database import get_session
from cardvault.models.card import RarityTier
from cardvault.models.failure import ConflictError, ForbiddenError, NotFoundError
from cardvault.models.identity import Caller
from cardvault.services.events import log_audit
from cardvault.services.registry import return_to_pool
from cardvault.services.supply import allocate_instance, query_remaining_supply
from cardvault.services.supply_display import displayed_remaining_supply, set_display_override


async def require_admin(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
    if not caller.is_admin:
        raise ForbiddenError("This action requires an admin")
    return caller


AdminDep = Annotated[Caller, Depends(require_admin)]

router = APIRouter(prefix="/admin", tags=["admin"])


class CreateUserRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=255)
    username: str = Field(..., min_length=1, max_length=255)
    packs: int = Field(default=0, ge=0)


class UserResponse(BaseModel):
    id: str
    username: str
    packs: int


class RarityTierRequest(BaseModel):
    rarity: str = Field(..., min_length=1, max_length=50)
    total_copies: int = Field(..., ge=1)
    available_from: datetime | None = None
    available_to: datetime | None = None


class CreateCardRequest(BaseModel):
    """Request model for a new card definition."""

    name: str = Field(..., min_length=1, max_length=255)
    image_url: str = ""
    flavor_text: str | None = None
    rarities: list[RarityTierRequest] = Field(..., min_length=1)


class AllocateRequest(BaseModel):
    rarity: str
    owner_id: str


class DisplayOverrideRequest(BaseModel):
    value: int | None = Field(
        default=None,
        ge=0,
        description="Remaining copies to show users. null clears the override.",
    )


class AdminSupplyResponse(BaseModel):
    """Actual and displayed supply side by side."""

    definition_id: int
    rarity: str
    remaining: int
    displayed_remaining: int
    overridden: bool


@router.post("/users", response_model=UserResponse, status_code=201)
async def register_user(
    request: CreateUserRequest,
    admin: AdminDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> UserResponse:
    """Register a user with an opening packs balance."""
    try:
        async with atomic(session):
            user = await create_user(session, request.id, request.username, request.packs)
    except IntegrityError as e:
        raise ConflictError(f"User {request.id} or username {request.username} exists") from e
    log_audit("User Created", user_id=user.id, packs=user.packs, admin=admin.user_id)
    return UserResponse(id=user.id, username=user.username, packs=user.packs)


@router.post("/cards", response_model=CardDefinitionResponse, status_code=201)
async def create_card(
    request: CreateCardRequest,
    admin: AdminDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> CardDefinitionResponse:
    """Create a card definition with its rarity tiers."""
    tiers = [
        RarityTier(
            rarity=t.rarity,
            total_copies=t.total_copies,
            available_from=t.available_from,
            available_to=t.available_to,
        )
        for t in request.rarities
    ]
    async with atomic(session):
        definition = await create_card_definition(
            session, request.name, tiers, request.image_url, request.flavor_text
        )
    log_audit("Card Created", definition_id=definition.id, name=definition.name, admin=admin.user_id)

    loaded = await get_card_definition(session, definition.id)
    if loaded is None:
        raise NotFoundError(f"Card {definition.id} not found")
    return definition_to_response(loaded)


@router.post("/cards/{definition_id}/allocate", response_model=InstanceResponse, status_code=201)
async def allocate(
    definition_id: int,
    request: AllocateRequest,
    admin: AdminDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> InstanceResponse:
    """Mint the next copy of a card for a user."""
    instance = await allocate_instance(session, definition_id, request.rarity, request.owner_id)
    return instance_to_response(instance)


@router.get("/cards/{definition_id}/supply/{rarity}", response_model=AdminSupplyResponse)
async def supply_detail(
    definition_id: int,
    rarity: str,
    admin: AdminDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> AdminSupplyResponse:
    remaining = await query_remaining_supply(session, definition_id, rarity)
    displayed = await displayed_remaining_supply(session, definition_id, rarity)
    return AdminSupplyResponse(
        definition_id=definition_id,
        rarity=rarity,
        remaining=remaining,
        displayed_remaining=displayed.remaining,
        overridden=displayed.overridden,
    )


@router.put("/cards/{definition_id}/supply/{rarity}/display", response_model=AdminSupplyResponse)
async def override_displayed_supply(
    definition_id: int,
    rarity: str,
    request: DisplayOverrideRequest,
    admin: AdminDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> AdminSupplyResponse:
    """Set or clear what users see as remaining copies. Allocation ignores it."""
    async with atomic(session):
        await set_display_override(session, admin, definition_id, rarity, request.value)
    return await supply_detail(definition_id, rarity, admin, session)


@router.post("/instances/{instance_id}/return-to-pool", response_model=InstanceResponse)
async def retire_instance(
    instance_id: int,
    admin: AdminDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> InstanceResponse:
    """Retire an instance. Its mint number is never issued again."""
    instance = await return_to_pool(session, admin, instance_id)
    return instance_to_response(instance)
