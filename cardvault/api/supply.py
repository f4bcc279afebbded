"""
Card supply API endpoints.

Public, read-only views of card definitions and remaining copies. These
are advisory and may be served from a read replica.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.db import get_card_definition
from cardvault.db.database import get_read_session
from cardvault.models.db import CardDefinitionDB
from cardvault.models.failure import NotFoundError
from cardvault.services.supply_display import displayed_remaining_supply

router = APIRouter(prefix="/cards", tags=["supply"])


class RarityTierResponse(BaseModel):
    rarity: str
    total_copies: int
    minted_count: int
    available_from: datetime | None = None
    available_to: datetime | None = None


class CardDefinitionResponse(BaseModel):
    """Response model for a card definition."""

    id: int
    name: str
    image_url: str = ""
    flavor_text: str | None = None
    rarities: list[RarityTierResponse] = Field(default_factory=list)


class SupplyResponse(BaseModel):
    """Remaining copies of a card at one rarity, as shown to users."""

    definition_id: int
    rarity: str
    remaining: int


def definition_to_response(definition: CardDefinitionDB) -> CardDefinitionResponse:
    return CardDefinitionResponse(
        id=definition.id,
        name=definition.name,
        image_url=definition.image_url,
        flavor_text=definition.flavor_text,
        rarities=[
            RarityTierResponse(
                rarity=tier.rarity,
                total_copies=tier.total_copies,
                minted_count=tier.minted_count,
                available_from=tier.available_from,
                available_to=tier.available_to,
            )
            for tier in definition.rarities
        ],
    )


@router.get("/{definition_id}", response_model=CardDefinitionResponse)
async def card_definition(
    definition_id: int,
    session: Annotated[AsyncSession, Depends(get_read_session)],
) -> CardDefinitionResponse:
    """Get a card definition and its rarity tiers."""
    definition = await get_card_definition(session, definition_id)
    if definition is None:
        raise NotFoundError(f"Card {definition_id} not found")
    return definition_to_response(definition)


@router.get("/{definition_id}/supply/{rarity}", response_model=SupplyResponse)
async def remaining_supply(
    definition_id: int,
    rarity: str,
    session: Annotated[AsyncSession, Depends(get_read_session)],
) -> SupplyResponse:
    """Copies remaining for display. Never used for allocation."""
    displayed = await displayed_remaining_supply(session, definition_id, rarity)
    return SupplyResponse(
        definition_id=definition_id,
        rarity=rarity,
        remaining=displayed.remaining,
    )
