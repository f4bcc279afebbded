"""
Collection API endpoints.

Reading a collection also finalizes any grading whose deadline has
passed, so users see their graded cards without a background scheduler.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.db import get_packs_balance, get_user_instances
from cardvault.db.database import get_session
from cardvault.models.db import CardInstanceDB
from cardvault.services.grading import finalize_due_gradings

router = APIRouter(prefix="/collection", tags=["collection"])


class InstanceResponse(BaseModel):
    """Response model for one card instance."""

    id: int
    definition_id: int
    rarity: str
    mint_number: int
    owner_id: str | None
    status: str
    slabbed: bool = False
    grade: float | None = None
    grading_requested_at: datetime | None = None
    graded_at: datetime | None = None
    acquired_at: datetime


class CollectionResponse(BaseModel):
    """Response model for a user's collection."""

    user_id: str
    packs: int
    instances: list[InstanceResponse] = Field(default_factory=list)
    total_instances: int = 0
    finalized_gradings: list[int] = Field(
        default_factory=list,
        description="Instances whose grading completed as part of this read",
    )


def instance_to_response(instance: CardInstanceDB) -> InstanceResponse:
    return InstanceResponse(
        id=instance.id,
        definition_id=instance.definition_id,
        rarity=instance.rarity,
        mint_number=instance.mint_number,
        owner_id=instance.owner_id,
        status=instance.status.value,
        slabbed=instance.slabbed,
        grade=instance.grade,
        grading_requested_at=instance.grading_requested_at,
        graded_at=instance.graded_at,
        acquired_at=instance.acquired_at,
    )


@router.get("/{user_id}", response_model=CollectionResponse)
async def get_user_collection(
    user_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> CollectionResponse:
    """
    Get a user's card collection and packs balance.

    Retired instances are not part of a collection.
    """
    finalized = await finalize_due_gradings(session, user_id)
    packs = await get_packs_balance(session, user_id)
    instances = await get_user_instances(session, user_id)

    return CollectionResponse(
        user_id=user_id,
        packs=packs,
        instances=[instance_to_response(i) for i in instances],
        total_instances=len(instances),
        finalized_gradings=finalized,
    )
