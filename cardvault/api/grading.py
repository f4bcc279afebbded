"""
Grading API endpoints.

Request, complete and reveal grading for a card instance.
"""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.api.collection import InstanceResponse, instance_to_response
from cardvault.api.deps import CallerDep
from cardvault.config import MAX_GRADE, MIN_GRADE
from cardvault.db.database import get_session
from cardvault.services.grading import (
    complete_grading,
    get_grading_status,
    reveal_graded,
    request_grading,
)

router = APIRouter(prefix="/grading", tags=["grading"])


class GradingStatusResponse(BaseModel):
    """Response model for grading progress."""

    instance_id: int
    status: str
    slabbed: bool
    grade: float | None = None
    requested_at: datetime | None = None
    deadline: datetime | None = None
    ready: bool = False
    seconds_remaining: int = 0


class CompleteGradingRequest(BaseModel):
    """Request model for completing a grading."""

    grade: float | None = Field(
        default=None,
        ge=MIN_GRADE,
        le=MAX_GRADE,
        description="Grade to assign (admin only). Drawn at random if omitted.",
    )
    admin_override: bool = Field(
        default=False,
        description="Complete before the grading deadline (admin only)",
    )


@router.post("/{instance_id}/request", response_model=InstanceResponse)
async def request_instance_grading(
    instance_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> InstanceResponse:
    """Send an owned card for grading."""
    instance = await request_grading(session, caller, instance_id)
    return instance_to_response(instance)


@router.get("/{instance_id}", response_model=GradingStatusResponse)
async def grading_status(
    instance_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> GradingStatusResponse:
    """
    Get grading progress for an instance.

    Readiness is computed from the stored request time on every call.
    """
    result = await get_grading_status(session, instance_id)
    return GradingStatusResponse(
        instance_id=result.instance_id,
        status=result.status.value,
        slabbed=result.slabbed,
        grade=result.grade,
        requested_at=result.requested_at,
        deadline=result.deadline,
        ready=result.ready,
        seconds_remaining=result.seconds_remaining,
    )


@router.post("/{instance_id}/complete", response_model=InstanceResponse)
async def complete_instance_grading(
    instance_id: int,
    request: CompleteGradingRequest,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> InstanceResponse:
    """Assign a grade once the grading period is over."""
    instance = await complete_grading(
        session,
        caller,
        instance_id,
        request.grade,
        admin_override=request.admin_override,
    )
    return instance_to_response(instance)


@router.post("/{instance_id}/reveal", response_model=InstanceResponse)
async def reveal_instance_grade(
    instance_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> InstanceResponse:
    """Release a graded card back to the owner's collection."""
    instance = await reveal_graded(session, caller, instance_id)
    return instance_to_response(instance)
