"""
Trade API endpoints.

Direct two-party trades: propose, accept, reject, cancel and list.
"""

from datetime import datetime
from typing import Annotated, Any, Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.api.deps import CallerDep
from cardvault.db.database import get_session
from cardvault.models.card import TradeSide, TradeStatus
from cardvault.models.db import TradeDB
from cardvault.models.failure import ForbiddenError
from cardvault.services.trading import (
    accept_trade,
    cancel_trade,
    create_trade,
    get_trade,
    get_trades_for_user,
    reject_trade,
)

router = APIRouter(prefix="/trades", tags=["trades"])


class TradeResponse(BaseModel):
    """Response model for a trade."""

    id: int
    sender_id: str
    recipient_id: str
    offered_instance_ids: list[int] = Field(default_factory=list)
    requested_instance_ids: list[int] = Field(default_factory=list)
    offered_cards: list[dict[str, Any]] = Field(default_factory=list)
    requested_cards: list[dict[str, Any]] = Field(default_factory=list)
    offered_packs: int = 0
    requested_packs: int = 0
    status: str
    counter_of: int | None = None
    cancellation_reason: str = ""
    expires_at: datetime | None = None
    created_at: datetime
    closed_at: datetime | None = None


class TradeListResponse(BaseModel):
    trades: list[TradeResponse]
    count: int


class CreateTradeRequest(BaseModel):
    """Request model for proposing a trade."""

    recipient_id: str
    offered_instance_ids: list[int] = Field(default_factory=list)
    requested_instance_ids: list[int] = Field(default_factory=list)
    offered_packs: int = Field(default=0, ge=0)
    requested_packs: int = Field(default=0, ge=0)
    counter_of: int | None = Field(
        default=None,
        description="Trade this one answers. The original is not closed automatically.",
    )


def trade_to_response(trade: TradeDB) -> TradeResponse:
    offered = [i for i in trade.items if i.side == TradeSide.OFFERED]
    requested = [i for i in trade.items if i.side == TradeSide.REQUESTED]
    return TradeResponse(
        id=trade.id,
        sender_id=trade.sender_id,
        recipient_id=trade.recipient_id,
        offered_instance_ids=[i.instance_id for i in offered],
        requested_instance_ids=[i.instance_id for i in requested],
        offered_cards=[dict(i.card) for i in offered],
        requested_cards=[dict(i.card) for i in requested],
        offered_packs=trade.offered_packs,
        requested_packs=trade.requested_packs,
        status=trade.status.value,
        counter_of=trade.counter_of_id,
        cancellation_reason=trade.cancellation_reason,
        expires_at=trade.expires_at,
        created_at=trade.created_at,
        closed_at=trade.closed_at,
    )


@router.get("", response_model=TradeListResponse)
async def my_trades(
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
    direction: Literal["incoming", "outgoing"] | None = None,
    status: TradeStatus | None = None,
) -> TradeListResponse:
    """List the caller's trades, newest first."""
    trades = await get_trades_for_user(session, caller.user_id, direction=direction, status=status)
    return TradeListResponse(trades=[trade_to_response(t) for t in trades], count=len(trades))


@router.post("", response_model=TradeResponse, status_code=201)
async def propose_trade(
    request: CreateTradeRequest,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> TradeResponse:
    """Propose a trade to another user."""
    trade = await create_trade(
        session,
        caller,
        request.recipient_id,
        request.offered_instance_ids,
        request.requested_instance_ids,
        request.offered_packs,
        request.requested_packs,
        request.counter_of,
    )
    return trade_to_response(trade)


@router.get("/{trade_id}", response_model=TradeResponse)
async def trade_detail(
    trade_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> TradeResponse:
    """Get one trade. Only its two parties and admins can see it."""
    trade = await get_trade(session, trade_id)
    if caller.user_id not in (trade.sender_id, trade.recipient_id) and not caller.is_admin:
        raise ForbiddenError("You are not a party to this trade")
    return trade_to_response(trade)


@router.post("/{trade_id}/accept", response_model=TradeResponse)
async def accept(
    trade_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> TradeResponse:
    """Accept a trade. Both sides swap in a single commit or nothing moves."""
    trade = await accept_trade(session, caller, trade_id)
    return trade_to_response(trade)


@router.post("/{trade_id}/reject", response_model=TradeResponse)
async def reject(
    trade_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> TradeResponse:
    trade = await reject_trade(session, caller, trade_id)
    return trade_to_response(trade)


@router.post("/{trade_id}/cancel", response_model=TradeResponse)
async def cancel(
    trade_id: int,
    caller: CallerDep,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> TradeResponse:
    trade = await cancel_trade(session, caller, trade_id)
    return trade_to_response(trade)
