"""
Health check endpoints.

Liveness, plus a readiness probe that checks both the primary database
and the read replica used for advisory queries.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cardvault.db.database import get_read_session, get_session

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str | None = None
    read_database: str | None = None


async def _ping(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        return False
    return True


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Liveness probe. Does not check dependencies."""
    return HealthResponse(status="healthy")


@router.get(
    "/ready",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
)
async def ready(
    response: Response,
    session: Annotated[AsyncSession, Depends(get_session)],
    read_session: Annotated[AsyncSession, Depends(get_read_session)],
) -> HealthResponse:
    """
    Readiness probe.

    Returns 503 unless the primary database answers. A lagging or missing
    replica is reported but does not fail readiness; only advisory reads
    depend on it.
    """
    primary_ok = await _ping(session)
    replica_ok = await _ping(read_session)

    if not primary_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not ready",
            database="disconnected",
            read_database="connected" if replica_ok else "disconnected",
        )
    return HealthResponse(
        status="ready",
        database="connected",
        read_database="connected" if replica_ok else "disconnected",
    )
