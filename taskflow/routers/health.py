"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from taskflow import __version__
from taskflow.database import get_db
from taskflow.protocol import utc_timestamp

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    backend: str
    timestamp: str
    database: str
    connections: int


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.
    Returns server status, database connectivity and live WebSocket count.
    """
    db_status = "connected"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {str(e)}"

    return HealthResponse(
        status="ok",
        version=__version__,
        backend="python-fastapi",
        timestamp=utc_timestamp(),
        database=db_status,
        connections=request.app.state.realtime.get_online_count(),
    )


@router.get("/api/health", response_model=HealthResponse)
async def api_health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """
    API prefixed health check (for consistency with /api/* routes).
    """
    return await health_check(request, db)
