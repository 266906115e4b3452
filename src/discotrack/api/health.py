from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from discotrack.models.schemas import HealthResponse
from discotrack.storage.database import get_session
from discotrack.storage import repository

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(session: AsyncSession = Depends(get_session)):
    total = await repository.count_records(session)
    return HealthResponse(changes_total=total)
