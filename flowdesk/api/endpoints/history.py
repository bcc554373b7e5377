from typing import Annotated, List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from flowdesk.core import models, schemas
from flowdesk.core.database import get_db
from flowdesk.core.security import token_dep

router = APIRouter(prefix="/history", tags=["History"])

db_dep = Annotated[AsyncSession, Depends(get_db)]


@router.get("", response_model=List[schemas.QueryRunResponse])
async def list_history(
    _token: token_dep,
    db: db_dep,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
):
    """Recorded runs, newest first."""
    query = (
        select(models.QueryRun)
        .order_by(desc(models.QueryRun.id))
        .offset(offset)
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()
