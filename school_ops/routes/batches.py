"""/batches: cohorts and their seat counts."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.db.repository import create_batch, get_batch_by_id, list_batches
from school_ops.db.session import get_session_factory
from school_ops.deps import require_permission
from school_ops.schemas.leads import BatchCreate, BatchOut
from school_ops.services.auth import CurrentUser

router = APIRouter(prefix="/batches", tags=["batches"])


@router.get("", response_model=list[BatchOut])
async def list_batches_api(
    status: Optional[str] = Query(None),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("batches", "read")),
):
    async with session_factory() as session:
        return await list_batches(session, status=status)


@router.get("/{batch_id}", response_model=BatchOut)
async def get_batch_api(
    batch_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("batches", "read")),
):
    async with session_factory() as session:
        batch = await get_batch_by_id(session, batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return batch


@router.post("", response_model=BatchOut, status_code=201)
async def create_batch_api(
    data: BatchCreate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("batches", "create")),
):
    async with session_factory() as session:
        try:
            batch = await create_batch(session, **data.model_dump())
        except IntegrityError:
            raise HTTPException(status_code=409, detail="Batch code already exists")
        await session.commit()
    return batch
