"""
/conversion-attempts: inspection and cleanup of pay-and-convert attempts.

Only FAILED attempts can be deleted; deleting one frees its idempotency key
for a retry.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.db.repository import (
    count_conversion_attempts,
    delete_conversion_attempt,
    get_conversion_attempt_by_id,
    list_conversion_attempts,
)
from school_ops.db.session import get_session_factory
from school_ops.deps import require_permission
from school_ops.schemas.common import CamelModel
from school_ops.services.auth import CurrentUser

router = APIRouter(prefix="/conversion-attempts", tags=["conversion-attempts"])


# ============================================================
# Pydantic schemas
# ============================================================

class AttemptResponse(CamelModel):
    id: str
    idempotency_key: str
    invoice_id: str
    lead_id: str
    paid_amount: Decimal
    currency: str
    batch_id: Optional[str]
    enrollment_type: Optional[str]
    status: str
    error_message: Optional[str]
    student_id: Optional[str]
    user_email: Optional[str]
    created_at: datetime
    updated_at: datetime
    # True when a cached response is available for replay
    has_result: bool = False

    @classmethod
    def from_attempt(cls, attempt) -> "AttemptResponse":
        response = cls.model_validate(attempt)
        response.has_result = attempt.result is not None
        return response


class AttemptListResponse(BaseModel):
    attempts: list[AttemptResponse]
    total: int
    limit: int
    offset: int


# ============================================================
# LIST ATTEMPTS  GET /conversion-attempts
# ============================================================

@router.get("", response_model=AttemptListResponse)
async def list_attempts_api(
    status: Optional[str] = Query(None, description="Filter: PENDING | COMPLETED | FAILED"),
    invoice_id: Optional[str] = Query(None, alias="invoiceId"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("payments", "read")),
):
    """Return paginated, optionally filtered list of attempts."""
    async with session_factory() as session:
        attempts = await list_conversion_attempts(
            session, status=status, invoice_id=invoice_id, limit=limit, offset=offset
        )
        total = await count_conversion_attempts(session, status=status, invoice_id=invoice_id)

    return AttemptListResponse(
        attempts=[AttemptResponse.from_attempt(a) for a in attempts],
        total=total,
        limit=limit,
        offset=offset,
    )


# ============================================================
# GET SINGLE ATTEMPT  GET /conversion-attempts/{attempt_id}
# ============================================================

@router.get("/{attempt_id}", response_model=AttemptResponse)
async def get_attempt_api(
    attempt_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("payments", "read")),
):
    async with session_factory() as session:
        attempt = await get_conversion_attempt_by_id(session, attempt_id)
    if not attempt:
        raise HTTPException(status_code=404, detail="Conversion attempt not found.")
    return AttemptResponse.from_attempt(attempt)


# ============================================================
# DELETE ATTEMPT  DELETE /conversion-attempts/{attempt_id}
# ============================================================

@router.delete("/{attempt_id}", status_code=200)
async def delete_attempt_api(
    attempt_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("payments", "delete")),
):
    """Hard-delete a FAILED attempt so its key can be reused."""
    async with session_factory() as session:
        attempt = await get_conversion_attempt_by_id(session, attempt_id)
        if not attempt:
            raise HTTPException(status_code=404, detail="Conversion attempt not found.")
        if attempt.status != "FAILED":
            raise HTTPException(
                status_code=409,
                detail=f"Only FAILED attempts can be deleted (status is {attempt.status}).",
            )

        await delete_conversion_attempt(session, attempt_id)
        await session.commit()

    return {"success": True, "deleted": attempt_id}
