"""
/leads: lead intake, qualification, invoicing and direct conversion.
"""

import random
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.config import settings
from school_ops.db.repository import create_invoice, create_lead, get_batch_by_id, get_lead_by_id, list_leads
from school_ops.db.session import get_session_factory
from school_ops.deps import get_audit_logger, require_permission
from school_ops.schemas.conversion import StudentOut
from school_ops.schemas.leads import (
    DirectConvertRequest,
    DirectConvertResponse,
    InvoiceCreate,
    InvoiceOut,
    LeadCreate,
    LeadOut,
    LeadUpdate,
)
from school_ops.services import conversion
from school_ops.services.audit import AuditLogger
from school_ops.services.auth import CurrentUser
from school_ops.services.currency import format_amount, quantize

router = APIRouter(prefix="/leads", tags=["leads"])


def generate_invoice_number(now: datetime) -> str:
    return f"INV-{now:%Y%m%d}-{now:%H%M}{random.randrange(100):02d}"


# ============================================================
# LIST / GET / CREATE / UPDATE
# ============================================================

@router.get("", response_model=list[LeadOut])
async def list_leads_api(
    status: Optional[str] = Query(None),
    source: Optional[str] = Query(None),
    converted: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("leads", "read")),
):
    async with session_factory() as session:
        return await list_leads(
            session, status=status, source=source, converted=converted, limit=limit, offset=offset
        )


@router.get("/{lead_id}", response_model=LeadOut)
async def get_lead_api(
    lead_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("leads", "read")),
):
    async with session_factory() as session:
        lead = await get_lead_by_id(session, lead_id)
    if lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


@router.post("", response_model=LeadOut, status_code=201)
async def create_lead_api(
    data: LeadCreate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("leads", "create")),
):
    async with session_factory() as session:
        if data.batch_id and await get_batch_by_id(session, data.batch_id) is None:
            raise HTTPException(status_code=404, detail="Batch not found")
        lead = await create_lead(session, **data.model_dump())
        await session.commit()
    return lead


@router.patch("/{lead_id}", response_model=LeadOut)
async def update_lead_api(
    lead_id: str,
    data: LeadUpdate,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("leads", "update")),
):
    """Update qualification fields. A converted lead keeps status CONVERTED."""
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Provide at least one field to update.")

    async with session_factory() as session:
        lead = await get_lead_by_id(session, lead_id)
        if lead is None:
            raise HTTPException(status_code=404, detail="Lead not found")
        if lead.converted and "status" in changes:
            raise HTTPException(status_code=400, detail="Converted lead status cannot change")
        if changes.get("batch_id") and await get_batch_by_id(session, changes["batch_id"]) is None:
            raise HTTPException(status_code=404, detail="Batch not found")

        for field, value in changes.items():
            setattr(lead, field, value)
        await session.commit()
    return lead


# ============================================================
# INVOICE  POST /leads/{lead_id}/invoice
# ============================================================

@router.post("/{lead_id}/invoice", response_model=InvoiceOut, status_code=201)
async def create_lead_invoice_api(
    lead_id: str,
    data: InvoiceCreate,
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    audit: AuditLogger = Depends(get_audit_logger),
    user: CurrentUser = Depends(require_permission("invoices", "create")),
):
    """Issue a PENDING invoice for a lead; nothing is paid yet."""
    if data.discount_applied > data.original_price:
        raise HTTPException(status_code=400, detail="Discount exceeds original price")

    total = quantize(data.original_price - data.discount_applied)
    now = datetime.now(timezone.utc)

    async with session_factory() as session:
        lead = await get_lead_by_id(session, lead_id)
        if lead is None:
            raise HTTPException(status_code=404, detail="Lead not found")
        if lead.converted:
            raise HTTPException(status_code=400, detail="Lead already converted")

        if data.items:
            items = [item.model_dump(mode="json") for item in data.items]
        else:
            items = [
                {
                    "description": "German Language Course",
                    "level": lead.interested_level or "A1",
                    "month": f"{now:%B}",
                    "batch": None,
                    "amount": str(quantize(data.original_price)),
                }
            ]

        invoice = await create_invoice(
            session,
            invoice_number=generate_invoice_number(now),
            lead_id=lead.id,
            currency=data.currency,
            status="PENDING",
            total_amount=total,
            paid_amount=Decimal("0.00"),
            remaining_amount=total,
            items=items,
            created_at=now,
        )
        if data.enrollment_type and not lead.interested_type:
            lead.interested_type = data.enrollment_type
        await session.commit()

    await audit.log_success(
        "INVOICE_GENERATED",
        f"Invoice {invoice.invoice_number} generated for lead {lead.name} ({format_amount(total, data.currency)})",
        entity_type="Invoice",
        entity_id=invoice.id,
        metadata={
            "leadId": lead.id,
            "invoiceNumber": invoice.invoice_number,
            "currency": data.currency,
            "totalAmount": str(total),
        },
        request=request,
        user=user,
    )
    return invoice


# ============================================================
# DIRECT CONVERSION  POST /leads/{lead_id}/convert
# ============================================================

@router.post("/{lead_id}/convert", response_model=DirectConvertResponse, status_code=201)
async def convert_lead_api(
    lead_id: str,
    data: DirectConvertRequest,
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    audit: AuditLogger = Depends(get_audit_logger),
    user: CurrentUser = Depends(require_permission("leads", "update")),
):
    """Enroll a lead into a batch without recording a payment."""
    if data.discount_applied > data.original_price:
        raise HTTPException(status_code=400, detail="Discount exceeds original price")

    try:
        student, lead = await conversion.convert_lead_directly(
            session_factory,
            lead_id=lead_id,
            batch_id=data.batch_id,
            enrollment_type=data.enrollment_type,
            original_price=data.original_price,
            discount_applied=data.discount_applied,
            currency=data.currency,
            trial_attended=data.trial_attended,
            max_id_attempts=settings.student_id_max_attempts,
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except conversion.LeadAlreadyConverted as e:
        raise HTTPException(status_code=400, detail="Lead is already converted") from e
    except conversion.BatchFull as e:
        raise HTTPException(status_code=400, detail="Batch is full") from e

    await audit.log_success(
        "LEAD_CONVERTED",
        f"Lead converted: {lead.name} → Student {student.student_id} (no payment)",
        entity_type="Lead",
        entity_id=lead.id,
        metadata={"studentId": student.id, "studentCode": student.student_id, "batchId": data.batch_id},
        request=request,
        user=user,
    )
    return DirectConvertResponse(
        student=StudentOut.model_validate(student),
        lead=LeadOut.model_validate(lead),
    )
