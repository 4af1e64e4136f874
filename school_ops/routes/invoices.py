"""
/invoices: invoice lookup and POST /invoices/{id}/pay-and-convert.

Pay-and-convert is idempotent per client key, all-or-nothing, and audited.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.config import settings
from school_ops.db.repository import get_batch_by_id, get_invoice_by_id, get_lead_by_id
from school_ops.db.session import get_session_factory
from school_ops.deps import get_audit_logger, rate_limit, require_permission
from school_ops.schemas.conversion import (
    PayAndConvertRequest,
    PayAndConvertResponse,
    StudentOut,
)
from school_ops.schemas.leads import InvoiceOut
from school_ops.services import conversion, idempotency
from school_ops.services.audit import AuditLogger
from school_ops.services.auth import CurrentUser
from school_ops.services.currency import format_amount, quantize

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("/{invoice_id}", response_model=InvoiceOut)
async def get_invoice_api(
    invoice_id: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("invoices", "read")),
):
    async with session_factory() as session:
        invoice = await get_invoice_by_id(session, invoice_id)
    if invoice is None:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.post(
    "/{invoice_id}/pay-and-convert",
    response_model=PayAndConvertResponse,
    dependencies=[Depends(rate_limit("STRICT"))],
)
async def pay_and_convert_api(
    invoice_id: str,
    data: PayAndConvertRequest,
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    audit: AuditLogger = Depends(get_audit_logger),
    user: CurrentUser = Depends(require_permission("payments", "create")),
):
    """
    Mark an invoice as paid and convert its lead into a student.

    - Idempotent: a completed key replays the cached response body.
    - Exclusive: a key held by an in-flight request gets 409.
    - Atomic: invoice, student, lead, payment and batch change together or not at all.
    """
    # ── 1. Load invoice + lead ───────────────────────────────────────────────
    async with session_factory() as session:
        invoice = await get_invoice_by_id(session, invoice_id)
        if invoice is None:
            raise HTTPException(status_code=404, detail="Invoice not found")
        lead = await get_lead_by_id(session, invoice.lead_id) if invoice.lead_id else None
        if lead is None:
            raise HTTPException(status_code=404, detail="Invoice has no associated lead")

        # ── 2. Idempotency check ─────────────────────────────────────────────
        try:
            cached = await idempotency.admit(session, data.idempotency_key)
        except idempotency.ConversionInProgress:
            raise HTTPException(
                status_code=409,
                detail={
                    "error": "Conversion in progress",
                    "message": "Another request is currently processing this conversion. Please wait.",
                },
                headers={"Retry-After": "5"},
            )
        except idempotency.DuplicateConversion:
            raise _duplicate_conflict()
        await session.commit()

    if cached is not None:
        return JSONResponse(cached)

    # ── 3. Validate against current invoice state (no writes yet) ────────────
    invoice_total = quantize(invoice.total_amount)
    paid_amount = quantize(data.paid_amount)
    if paid_amount > invoice_total:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "Paid amount exceeds invoice total",
                "details": {
                    "paidAmount": str(paid_amount),
                    "invoiceTotal": str(invoice_total),
                    "excess": str(paid_amount - invoice_total),
                },
            },
        )
    if paid_amount <= 0:
        raise HTTPException(status_code=400, detail="Paid amount must be greater than zero")
    if lead.converted or invoice.status == "PAID":
        raise HTTPException(status_code=400, detail="Lead already converted")

    target_batch_id = data.batch_id or lead.batch_id
    if target_batch_id:
        async with session_factory() as session:
            batch = await get_batch_by_id(session, target_batch_id)
        if batch is None:
            raise HTTPException(status_code=404, detail="Batch not found")
        if batch.enrolled_count >= batch.total_seats:
            logger.warning("Batch %s is full; enrolling paid student anyway", batch.batch_code)

    # ── 4. Claim the key (PENDING row = lock) ────────────────────────────────
    async with session_factory() as session:
        try:
            attempt = await idempotency.claim(
                session,
                data.idempotency_key,
                invoice_id=invoice.id,
                lead_id=lead.id,
                paid_amount=paid_amount,
                currency=invoice.currency,
                batch_id=data.batch_id,
                enrollment_type=data.enrollment_type,
                user_id=user.id,
                user_email=user.email,
            )
        except idempotency.DuplicateConversion:
            raise _duplicate_conflict()
        await session.commit()
        attempt_id = attempt.id

    # ── 5. Conversion transaction ────────────────────────────────────────────
    try:
        result = await conversion.pay_and_convert(
            session_factory,
            invoice_id=invoice.id,
            paid_amount=paid_amount,
            batch_id=data.batch_id,
            enrollment_type=data.enrollment_type,
            max_id_attempts=settings.student_id_max_attempts,
        )
    except conversion.LeadAlreadyConverted as e:
        await idempotency.mark_failed(session_factory, attempt_id, "Lead already converted")
        await audit.log_warning(
            "LEAD_TO_STUDENT_CONVERSION",
            f"Conversion rejected: lead {lead.name} was converted concurrently",
            entity_type="Invoice",
            entity_id=invoice.id,
            metadata={"leadId": lead.id, "idempotencyKey": data.idempotency_key},
            request=request,
            user=user,
        )
        raise HTTPException(status_code=409, detail="Lead already converted") from e
    except Exception as e:
        logger.exception("Pay and convert failed for invoice %s", invoice.id)
        await idempotency.mark_failed(session_factory, attempt_id, str(e) or type(e).__name__)
        await audit.log_critical(
            "API_ERROR",
            f"CRITICAL: Failed to convert lead to student for invoice {invoice.id}",
            e,
            entity_type="Invoice",
            entity_id=invoice.id,
            metadata={
                "attemptedPaidAmount": str(paid_amount),
                "batchId": data.batch_id,
                "enrollmentType": data.enrollment_type,
                "idempotencyKey": data.idempotency_key,
            },
            request=request,
            user=user,
        )
        return JSONResponse({"error": "Failed to convert lead"}, status_code=500)

    # ── 6. Audit trail (after commit) ────────────────────────────────────────
    student, payment = result.student, result.payment
    amount_text = format_amount(paid_amount, invoice.currency)
    await audit.log_success(
        "LEAD_TO_STUDENT_CONVERSION",
        f"Conversion: Lead {lead.name} → Student (Payment: {amount_text})",
        entity_type="Invoice",
        entity_id=invoice.id,
        metadata={
            "leadId": lead.id,
            "leadName": lead.name,
            "invoiceNumber": invoice.invoice_number,
            "paidAmount": str(paid_amount),
            "currency": invoice.currency,
            "idempotencyKey": data.idempotency_key,
        },
        request=request,
        user=user,
    )
    await audit.log_success(
        "PAYMENT_RECEIVED",
        f"Payment received: {amount_text} for invoice {invoice.invoice_number}",
        entity_type="Payment",
        entity_id=payment.id,
        metadata={
            "invoiceId": invoice.id,
            "invoiceNumber": invoice.invoice_number,
            "amount": str(paid_amount),
            "currency": invoice.currency,
        },
        request=request,
        user=user,
    )
    await audit.log_success(
        "LEAD_CONVERTED",
        f"Lead converted successfully: {lead.name} → Student {student.student_id}",
        entity_type="Lead",
        entity_id=lead.id,
        metadata={
            "leadId": lead.id,
            "studentId": student.id,
            "studentCode": student.student_id,
            "invoiceNumber": invoice.invoice_number,
            "idempotencyKey": data.idempotency_key,
        },
        request=request,
        user=user,
    )

    # ── 7. Cache response for replay ─────────────────────────────────────────
    body = PayAndConvertResponse(
        success=True,
        message="Lead converted to student successfully",
        student=StudentOut.model_validate(student),
        student_code=student.student_id,
        invoice_status=result.invoice.status,
    ).model_dump(mode="json", by_alias=True)

    await idempotency.mark_completed(
        session_factory, attempt_id, student_id=student.id, result=body
    )
    return JSONResponse(body)


def _duplicate_conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={
            "error": "Duplicate conversion attempt",
            "message": "A conversion with this idempotency key is already in progress.",
        },
        headers={"Retry-After": "5"},
    )
