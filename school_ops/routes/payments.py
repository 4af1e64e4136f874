"""
/payments: ongoing tuition payments.

Recording a payment re-reads the student's completed payments and
recomputes balance, payment status and churn risk in the same transaction.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.config import settings
from school_ops.db.repository import create_payment, get_student_by_id, list_payments
from school_ops.db.session import get_session_factory
from school_ops.deps import get_audit_logger, get_exchange_rates, rate_limit, require_permission
from school_ops.schemas.payments import (
    PaymentCreate,
    PaymentCreateResponse,
    PaymentOut,
    StudentBalance,
)
from school_ops.services.audit import AuditLogger
from school_ops.services.auth import CurrentUser
from school_ops.services.currency import ExchangeRates, format_amount, quantize
from school_ops.services.payments import refresh_student_payment_status

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=list[PaymentOut])
async def list_payments_api(
    student_id: Optional[str] = Query(None, alias="studentId"),
    status: Optional[str] = Query(None),
    method: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("payments", "read")),
):
    async with session_factory() as session:
        return await list_payments(
            session,
            student_id=student_id,
            status=status,
            method=method,
            start_date=start_date,
            end_date=end_date,
        )


@router.post(
    "",
    response_model=PaymentCreateResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("MODERATE"))],
)
async def create_payment_api(
    data: PaymentCreate,
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    rates: ExchangeRates = Depends(get_exchange_rates),
    audit: AuditLogger = Depends(get_audit_logger),
    user: CurrentUser = Depends(require_permission("payments", "create")),
):
    async with session_factory() as session:
        async with session.begin():
            student = await get_student_by_id(session, data.student_id)
            if student is None:
                raise HTTPException(status_code=404, detail="Student not found")

            payment = await create_payment(
                session,
                student_id=student.id,
                amount=quantize(data.amount),
                currency=data.currency or student.currency,
                method=data.method,
                status=data.status,
                payment_date=data.payment_date or datetime.now(timezone.utc),
                transaction_id=data.transaction_id,
                notes=data.notes,
            )
            student = await refresh_student_payment_status(
                session,
                student.id,
                rates,
                overdue_after_days=settings.overdue_after_days,
            )

    if payment.status == "COMPLETED":
        await audit.log_success(
            "PAYMENT_RECEIVED",
            f"Payment received: {format_amount(payment.amount, payment.currency)} from student {student.student_id}",
            entity_type="Payment",
            entity_id=payment.id,
            metadata={
                "studentId": student.id,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "method": payment.method,
                "balance": str(student.balance),
            },
            request=request,
            user=user,
        )

    return PaymentCreateResponse(
        payment=PaymentOut.model_validate(payment),
        student=StudentBalance.model_validate(student),
    )
