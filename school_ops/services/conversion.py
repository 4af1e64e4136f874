"""
Lead-to-student conversion.

Everything that changes state runs inside one transaction: invoice settled,
student created, lead converted, invoice linked, payment recorded, batch
seat taken. Readers see all of it or none of it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.db.models import Invoice, Lead, Payment, Student, utcnow
from school_ops.db.repository import (
    create_payment,
    get_batch_by_id,
    get_invoice_by_id,
    get_lead_by_id,
    increment_batch_enrollment,
    student_code_exists,
)
from school_ops.services.currency import quantize
from school_ops.services.student_ids import generate_student_id

logger = logging.getLogger(__name__)


class LeadAlreadyConverted(Exception):
    pass


class StudentIdExhausted(Exception):
    pass


class BatchFull(Exception):
    pass


@dataclass(frozen=True, slots=True)
class Settlement:
    paid_amount: Decimal
    remaining_amount: Decimal
    final_price: Decimal
    balance: Decimal
    payment_status: str


@dataclass(frozen=True, slots=True)
class ConversionResult:
    student: Student
    invoice: Invoice
    lead: Lead
    payment: Payment


def settle(total_amount: Decimal, paid_amount: Decimal) -> Settlement:
    """
    Financial snapshot for a payment against an invoice.

    Caller guarantees 0 < paid_amount <= total_amount.
    """
    total = quantize(Decimal(total_amount))
    paid = quantize(Decimal(paid_amount))
    remaining = total - paid
    return Settlement(
        paid_amount=paid,
        remaining_amount=remaining,
        final_price=total,
        balance=remaining,
        payment_status="PARTIAL" if remaining > 0 else "PAID",
    )


async def insert_student(
    session: AsyncSession,
    now: datetime,
    fields: dict,
    *,
    max_attempts: int,
    id_generator: Callable[[datetime], str] = generate_student_id,
) -> Student:
    """
    Insert a student under a freshly generated code.

    Codes already taken are skipped; a unique violation on insert rolls back
    the savepoint and draws a new code.
    """
    for attempt in range(1, max_attempts + 1):
        code = id_generator(now)
        if await student_code_exists(session, code):
            logger.info("Student code %s taken, regenerating (%d/%d)", code, attempt, max_attempts)
            continue

        student = Student(student_id=code, **fields)
        try:
            async with session.begin_nested():
                session.add(student)
                await session.flush()
        except IntegrityError:
            logger.warning("Student code %s collided on insert (%d/%d)", code, attempt, max_attempts)
            continue
        return student

    raise StudentIdExhausted(f"No free student code after {max_attempts} attempts")


async def pay_and_convert(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    invoice_id: str,
    paid_amount: Decimal,
    batch_id: str | None,
    enrollment_type: str | None,
    max_id_attempts: int,
    id_generator: Callable[[datetime], str] = generate_student_id,
) -> ConversionResult:
    """Run the conversion transaction. Any exception rolls back every write."""
    now = utcnow()

    async with session_factory() as session:
        async with session.begin():
            invoice = await get_invoice_by_id(session, invoice_id, for_update=True)
            if invoice is None or invoice.lead_id is None:
                raise LookupError(f"Invoice {invoice_id} has no lead")
            lead = await get_lead_by_id(session, invoice.lead_id, for_update=True)
            if lead is None:
                raise LookupError(f"Lead {invoice.lead_id} not found")
            if lead.converted:
                raise LeadAlreadyConverted(lead.id)

            settlement = settle(invoice.total_amount, paid_amount)

            # 1. Settle invoice
            invoice.status = "PAID"
            invoice.paid_amount = settlement.paid_amount
            invoice.remaining_amount = settlement.remaining_amount

            # 2-3. Student from lead defaults + financial snapshot
            target_batch_id = batch_id or lead.batch_id
            student = await insert_student(
                session,
                now,
                {
                    "name": lead.name,
                    "whatsapp": lead.whatsapp,
                    "email": lead.email,
                    "enrollment_date": now,
                    "current_level": lead.interested_level or "NEW",
                    "enrollment_type": enrollment_type or lead.interested_type or "A1_ONLY",
                    "batch_id": target_batch_id,
                    "original_price": settlement.final_price,
                    "discount_applied": Decimal("0.00"),
                    "final_price": settlement.final_price,
                    "currency": invoice.currency,
                    "payment_status": settlement.payment_status,
                    "churn_risk": "LOW",
                    "attendance_rate": Decimal("100.00"),
                    "total_paid": settlement.paid_amount,
                    "balance": settlement.balance,
                    "referral_source": lead.source,
                    "trial_attended": lead.trial_attended_date is not None,
                    "trial_date": lead.trial_attended_date,
                    "created_at": now,
                },
                max_attempts=max_id_attempts,
                id_generator=id_generator,
            )

            # 4. Lead converted
            lead.converted = True
            lead.converted_date = now
            lead.student_id = student.id
            lead.status = "CONVERTED"

            # 5. Invoice linked to student
            invoice.student_id = student.id

            # 6. Payment
            payment = await create_payment(
                session,
                student_id=student.id,
                amount=settlement.paid_amount,
                currency=invoice.currency,
                method="BANK_TRANSFER",
                status="COMPLETED",
                payment_date=now,
                invoice_number=invoice.invoice_number,
                created_at=now,
            )

            # 7. Seat
            if target_batch_id:
                await increment_batch_enrollment(session, target_batch_id)

        logger.info(
            "Converted lead %s to student %s (invoice %s, paid %s %s)",
            lead.id, student.student_id, invoice.invoice_number,
            settlement.paid_amount, invoice.currency,
        )
        return ConversionResult(student=student, invoice=invoice, lead=lead, payment=payment)


async def convert_lead_directly(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    lead_id: str,
    batch_id: str,
    enrollment_type: str,
    original_price: Decimal,
    discount_applied: Decimal,
    currency: str,
    trial_attended: bool | None,
    max_id_attempts: int,
    id_generator: Callable[[datetime], str] = generate_student_id,
) -> tuple[Student, Lead]:
    """
    Enroll a lead without taking payment. The student starts PENDING with
    the full price outstanding.

    Raises LookupError for a missing lead/batch, LeadAlreadyConverted, or
    BatchFull.
    """
    now = utcnow()
    final_price = quantize(max(Decimal(original_price) - Decimal(discount_applied), Decimal("0")))

    async with session_factory() as session:
        async with session.begin():
            lead = await get_lead_by_id(session, lead_id, for_update=True)
            if lead is None:
                raise LookupError("Lead not found")
            if lead.converted:
                raise LeadAlreadyConverted(lead.id)

            batch = await get_batch_by_id(session, batch_id)
            if batch is None:
                raise LookupError("Batch not found")
            if batch.enrolled_count >= batch.total_seats:
                raise BatchFull(batch.batch_code)

            student = await insert_student(
                session,
                now,
                {
                    "name": lead.name,
                    "whatsapp": lead.whatsapp,
                    "email": lead.email,
                    "enrollment_date": now,
                    "current_level": batch.level,
                    "enrollment_type": enrollment_type,
                    "batch_id": batch.id,
                    "original_price": quantize(Decimal(original_price)),
                    "discount_applied": quantize(Decimal(discount_applied)),
                    "final_price": final_price,
                    "currency": currency,
                    "payment_status": "PENDING",
                    "churn_risk": "LOW",
                    "attendance_rate": Decimal("100.00"),
                    "total_paid": Decimal("0.00"),
                    "balance": final_price,
                    "referral_source": lead.source,
                    "trial_attended": (
                        trial_attended
                        if trial_attended is not None
                        else lead.trial_attended_date is not None
                    ),
                    "trial_date": lead.trial_attended_date,
                    "created_at": now,
                },
                max_attempts=max_id_attempts,
                id_generator=id_generator,
            )

            lead.converted = True
            lead.converted_date = now
            lead.student_id = student.id
            lead.status = "CONVERTED"

            await increment_batch_enrollment(session, batch.id)

        return student, lead

