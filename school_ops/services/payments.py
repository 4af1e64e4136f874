"""
Student financial snapshot recalculation.

Runs after every recorded payment. It always re-reads the student and its
COMPLETED payments, since conversion and other payment flows may have
changed them in the meantime.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from school_ops.db.models import Payment, Student
from school_ops.db.repository import get_completed_payments, get_student_by_id
from school_ops.services.currency import ExchangeRates, quantize


@dataclass(frozen=True, slots=True)
class PaymentSnapshot:
    total_paid: Decimal
    balance: Decimal
    payment_status: str
    churn_risk: str


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def compute_snapshot(
    student: Student,
    payments: list[Payment],
    rates: ExchangeRates,
    *,
    now: datetime,
    overdue_after_days: int,
) -> PaymentSnapshot:
    """payments must be COMPLETED and ordered newest first."""
    total_paid = sum(
        (rates.convert(p.amount, p.currency, student.currency) for p in payments),
        Decimal("0.00"),
    )
    total_paid = quantize(total_paid)
    final_price = quantize(student.final_price)
    balance = final_price - total_paid

    if total_paid == 0:
        status = "PENDING"
    elif total_paid >= final_price:
        status = "PAID"
    else:
        status = "PARTIAL"

    last_activity = payments[0].payment_date if payments else student.enrollment_date
    days_since = (now - _aware(last_activity)).days
    if balance > 0 and days_since > overdue_after_days:
        status = "OVERDUE"

    attendance = Decimal(student.attendance_rate)
    if attendance < 50:
        churn_risk = "HIGH"
    elif attendance < 75 or status == "OVERDUE":
        churn_risk = "MEDIUM"
    else:
        churn_risk = "LOW"

    return PaymentSnapshot(
        total_paid=total_paid,
        balance=balance,
        payment_status=status,
        churn_risk=churn_risk,
    )


async def refresh_student_payment_status(
    session: AsyncSession,
    student_id: str,
    rates: ExchangeRates,
    *,
    overdue_after_days: int,
) -> Student | None:
    student = await get_student_by_id(session, student_id)
    if student is None:
        return None

    payments = await get_completed_payments(session, student_id)
    snapshot = compute_snapshot(
        student,
        payments,
        rates,
        now=datetime.now(timezone.utc),
        overdue_after_days=overdue_after_days,
    )
    student.total_paid = snapshot.total_paid
    student.balance = snapshot.balance
    student.payment_status = snapshot.payment_status
    student.churn_risk = snapshot.churn_risk
    await session.flush()
    return student
