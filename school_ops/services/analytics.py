"""Revenue aggregation; every amount is normalized to EUR via ExchangeRates."""

from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from school_ops.db.repository import list_payments, list_students
from school_ops.services.currency import ExchangeRates, quantize


async def revenue_summary(
    session: AsyncSession,
    rates: ExchangeRates,
    *,
    period_days: int,
    now: datetime,
) -> dict:
    start = now - timedelta(days=period_days)
    payments = await list_payments(session, status="COMPLETED", start_date=start)
    students = await list_students(session)

    by_currency: dict[str, Decimal] = {}
    total_eur = Decimal("0.00")
    for p in payments:
        by_currency[p.currency] = by_currency.get(p.currency, Decimal("0.00")) + p.amount
        total_eur += rates.to_eur(p.amount, p.currency)

    outstanding_eur = sum(
        (rates.to_eur(s.balance, s.currency) for s in students if s.balance > 0),
        Decimal("0.00"),
    )
    status_counts = Counter(s.payment_status for s in students)

    return {
        "period_days": period_days,
        "payment_count": len(payments),
        "revenue_by_currency": {k: quantize(v) for k, v in sorted(by_currency.items())},
        "revenue_eur": quantize(total_eur),
        "outstanding_eur": quantize(outstanding_eur),
        "students_total": len(students),
        "students_by_payment_status": dict(sorted(status_counts.items())),
    }
