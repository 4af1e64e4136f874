from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from school_ops.db.models import (
    AuditLog,
    Batch,
    ConversionAttempt,
    Invoice,
    Lead,
    Payment,
    Student,
    utcnow,
)


# ======================================================
# CONVERSION ATTEMPTS (IDEMPOTENCY)
# ======================================================

async def get_attempt_by_key(
    session: AsyncSession, idempotency_key: str
) -> ConversionAttempt | None:
    stmt = select(ConversionAttempt).where(
        ConversionAttempt.idempotency_key == idempotency_key
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def try_create_conversion_attempt(
    session: AsyncSession, **fields
) -> ConversionAttempt | None:
    """
    Atomically insert a PENDING attempt.
    Returns None if the key already exists (race condition).
    """
    attempt = ConversionAttempt(status="PENDING", **fields)
    try:
        session.add(attempt)
        await session.flush()
        return attempt
    except IntegrityError:
        await session.rollback()
        return None


async def delete_conversion_attempt(session: AsyncSession, attempt_id: str) -> None:
    await session.execute(delete(ConversionAttempt).where(ConversionAttempt.id == attempt_id))
    await session.flush()


async def update_conversion_attempt(
    session: AsyncSession,
    attempt_id: str,
    *,
    status: str,
    result: dict | None = None,
    error_message: str | None = None,
    student_id: str | None = None,
) -> ConversionAttempt:
    values = {"status": status, "updated_at": utcnow()}
    if result is not None:
        values["result"] = result
    if error_message is not None:
        values["error_message"] = error_message
    if student_id is not None:
        values["student_id"] = student_id

    stmt = (
        update(ConversionAttempt)
        .where(ConversionAttempt.id == attempt_id)
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    await session.execute(stmt)
    await session.flush()
    result_row = await session.execute(
        select(ConversionAttempt).where(ConversionAttempt.id == attempt_id)
    )
    return result_row.scalar_one()


async def get_conversion_attempt_by_id(
    session: AsyncSession, attempt_id: str
) -> ConversionAttempt | None:
    stmt = select(ConversionAttempt).where(ConversionAttempt.id == attempt_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_conversion_attempts(
    session: AsyncSession,
    status: str | None = None,
    invoice_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ConversionAttempt]:
    stmt = (
        select(ConversionAttempt)
        .order_by(ConversionAttempt.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    if status:
        stmt = stmt.where(ConversionAttempt.status == status)
    if invoice_id:
        stmt = stmt.where(ConversionAttempt.invoice_id == invoice_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_conversion_attempts(
    session: AsyncSession,
    status: str | None = None,
    invoice_id: str | None = None,
) -> int:
    stmt = select(func.count()).select_from(ConversionAttempt)
    if status:
        stmt = stmt.where(ConversionAttempt.status == status)
    if invoice_id:
        stmt = stmt.where(ConversionAttempt.invoice_id == invoice_id)
    result = await session.execute(stmt)
    return result.scalar() or 0


# ======================================================
# LEADS
# ======================================================

async def create_lead(session: AsyncSession, **fields) -> Lead:
    lead = Lead(**fields)
    session.add(lead)
    await session.flush()
    return lead


async def get_lead_by_id(
    session: AsyncSession, lead_id: str, *, for_update: bool = False
) -> Lead | None:
    stmt = select(Lead).where(Lead.id == lead_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_leads(
    session: AsyncSession,
    status: str | None = None,
    source: str | None = None,
    converted: bool | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Lead]:
    stmt = select(Lead).order_by(Lead.created_at.desc()).limit(limit).offset(offset)
    if status:
        stmt = stmt.where(Lead.status == status)
    if source:
        stmt = stmt.where(Lead.source == source)
    if converted is not None:
        stmt = stmt.where(Lead.converted.is_(converted))
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ======================================================
# BATCHES
# ======================================================

async def create_batch(session: AsyncSession, **fields) -> Batch:
    batch = Batch(**fields)
    session.add(batch)
    await session.flush()
    return batch


async def get_batch_by_id(session: AsyncSession, batch_id: str) -> Batch | None:
    result = await session.execute(select(Batch).where(Batch.id == batch_id))
    return result.scalar_one_or_none()


async def list_batches(session: AsyncSession, status: str | None = None) -> list[Batch]:
    stmt = select(Batch).order_by(Batch.created_at.desc())
    if status:
        stmt = stmt.where(Batch.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def increment_batch_enrollment(session: AsyncSession, batch_id: str) -> None:
    """Seat count +1 as a single SQL increment, never read-modify-write."""
    stmt = (
        update(Batch)
        .where(Batch.id == batch_id)
        .values(enrolled_count=Batch.enrolled_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        raise LookupError(f"Batch {batch_id} not found")


# ======================================================
# INVOICES
# ======================================================

async def create_invoice(session: AsyncSession, **fields) -> Invoice:
    invoice = Invoice(**fields)
    session.add(invoice)
    await session.flush()
    return invoice


async def get_invoice_by_id(
    session: AsyncSession, invoice_id: str, *, for_update: bool = False
) -> Invoice | None:
    stmt = select(Invoice).where(Invoice.id == invoice_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# ======================================================
# STUDENTS
# ======================================================

async def get_student_by_id(session: AsyncSession, student_id: str) -> Student | None:
    result = await session.execute(select(Student).where(Student.id == student_id))
    return result.scalar_one_or_none()


async def student_code_exists(session: AsyncSession, code: str) -> bool:
    stmt = select(func.count()).select_from(Student).where(Student.student_id == code)
    result = await session.execute(stmt)
    return (result.scalar() or 0) > 0


async def list_students(session: AsyncSession) -> list[Student]:
    result = await session.execute(select(Student).order_by(Student.created_at.desc()))
    return list(result.scalars().all())


# ======================================================
# PAYMENTS
# ======================================================

async def create_payment(session: AsyncSession, **fields) -> Payment:
    payment = Payment(**fields)
    session.add(payment)
    await session.flush()
    return payment


async def get_completed_payments(session: AsyncSession, student_id: str) -> list[Payment]:
    """COMPLETED payments for a student, newest first."""
    stmt = (
        select(Payment)
        .where(Payment.student_id == student_id, Payment.status == "COMPLETED")
        .order_by(Payment.payment_date.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_payments(
    session: AsyncSession,
    student_id: str | None = None,
    status: str | None = None,
    method: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list[Payment]:
    stmt = select(Payment).order_by(Payment.payment_date.desc())
    if student_id:
        stmt = stmt.where(Payment.student_id == student_id)
    if status:
        stmt = stmt.where(Payment.status == status)
    if method:
        stmt = stmt.where(Payment.method == method)
    if start_date:
        stmt = stmt.where(Payment.payment_date >= start_date)
    if end_date:
        stmt = stmt.where(Payment.payment_date <= end_date)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ======================================================
# AUDIT LOGS
# ======================================================

async def create_audit_log(session: AsyncSession, **fields) -> AuditLog:
    entry = AuditLog(**fields)
    session.add(entry)
    await session.flush()
    return entry


async def list_audit_logs(
    session: AsyncSession,
    severity: str | None = None,
    action: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)
    if severity:
        stmt = stmt.where(AuditLog.severity == severity)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if entity_type:
        stmt = stmt.where(AuditLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLog.entity_id == entity_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())
