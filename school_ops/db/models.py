"""
Database models for the school ledger.

Money columns are Numeric(12, 2) and always read/written as Decimal.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(12, 2, asdecimal=True)


def _uuid() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Lead(Base):
    """Prospective customer prior to enrollment."""

    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    whatsapp: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str] = mapped_column(
        String(20), nullable=False, default="OTHER"
    )  # INSTAGRAM | WEBSITE | REFERRAL | WALK_IN | OTHER
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="NEW"
    )  # NEW | CONTACTED | INTERESTED | TRIAL_SCHEDULED | TRIAL_ATTENDED | CONVERTED | LOST
    quality: Mapped[str] = mapped_column(
        String(10), nullable=False, default="WARM"
    )  # HOT | WARM | COLD
    interested_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    interested_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=True
    )
    trial_attended_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    converted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    converted_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    student_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("students.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Batch(Base):
    """A cohort with a seat capacity."""

    __tablename__ = "batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    total_seats: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    enrolled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PLANNING"
    )  # PLANNING | FILLING | RUNNING | COMPLETED
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Invoice(Base):
    """Billing document presented to a lead before conversion."""

    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    lead_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("leads.id"), nullable=True
    )
    student_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("students.id"), nullable=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING"
    )  # PENDING | PAID | CANCELLED
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    remaining_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    items: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Student(Base):
    """Enrolled student; created exactly once per successful conversion."""

    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    whatsapp: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    enrollment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    current_level: Mapped[str] = mapped_column(String(20), nullable=False, default="NEW")
    enrollment_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="A1_ONLY"
    )  # A1_ONLY | A1_TO_B1 | A1_TO_B2
    batch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("batches.id"), nullable=True
    )
    original_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount_applied: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    final_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    total_paid: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING"
    )  # PENDING | PARTIAL | PAID | OVERDUE
    churn_risk: Mapped[str] = mapped_column(
        String(10), nullable=False, default="LOW"
    )  # LOW | MEDIUM | HIGH
    attendance_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2, asdecimal=True), nullable=False, default=Decimal("100")
    )
    referral_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    trial_attended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Payment(Base):
    """Immutable financial event."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("students.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    method: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # CASH | BANK_TRANSFER | UPI | CARD | CHEQUE
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="COMPLETED"
    )  # PENDING | COMPLETED | FAILED | REFUNDED
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    invoice_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ConversionAttempt(Base):
    """Idempotency record and lock for one pay-and-convert request."""

    __tablename__ = "conversion_attempts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    invoice_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    lead_id: Mapped[str] = mapped_column(String(36), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    enrollment_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING"
    )  # PENDING | COMPLETED | FAILED
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    student_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class AuditLog(Base):
    """Audit trail for critical actions."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(
        String(10), nullable=False, default="INFO"
    )  # INFO | WARNING | ERROR | CRITICAL
    description: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_path: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
