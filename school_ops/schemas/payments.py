"""Schemas for /payments."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field

from school_ops.config import settings
from school_ops.schemas.common import CamelModel

PaymentMethod = Literal["CASH", "BANK_TRANSFER", "UPI", "CARD", "CHEQUE"]
PaymentStatus = Literal["PENDING", "COMPLETED", "FAILED", "REFUNDED"]


class PaymentCreate(CamelModel):
    student_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, le=settings.max_paid_amount, decimal_places=2)
    currency: Literal["EUR", "INR"] | None = None  # defaults to the student's currency
    method: PaymentMethod
    payment_date: datetime | None = None
    status: PaymentStatus = "COMPLETED"
    transaction_id: str | None = Field(None, max_length=100)
    notes: str | None = Field(None, max_length=1000)


class PaymentOut(CamelModel):
    id: str
    student_id: str
    amount: Decimal
    currency: str
    method: str
    status: str
    payment_date: datetime
    invoice_number: str | None
    transaction_id: str | None
    notes: str | None


class StudentBalance(CamelModel):
    total_paid: Decimal
    balance: Decimal
    payment_status: str
    churn_risk: str


class PaymentCreateResponse(CamelModel):
    payment: PaymentOut
    student: StudentBalance
