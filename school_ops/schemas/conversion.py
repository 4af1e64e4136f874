"""
Schemas for POST /invoices/{id}/pay-and-convert.

Money is Decimal end to end; JSON output renders it as a string.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field

from school_ops.config import settings
from school_ops.schemas.common import CamelModel

EnrollmentType = Literal["A1_ONLY", "A1_TO_B1", "A1_TO_B2"]


class PayAndConvertRequest(CamelModel):
    paid_amount: Decimal = Field(
        ..., gt=0, le=settings.max_paid_amount, decimal_places=2
    )
    batch_id: str | None = None
    enrollment_type: EnrollmentType | None = None
    idempotency_key: str = Field(..., min_length=1, max_length=255)


class StudentOut(CamelModel):
    id: str
    student_id: str
    name: str
    whatsapp: str
    email: str | None = None
    enrollment_date: datetime
    current_level: str
    enrollment_type: str
    batch_id: str | None = None
    original_price: Decimal
    discount_applied: Decimal
    final_price: Decimal
    currency: str
    total_paid: Decimal
    balance: Decimal
    payment_status: str
    churn_risk: str
    referral_source: str | None = None
    trial_attended: bool
    trial_date: datetime | None = None


class PayAndConvertResponse(CamelModel):
    success: bool = True
    message: str
    student: StudentOut
    student_code: str = Field(..., serialization_alias="studentId")
    invoice_status: str
