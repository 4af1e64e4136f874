"""Schemas for leads, batches and invoices."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field, model_validator

from school_ops.schemas.common import CamelModel
from school_ops.schemas.conversion import EnrollmentType, StudentOut

LeadSource = Literal["INSTAGRAM", "WEBSITE", "REFERRAL", "WALK_IN", "OTHER"]
LeadStatus = Literal[
    "NEW", "CONTACTED", "INTERESTED", "TRIAL_SCHEDULED", "TRIAL_ATTENDED", "CONVERTED", "LOST"
]
LeadQuality = Literal["HOT", "WARM", "COLD"]
Currency = Literal["EUR", "INR"]


# ============================================================
# Leads
# ============================================================

class LeadCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    whatsapp: str = Field(..., min_length=5, max_length=32)
    email: str | None = Field(None, max_length=255)
    source: LeadSource = "OTHER"
    quality: LeadQuality = "WARM"
    interested_level: str | None = None
    interested_type: EnrollmentType | None = None
    batch_id: str | None = None
    notes: str | None = Field(None, max_length=2000)


class LeadUpdate(CamelModel):
    """Qualification fields only; conversion fields are owned by the conversion flow."""

    name: str | None = Field(None, min_length=1, max_length=255)
    whatsapp: str | None = Field(None, min_length=5, max_length=32)
    email: str | None = None
    status: Literal[
        "NEW", "CONTACTED", "INTERESTED", "TRIAL_SCHEDULED", "TRIAL_ATTENDED", "LOST"
    ] | None = None
    quality: LeadQuality | None = None
    source: LeadSource | None = None
    interested_level: str | None = None
    interested_type: EnrollmentType | None = None
    batch_id: str | None = None
    trial_attended_date: datetime | None = None
    notes: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def reject_null_required_fields(self):
        # Omit a field to leave it unchanged; these columns cannot be cleared
        cleared = [
            name
            for name in ("name", "whatsapp", "status", "quality", "source")
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"{', '.join(cleared)} cannot be null")
        return self


class LeadOut(CamelModel):
    id: str
    name: str
    whatsapp: str
    email: str | None
    source: str
    status: str
    quality: str
    interested_level: str | None
    interested_type: str | None
    batch_id: str | None
    trial_attended_date: datetime | None
    notes: str | None
    converted: bool
    converted_date: datetime | None
    student_id: str | None
    created_at: datetime


# ============================================================
# Batches
# ============================================================

class BatchCreate(CamelModel):
    batch_code: str = Field(..., min_length=1, max_length=50)
    level: str = Field(..., min_length=1, max_length=20)
    total_seats: int = Field(10, ge=1, le=500)
    status: Literal["PLANNING", "FILLING", "RUNNING", "COMPLETED"] = "PLANNING"


class BatchOut(CamelModel):
    id: str
    batch_code: str
    level: str
    total_seats: int
    enrolled_count: int
    status: str


# ============================================================
# Invoices
# ============================================================

class InvoiceItem(CamelModel):
    description: str
    level: str | None = None
    month: str | None = None
    batch: str | None = None
    amount: Decimal


class InvoiceCreate(CamelModel):
    currency: Currency = "EUR"
    original_price: Decimal = Field(..., gt=0, decimal_places=2)
    discount_applied: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    enrollment_type: EnrollmentType | None = None
    items: list[InvoiceItem] | None = None


class InvoiceOut(CamelModel):
    id: str
    invoice_number: str
    lead_id: str | None
    student_id: str | None
    currency: str
    status: str
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    items: list[dict] | None
    created_at: datetime


# ============================================================
# Direct conversion (no payment)
# ============================================================

class DirectConvertRequest(CamelModel):
    batch_id: str = Field(..., min_length=1)
    enrollment_type: EnrollmentType
    original_price: Decimal = Field(..., gt=0, decimal_places=2)
    discount_applied: Decimal = Field(Decimal("0"), ge=0, decimal_places=2)
    currency: Currency = "EUR"
    trial_attended: bool | None = None


class DirectConvertResponse(CamelModel):
    student: StudentOut
    lead: LeadOut
