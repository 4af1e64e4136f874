"""Schemas for /analytics."""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from school_ops.schemas.common import CamelModel

InsightType = Literal["overview", "revenue", "collections"]


class InsightsPayload(BaseModel):
    """Strict output schema expected from the LLM."""

    summary: str
    insights: list[str] = Field(..., min_length=1, max_length=10)
    recommendations: list[str] = Field(default_factory=list, max_length=5)


class RevenueSummary(CamelModel):
    period_days: int
    payment_count: int
    revenue_by_currency: dict[str, Decimal]
    revenue_eur: Decimal
    outstanding_eur: Decimal
    students_total: int
    students_by_payment_status: dict[str, int]


class InsightsResponse(CamelModel):
    insights: InsightsPayload
    cached: bool
    generated_at: datetime
