"""
/analytics: revenue aggregation and LLM-generated insights.

Insights are cached per (type, period) in the injected InsightsCache.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.db.session import get_session_factory
from school_ops.deps import (
    get_exchange_rates,
    get_insights_cache,
    get_insights_generator,
    rate_limit,
    require_permission,
)
from school_ops.schemas.analytics import (
    InsightsPayload,
    InsightsResponse,
    InsightType,
    RevenueSummary,
)
from school_ops.services.analytics import revenue_summary
from school_ops.services.auth import CurrentUser
from school_ops.services.cache import InsightsCache, insights_cache_key
from school_ops.services.currency import ExchangeRates
from school_ops.services.insights import InsightsGenerator, LLMResponseError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/revenue", response_model=RevenueSummary)
async def revenue_api(
    period: int = Query(30, ge=1, le=365, description="Days"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    rates: ExchangeRates = Depends(get_exchange_rates),
    user: CurrentUser = Depends(require_permission("analytics", "read")),
):
    async with session_factory() as session:
        summary = await revenue_summary(
            session, rates, period_days=period, now=datetime.now(timezone.utc)
        )
    return RevenueSummary(**summary)


@router.get(
    "/insights",
    response_model=InsightsResponse,
    dependencies=[Depends(rate_limit("STANDARD"))],
)
async def insights_api(
    type: InsightType = Query("overview"),
    period: int = Query(30, ge=1, le=365),
    refresh: bool = Query(False, description="Bypass the cache"),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    rates: ExchangeRates = Depends(get_exchange_rates),
    cache: InsightsCache = Depends(get_insights_cache),
    generator: InsightsGenerator = Depends(get_insights_generator),
    user: CurrentUser = Depends(require_permission("insights", "read")),
):
    key = insights_cache_key(type, period)
    if not refresh:
        hit = await cache.get(key)
        if hit is not None:
            value, stored_at = hit
            return InsightsResponse(
                insights=InsightsPayload.model_validate(value),
                cached=True,
                generated_at=datetime.fromtimestamp(stored_at, tz=timezone.utc),
            )

    async with session_factory() as session:
        summary = await revenue_summary(
            session, rates, period_days=period, now=datetime.now(timezone.utc)
        )

    try:
        payload = await generator.generate(type, RevenueSummary(**summary).model_dump(mode="json"))
    except LLMResponseError as e:
        logger.warning("Insights generation failed: %s", e)
        raise HTTPException(status_code=502, detail=f"Insight generation failed: {e}") from e

    stored_at = await cache.set(key, payload.model_dump())
    return InsightsResponse(
        insights=payload,
        cached=False,
        generated_at=datetime.fromtimestamp(stored_at, tz=timezone.utc),
    )
