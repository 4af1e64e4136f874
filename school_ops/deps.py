"""
FastAPI dependencies: collaborators are resolved here so tests can swap
them through app.dependency_overrides.
"""

import time

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.config import settings
from school_ops.db.session import get_session_factory
from school_ops.services.audit import AuditLogger, client_ip
from school_ops.services.auth import AuthError, CurrentUser, decode_token, has_permission
from school_ops.services.cache import InsightsCache
from school_ops.services.currency import ExchangeRates, FixedExchangeRates
from school_ops.services.insights import InsightsGenerator

_bearer = HTTPBearer(auto_error=False)


def get_audit_logger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AuditLogger:
    return AuditLogger(session_factory)


def get_exchange_rates() -> ExchangeRates:
    return FixedExchangeRates(settings.eur_to_inr_rate)


def get_insights_cache(request: Request) -> InsightsCache:
    return request.app.state.insights_cache


def get_insights_generator() -> InsightsGenerator:
    return InsightsGenerator(settings)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> CurrentUser:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return decode_token(credentials.credentials)
    except AuthError:
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_permission(resource: str, action: str):
    async def checker(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not has_permission(user.role, resource, action):
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return checker


def rate_limit(name: str):
    """Short-circuits the request with 429 before any route logic runs."""

    async def limiter(request: Request) -> None:
        identifier = client_ip(request) or "unknown"
        decision = await request.app.state.rate_limiters[name].hit(f"{identifier}:{request.url.path}")
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "Too many requests",
                    "message": f"Rate limit exceeded. Try again in {decision.retry_after} seconds.",
                    "retryAfter": decision.retry_after,
                },
                headers={
                    "Retry-After": str(decision.retry_after),
                    "X-RateLimit-Limit": str(decision.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(int(time.time()) + decision.retry_after),
                },
            )

    return limiter
