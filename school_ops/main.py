"""
School Ops: FastAPI Service

Lead intake, invoicing and idempotent lead-to-student conversion with a
full audit trail.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from starlette.exceptions import HTTPException as StarletteHTTPException

from school_ops.config import settings
from school_ops.db.session import init_db
from school_ops.routes import analytics, attempts, audit_logs, batches, invoices, leads, payments
from school_ops.services.cache import InMemoryInsightsCache
from school_ops.services.ratelimit import build_rate_limiters

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create missing tables before the first request; release Redis on shutdown."""
    await init_db()
    yield
    await app.state.redis.aclose()


app = FastAPI(
    title="School Ops API",
    description="Lead conversion, invoicing and payments for a language school.",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.redis = Redis.from_url(settings.redis_url, decode_responses=True)
app.state.rate_limiters = build_rate_limiters(app.state.redis)
app.state.insights_cache = InMemoryInsightsCache(ttl_seconds=settings.insights_cache_ttl_seconds)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error bodies always carry an "error" field ──────────────────────────────

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Validation failed", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


app.include_router(leads.router)
app.include_router(batches.router)
app.include_router(invoices.router)
app.include_router(payments.router)
app.include_router(attempts.router)
app.include_router(audit_logs.router)
app.include_router(analytics.router)


@app.get("/health", tags=["health"])
async def health():
    """Liveness check; does not touch the database."""
    return {"status": "ok"}
