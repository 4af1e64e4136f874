"""
Audit log sink.

Every entry is written in its own session, after the business transaction
has committed or rolled back. A failing audit write is logged and never
fails the request that triggered it.
"""

import logging
from typing import Any

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.config import settings
from school_ops.db.models import AuditLog
from school_ops.db.repository import create_audit_log
from school_ops.services.auth import CurrentUser

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {
    "password",
    "pass",
    "secret",
    "token",
    "apikey",
    "api_key",
    "authorization",
    "authorizationheader",
    "dsn",
}
MAX_DEPTH = 3


def sanitize_metadata(value: Any, depth: int = 0) -> Any:
    """Redact secrets and truncate deep nesting before persisting."""
    if value is None:
        return None
    if depth > MAX_DEPTH:
        return "[Truncated]"
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if str(key).lower() in SENSITIVE_KEYS:
                out[key] = "[REDACTED]" if isinstance(item, str) and item else None
            else:
                out[key] = sanitize_metadata(item, depth + 1)
        return out
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(v, depth + 1) for v in value]
    if isinstance(value, (str, int, float, bool)):
        return value
    # Decimal, datetime, UUID...
    return str(value)


def client_ip(request: Request) -> str | None:
    """Caller address; proxy headers count only when trust_proxy_headers is set."""
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        proxied = request.headers.get("x-real-ip") or request.headers.get("cf-connecting-ip")
        if proxied:
            return proxied
    return request.client.host if request.client else None


class AuditLogger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        action: str,
        description: str,
        *,
        severity: str = "INFO",
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict | None = None,
        request: Request | None = None,
        user: CurrentUser | None = None,
        error: BaseException | None = None,
    ) -> AuditLog | None:
        fields: dict[str, Any] = {
            "action": action,
            "severity": severity,
            "description": description,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "metadata_json": sanitize_metadata(metadata) if metadata else None,
            "error_message": str(error) if error is not None else None,
        }
        if user is not None:
            fields["user_id"] = user.id
            fields["user_email"] = user.email
        if request is not None:
            fields["ip_address"] = client_ip(request)
            fields["user_agent"] = request.headers.get("user-agent")
            fields["request_path"] = request.url.path
            fields["request_method"] = request.method

        try:
            async with self.session_factory() as session:
                entry = await create_audit_log(session, **fields)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to write audit log %s: %s", action, description)
            return None

        logger.debug("audit %s [%s] %s", action, severity, description)
        return entry

    async def log_success(self, action: str, description: str, **options) -> AuditLog | None:
        return await self.record(action, description, severity="INFO", **options)

    async def log_warning(self, action: str, description: str, **options) -> AuditLog | None:
        return await self.record(action, description, severity="WARNING", **options)

    async def log_error(
        self, action: str, description: str, error: BaseException, **options
    ) -> AuditLog | None:
        return await self.record(action, description, severity="ERROR", error=error, **options)

    async def log_critical(
        self, action: str, description: str, error: BaseException, **options
    ) -> AuditLog | None:
        return await self.record(action, description, severity="CRITICAL", error=error, **options)
