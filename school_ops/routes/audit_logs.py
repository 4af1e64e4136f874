"""/audit-logs: read access to the audit trail."""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from school_ops.db.repository import list_audit_logs
from school_ops.db.session import get_session_factory
from school_ops.deps import require_permission
from school_ops.schemas.common import CamelModel
from school_ops.services.auth import CurrentUser

router = APIRouter(prefix="/audit-logs", tags=["audit-logs"])


class AuditLogOut(CamelModel):
    id: str
    action: str
    severity: str
    description: str
    user_id: Optional[str]
    user_email: Optional[str]
    ip_address: Optional[str]
    request_path: Optional[str]
    request_method: Optional[str]
    entity_type: Optional[str]
    entity_id: Optional[str]
    metadata: Optional[dict[str, Any]] = Field(None, validation_alias="metadata_json")
    error_message: Optional[str]
    created_at: datetime


@router.get("", response_model=list[AuditLogOut])
async def list_audit_logs_api(
    severity: Optional[str] = Query(None, description="INFO | WARNING | ERROR | CRITICAL"),
    action: Optional[str] = Query(None),
    entity_type: Optional[str] = Query(None, alias="entityType"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    limit: int = Query(100, ge=1, le=500),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    user: CurrentUser = Depends(require_permission("audit_logs", "read")),
):
    async with session_factory() as session:
        return await list_audit_logs(
            session,
            severity=severity,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
        )
