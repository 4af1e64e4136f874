"""
Bearer-token authentication and role-based permissions.

Tokens are HS256 JWTs carrying sub, email, name and role.
"""

from dataclasses import dataclass
from typing import Literal

import jwt

from school_ops.config import settings

Role = Literal["FOUNDER", "MARKETING", "TEACHER"]
Action = Literal["read", "create", "update", "delete"]

ROLES = ("FOUNDER", "MARKETING", "TEACHER")


@dataclass(frozen=True, slots=True)
class CurrentUser:
    id: str
    email: str | None
    name: str | None
    role: str


class AuthError(Exception):
    """Token missing, malformed, expired or carrying an unknown role."""


def _perms(read: bool, create: bool, update: bool, delete: bool) -> dict[str, bool]:
    return {"read": read, "create": create, "update": update, "delete": delete}


ALL = _perms(True, True, True, True)
NONE = _perms(False, False, False, False)
READ_ONLY = _perms(True, False, False, False)

PERMISSIONS: dict[str, dict[str, dict[str, bool]]] = {
    "FOUNDER": {
        "students": ALL,
        "batches": ALL,
        "payments": ALL,
        "leads": ALL,
        "invoices": ALL,
        "analytics": ALL,
        "insights": ALL,
        "audit_logs": ALL,
    },
    "MARKETING": {
        "students": _perms(True, True, True, False),
        "batches": _perms(True, True, True, False),
        "payments": NONE,
        "leads": ALL,
        "invoices": _perms(True, True, False, False),
        "analytics": READ_ONLY,
        "insights": READ_ONLY,
        "audit_logs": NONE,
    },
    "TEACHER": {
        "students": _perms(True, False, True, False),
        "batches": READ_ONLY,
        "payments": NONE,
        "leads": NONE,
        "invoices": NONE,
        "analytics": NONE,
        "insights": NONE,
        "audit_logs": NONE,
    },
}


def has_permission(role: str, resource: str, action: str) -> bool:
    resource_perms = PERMISSIONS.get(role, {}).get(resource)
    if not resource_perms:
        return False
    return resource_perms.get(action, False)


def decode_token(token: str) -> CurrentUser:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        raise AuthError(str(e)) from e

    role = claims.get("role")
    sub = claims.get("sub")
    if not sub or role not in ROLES:
        raise AuthError("Token is missing subject or role")
    return CurrentUser(
        id=str(sub),
        email=claims.get("email"),
        name=claims.get("name"),
        role=role,
    )


def issue_token(user_id: str, role: str, email: str | None = None, name: str | None = None) -> str:
    """Mint a token; used by ops scripts and tests."""
    claims = {"sub": user_id, "role": role}
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
