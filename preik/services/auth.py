"""Dashboard authentication: bearer JWTs issued by the auth provider (HS256).

Super admins come from SUPER_ADMIN_EMAILS; everyone else needs a row in
tenant_user_access for the tenant they touch.
"""
from __future__ import annotations

import logging
import os
from typing import List, Optional

import jwt
from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from preik.db.base import db_session
from preik.db.models import TenantUserAccess
from preik.db.persistence import is_db_enabled
from preik.services.ratelimit import RATE_LIMITS, check_rate_limit, rate_limit_headers

logger = logging.getLogger(__name__)

JWT_AUDIENCE = "authenticated"


class CurrentUser(BaseModel):
    id: str
    email: str = ""


def _email_list(name: str) -> List[str]:
    return [e.strip().lower() for e in os.getenv(name, "").split(",") if e.strip()]


def is_super_admin(email: Optional[str]) -> bool:
    return bool(email) and email.lower() in _email_list("SUPER_ADMIN_EMAILS")


def is_admin_email(email: Optional[str]) -> bool:
    return is_super_admin(email) or (bool(email) and email.lower() in _email_list("ADMIN_EMAILS"))


def decode_token(token: str) -> CurrentUser:
    secret = os.getenv("SUPABASE_JWT_SECRET", "")
    if not secret:
        raise HTTPException(status_code=503, detail="Authentication is not configured")
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"], audience=JWT_AUDIENCE)
    except jwt.PyJWTError as e:
        logger.info("auth: rejected token: %s", e)
        raise HTTPException(status_code=401, detail="Not authenticated")
    sub = claims.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return CurrentUser(id=str(sub), email=str(claims.get("email") or "").lower())


def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return decode_token(token.strip())


def require_super_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not is_super_admin(user.email):
        raise HTTPException(status_code=403, detail="Not authorized")
    return user


def admin_rate_limited(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    rl = check_rate_limit(f"admin:{user.id}", RATE_LIMITS["admin"])
    if not rl.allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many requests",
            headers=rate_limit_headers(rl),
        )
    return user


def tenant_role(user: CurrentUser, tenant_id: str) -> Optional[str]:
    """`admin`, `viewer` or None. Super admins are admins everywhere."""
    if is_super_admin(user.email):
        return "admin"
    if not is_db_enabled():
        return None
    with db_session() as s:
        row = (
            s.query(TenantUserAccess.role)
            .filter(TenantUserAccess.user_id == user.id, TenantUserAccess.tenant_id == tenant_id)
            .one_or_none()
        )
    return row[0] if row else None


def require_tenant_access(user: CurrentUser, tenant_id: str, *, write: bool = False) -> str:
    role = tenant_role(user, tenant_id)
    if role is None:
        raise HTTPException(status_code=403, detail="No access to this tenant")
    if write and role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")
    return role


def require_any_tenant_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Super admin, or admin on at least one tenant."""
    if is_super_admin(user.email):
        return user
    if is_db_enabled():
        with db_session() as s:
            found = (
                s.query(TenantUserAccess.id)
                .filter(TenantUserAccess.user_id == user.id, TenantUserAccess.role == "admin")
                .first()
            )
        if found is not None:
            return user
    raise HTTPException(status_code=403, detail="Not authorized")


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Super admin or a listed admin (overview pages only)."""
    if not is_admin_email(user.email):
        raise HTTPException(status_code=403, detail="Not authorized")
    return user
