from __future__ import annotations

import json
import math
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse, Response
from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError

from preik.db.base import db_session
from preik.db.models import (
    AuditLog,
    Conversation,
    CreditUsageLog,
    DocumentModel,
    Tenant,
    TenantPrompt,
    TenantUserAccess,
    WidgetConfig,
    as_utc,
    utcnow,
)
from preik.db.persistence import is_db_enabled
from preik.models.types import AccessGrant, AccessRevoke, TenantCreate, TenantUpdate
from preik.routes.tenant import conversation_out, conversation_page
from preik.services.audit import log_audit
from preik.services.auth import (
    CurrentUser,
    admin_rate_limited,
    require_admin,
    require_super_admin,
    require_tenant_access,
)
from preik.services.credits import reset_credits, usage_percent
from preik.services.params import safe_parse_int
from preik.services.tenants import is_valid_store_id

router = APIRouter(dependencies=[Depends(admin_rate_limited)])

DEFAULT_FEATURES = {"synonymMapping": False, "codeBlockFormatting": False, "boatExpertise": False}
AUDIT_PAGE_SIZE = 30
NEAR_LIMIT_PERCENT = 80

# Rows removed with a tenant; Conversation has no foreign key but belongs to it too
_TENANT_OWNED = (
    ("memberships", TenantUserAccess, TenantUserAccess.tenant_id),
    ("prompts", TenantPrompt, TenantPrompt.tenant_id),
    ("widgetConfig", WidgetConfig, WidgetConfig.tenant_id),
    ("documents", DocumentModel, DocumentModel.store_id),
    ("creditUsage", CreditUsageLog, CreditUsageLog.tenant_id),
    ("conversations", Conversation, Conversation.store_id),
)


def _require_db() -> None:
    if not is_db_enabled():
        raise HTTPException(status_code=503, detail="Database not configured")


def _iso(dt) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt is not None else None


def _tenant_out(t: Tenant) -> Dict:
    return {
        "id": t.id,
        "name": t.name,
        "allowed_domains": list(t.allowed_domains or []),
        "language": t.language,
        "persona": t.persona,
        "features": dict(t.features or {}),
        "contact_email": t.contact_email,
        "credit_limit": t.credit_limit,
        "credits_used": t.credits_used,
        "billing_cycle_start": _iso(t.billing_cycle_start),
        "last_credit_warning": t.last_credit_warning,
        "created_at": _iso(t.created_at),
    }


@router.get("/admin/tenants")
def list_tenants(user: CurrentUser = Depends(require_super_admin)) -> Dict:
    _require_db()
    with db_session() as s:
        rows = s.query(Tenant).order_by(Tenant.created_at.desc(), Tenant.id.asc()).all()
        return {"tenants": [_tenant_out(t) for t in rows]}


@router.post("/admin/tenants", status_code=201)
def create_tenant(req: TenantCreate, user: CurrentUser = Depends(require_super_admin)) -> Dict:
    _require_db()
    if not req.name.strip():
        raise HTTPException(status_code=400, detail="ID and name are required")
    if not is_valid_store_id(req.id):
        raise HTTPException(status_code=400, detail="ID must be lowercase alphanumeric with hyphens only")

    values = dict(
        id=req.id,
        name=req.name,
        allowed_domains=req.allowed_domains,
        language=req.language or "no",
        persona=req.persona or "",
        features=dict(DEFAULT_FEATURES),
        contact_email=req.contact_email,
    )
    if req.credit_limit is not None:
        values["credit_limit"] = req.credit_limit
    try:
        with db_session() as s:
            if s.get(Tenant, req.id) is not None:
                raise HTTPException(status_code=409, detail="Tenant ID already exists")
            tenant = Tenant(**values)
            s.add(tenant)
            s.flush()
            out = _tenant_out(tenant)
    except IntegrityError:
        # Lost a race with a concurrent create
        raise HTTPException(status_code=409, detail="Tenant ID already exists")
    log_audit(user.email, "create", "tenant", req.id, {"name": req.name})
    return {"tenant": out}


@router.patch("/admin/tenants/{tenant_id}")
def update_tenant(tenant_id: str, req: TenantUpdate, user: CurrentUser = Depends(require_super_admin)) -> Dict:
    _require_db()
    updates = req.model_dump(exclude_unset=True)
    with db_session() as s:
        tenant = s.get(Tenant, tenant_id)
        if tenant is None:
            raise HTTPException(status_code=404, detail="Tenant not found")
        for key, value in updates.items():
            if key == "features" and value is not None:
                value = {**(tenant.features or {}), **value}
            setattr(tenant, key, value)
        s.flush()
        out = _tenant_out(tenant)
    log_audit(user.email, "update", "tenant", tenant_id, {"fields": sorted(updates)})
    return {"tenant": out}


@router.post("/admin/tenants/{tenant_id}/reset-credits")
def admin_reset_credits(tenant_id: str, user: CurrentUser = Depends(require_super_admin)) -> Dict:
    _require_db()
    if not reset_credits(tenant_id):
        raise HTTPException(status_code=404, detail="Tenant not found or reset failed")
    log_audit(user.email, "reset_credits", "tenant", tenant_id)
    return {"success": True}


@router.delete("/admin/tenants/{tenant_id}")
def delete_tenant(tenant_id: str, user: CurrentUser = Depends(require_super_admin)) -> Dict:
    """Remove a tenant and everything stored under it, in one transaction."""
    _require_db()
    with db_session() as s:
        if s.get(Tenant, tenant_id) is None:
            raise HTTPException(status_code=404, detail="Tenant not found")
        removed = {}
        for name, model, column in _TENANT_OWNED:
            removed[name] = s.execute(delete(model).where(column == tenant_id)).rowcount or 0
        s.execute(delete(Tenant).where(Tenant.id == tenant_id))
    log_audit(user.email, "delete", "tenant", tenant_id, removed)
    return {"success": True}


@router.get("/admin/credit-log")
def credit_log(
    tenantId: Optional[str] = None,
    days: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    user: CurrentUser = Depends(admin_rate_limited),
):
    if not tenantId:
        raise HTTPException(status_code=400, detail="tenantId is required")
    require_tenant_access(user, tenantId, write=True)
    _require_db()
    days_n = safe_parse_int(days, 30, 365)
    page_n = safe_parse_int(page, 1, 1000)
    limit_n = safe_parse_int(limit, 50, 200)
    cutoff = utcnow() - timedelta(days=days_n)
    with db_session() as s:
        q = s.query(CreditUsageLog).filter(CreditUsageLog.tenant_id == tenantId, CreditUsageLog.created_at >= cutoff)
        total = q.count()
        rows = q.order_by(CreditUsageLog.created_at.desc()).offset((page_n - 1) * limit_n).limit(limit_n).all()
        logs = [
            {
                "id": r.id,
                "tenant_id": r.tenant_id,
                "session_id": r.session_id,
                "credits_consumed": r.credits_consumed,
                "created_at": _iso(r.created_at),
            }
            for r in rows
        ]
    return JSONResponse(
        {
            "logs": logs,
            "pagination": {"page": page_n, "limit": limit_n, "total": total, "totalPages": math.ceil(total / limit_n)},
        },
        headers={"Cache-Control": "private, max-age=60, stale-while-revalidate=30"},
    )


@router.get("/admin/audit-log")
def audit_log(
    page: Optional[str] = None,
    action: Optional[str] = None,
    entityType: Optional[str] = None,
    user: CurrentUser = Depends(require_super_admin),
):
    _require_db()
    page_n = safe_parse_int(page, 1, 1000)
    with db_session() as s:
        q = s.query(AuditLog)
        if action:
            q = q.filter(AuditLog.action == action)
        if entityType:
            q = q.filter(AuditLog.entity_type == entityType)
        total = q.count()
        rows = (
            q.order_by(AuditLog.created_at.desc())
            .offset((page_n - 1) * AUDIT_PAGE_SIZE)
            .limit(AUDIT_PAGE_SIZE)
            .all()
        )
        entries = [
            {
                "id": r.id,
                "actor_email": r.actor_email,
                "action": r.action,
                "entity_type": r.entity_type,
                "entity_id": r.entity_id,
                "details": r.details or {},
                "created_at": _iso(r.created_at),
            }
            for r in rows
        ]
    return JSONResponse(
        {"entries": entries, "total": total, "page": page_n, "totalPages": math.ceil(total / AUDIT_PAGE_SIZE)},
        headers={"Cache-Control": "private, max-age=30"},
    )


@router.get("/admin/overview")
def overview(user: CurrentUser = Depends(require_admin)) -> Dict:
    _require_db()
    since = utcnow() - timedelta(days=30)
    with db_session() as s:
        tenants = s.query(Tenant).order_by(Tenant.id.asc()).all()
        document_count = s.query(func.count(DocumentModel.id)).scalar() or 0
        conversation_count = s.query(func.count(Conversation.id)).filter(Conversation.created_at >= since).scalar() or 0
        active = (
            s.query(Conversation.store_id, func.count(Conversation.id).label("n"))
            .filter(Conversation.created_at >= since)
            .group_by(Conversation.store_id)
            .order_by(func.count(Conversation.id).desc(), Conversation.store_id.asc())
            .limit(10)
            .all()
        )
        names = {t.id: t.name for t in tenants}
        near_limit: List[Dict] = []
        for t in tenants:
            limit = int(t.credit_limit or 0)
            used = int(t.credits_used or 0)
            percent = usage_percent(used, limit)
            if limit > 0 and percent >= NEAR_LIMIT_PERCENT:
                near_limit.append({"id": t.id, "name": t.name, "creditsUsed": used, "creditLimit": limit, "percentUsed": percent})
        stats = {
            "totalTenants": len(tenants),
            "totalDocuments": int(document_count),
            "conversationsLast30Days": int(conversation_count),
            "creditsUsedThisCycle": sum(int(t.credits_used or 0) for t in tenants),
        }
    return {
        "stats": stats,
        "activeTenants": [{"id": sid, "name": names.get(sid, sid), "conversations": int(n)} for sid, n in active],
        "nearLimit": near_limit,
    }


# --- memberships ---

def _membership_out(a: TenantUserAccess, tenant_names: Dict[str, str]) -> Dict:
    return {"tenant_id": a.tenant_id, "tenant_name": tenant_names.get(a.tenant_id, a.tenant_id), "role": a.role}


@router.get("/admin/users")
def list_users(search: Optional[str] = None, user: CurrentUser = Depends(require_super_admin)) -> Dict:
    """Everyone holding a tenant membership, with their memberships."""
    _require_db()
    term = (search or "").strip().lower()
    with db_session() as s:
        names = dict(s.query(Tenant.id, Tenant.name).all())
        grants = s.query(TenantUserAccess).order_by(TenantUserAccess.user_id.asc(), TenantUserAccess.tenant_id.asc()).all()
        users: Dict[str, Dict] = {}
        for a in grants:
            entry = users.setdefault(a.user_id, {"id": a.user_id, "email": "", "memberships": []})
            entry["email"] = entry["email"] or (a.user_email or "")
            entry["memberships"].append(_membership_out(a, names))
    out = sorted(users.values(), key=lambda u: (u["email"], u["id"]))
    if term:
        out = [u for u in out if term in u["email"].lower()]
    return {"users": out}


@router.post("/admin/users", status_code=201)
def grant_access(req: AccessGrant, user: CurrentUser = Depends(require_super_admin)) -> Dict:
    _require_db()
    try:
        with db_session() as s:
            if s.get(Tenant, req.tenantId) is None:
                raise HTTPException(status_code=404, detail="Tenant not found")
            existing = (
                s.query(TenantUserAccess.id)
                .filter(TenantUserAccess.user_id == req.userId, TenantUserAccess.tenant_id == req.tenantId)
                .first()
            )
            if existing is not None:
                raise HTTPException(status_code=409, detail="User already has access to this tenant")
            s.add(
                TenantUserAccess(
                    id=str(uuid.uuid4()),
                    user_id=req.userId,
                    user_email=req.email.strip().lower() or None,
                    tenant_id=req.tenantId,
                    role=req.role,
                )
            )
    except IntegrityError:
        raise HTTPException(status_code=409, detail="User already has access to this tenant")
    log_audit(user.email, "grant_access", "user", req.userId, {"tenantId": req.tenantId, "role": req.role})
    return {"user": {"id": req.userId, "email": req.email}, "tenantId": req.tenantId, "role": req.role}


@router.delete("/admin/users/{user_id}/access")
def revoke_access(user_id: str, req: AccessRevoke, user: CurrentUser = Depends(require_super_admin)) -> Dict:
    _require_db()
    with db_session() as s:
        removed = s.execute(
            delete(TenantUserAccess).where(TenantUserAccess.user_id == user_id, TenantUserAccess.tenant_id == req.tenantId)
        ).rowcount
    if not removed:
        raise HTTPException(status_code=404, detail="Access not found")
    log_audit(user.email, "revoke_access", "user", user_id, {"tenantId": req.tenantId})
    return {"success": True, "message": "Tilgang fjernet"}


@router.get("/admin/my-tenants")
def my_tenants(user: CurrentUser = Depends(require_admin)) -> Dict:
    """Tenant picker for the analytics views; every listed admin sees all tenants."""
    _require_db()
    with db_session() as s:
        rows = s.query(Tenant.id, Tenant.name).order_by(Tenant.name.asc(), Tenant.id.asc()).all()
    return {"tenants": [{"id": tid, "name": name} for tid, name in rows]}


# --- cross-tenant views ---

@router.get("/admin/conversations")
def all_conversations(
    storeId: Optional[str] = None,
    search: Optional[str] = None,
    intent: Optional[str] = None,
    wasHandled: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    user: CurrentUser = Depends(require_super_admin),
) -> Dict:
    _require_db()
    return conversation_page(storeId, search, intent, wasHandled, page, limit)


@router.get("/admin/export/{tenant_id}")
def export_tenant(tenant_id: str, user: CurrentUser = Depends(require_super_admin)):
    """Everything stored for one tenant as a downloadable JSON document (GDPR access requests)."""
    _require_db()
    with db_session() as s:
        tenant = s.get(Tenant, tenant_id)
        if tenant is None:
            raise HTTPException(status_code=404, detail="Tenant not found")
        conversations = (
            s.query(Conversation).filter(Conversation.store_id == tenant_id).order_by(Conversation.created_at.desc()).all()
        )
        documents = (
            s.query(DocumentModel)
            .filter(DocumentModel.store_id == tenant_id)
            .order_by(DocumentModel.created_at.asc(), DocumentModel.id.asc())
            .all()
        )
        prompts = s.query(TenantPrompt).filter(TenantPrompt.tenant_id == tenant_id).all()
        usage = (
            s.query(CreditUsageLog)
            .filter(CreditUsageLog.tenant_id == tenant_id)
            .order_by(CreditUsageLog.created_at.desc())
            .all()
        )
        widget = s.get(WidgetConfig, tenant_id)
        data = {
            "exportedAt": utcnow().isoformat(),
            "exportedBy": user.email,
            "tenant": _tenant_out(tenant),
            "conversations": [conversation_out(c) for c in conversations],
            "documents": [
                {"id": d.id, "content": d.content, "metadata": dict(d.doc_metadata or {}), "created_at": _iso(d.created_at)}
                for d in documents
            ],
            "prompts": [
                {
                    "id": p.id,
                    "system_prompt": p.system_prompt,
                    "version": p.version,
                    "updated_by": p.updated_by,
                    "updated_at": _iso(p.updated_at),
                }
                for p in prompts
            ],
            "creditUsage": [
                {
                    "id": r.id,
                    "session_id": r.session_id,
                    "credits_consumed": r.credits_consumed,
                    "created_at": _iso(r.created_at),
                }
                for r in usage
            ],
            "widgetConfig": dict(widget.config or {}) if widget is not None else None,
        }
    log_audit(
        user.email,
        "export",
        "tenant",
        tenant_id,
        {"conversations": len(data["conversations"]), "documents": len(data["documents"])},
    )
    filename = f"preik-export-{tenant_id}-{data['exportedAt'][:10]}.json"
    return Response(
        content=json.dumps(data, ensure_ascii=False, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
