"""Tenant dashboard API: content, conversations, analytics, credits, prompt, widget."""
from __future__ import annotations

import logging
import math
import uuid
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import func

from preik.db.base import db_session
from preik.db.models import (
    Conversation,
    DocumentModel,
    Tenant,
    TenantPrompt,
    TenantUserAccess,
    WidgetConfig,
    as_utc,
    utcnow,
)
from preik.db import persistence
from preik.models.types import AddContentRequest, CreditStatusOut, EditContentRequest, PromptUpdate, WidgetConfigUpdate
from preik.services.analytics import daily_volume, handled_rate, top_search_terms
from preik.services.audit import log_audit
from preik.services.auth import CurrentUser, get_current_user, require_tenant_access
from preik.services.credits import CreditStatus, get_credit_status
from preik.services.ingestion import IngestError, add_manual_content, replace_content
from preik.services.params import escape_like, safe_parse_int
from preik.services.tenants import build_default_prompt, with_guardrail

router = APIRouter()
logger = logging.getLogger(__name__)

SEARCH_MAX_LEN = 200
PRIVATE_CACHE = {"Cache-Control": "private, max-age=120, stale-while-revalidate=60"}


def _require_db() -> None:
    if not persistence.is_db_enabled():
        raise HTTPException(status_code=503, detail="Database not configured")


def _iso(dt) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt is not None else None


def credit_status_out(status: CreditStatus) -> CreditStatusOut:
    return CreditStatusOut(
        creditLimit=status.credit_limit,
        creditsUsed=status.credits_used,
        creditsRemaining=status.credits_remaining,
        percentUsed=status.percent_used,
        billingCycleStart=status.billing_cycle_start.isoformat(),
        billingCycleEnd=status.billing_cycle_end.isoformat(),
    )


def _pagination(page: int, limit: int, total: int) -> Dict:
    return {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit)}


def _doc_out(d: DocumentModel) -> Dict:
    return {"id": d.id, "content": d.content, "metadata": dict(d.doc_metadata or {}), "created_at": _iso(d.created_at)}


def conversation_out(c: Conversation) -> Dict:
    return {
        "id": c.id,
        "store_id": c.store_id,
        "session_id": c.session_id,
        "user_query": c.user_query,
        "ai_response": c.ai_response,
        "detected_intent": c.detected_intent,
        "was_handled": c.was_handled,
        "referred_to_email": c.referred_to_email,
        "metadata": dict(c.conv_metadata or {}),
        "created_at": _iso(c.created_at),
    }


# --- content ---

@router.get("/tenant/{tenant_id}/content")
def list_content(
    tenant_id: str,
    source: Optional[str] = None,
    grouped: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    search: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
):
    require_tenant_access(user, tenant_id)
    _require_db()

    if source:
        with db_session() as s:
            docs = (
                s.query(DocumentModel)
                .filter(DocumentModel.store_id == tenant_id, DocumentModel.source == source)
                .order_by(DocumentModel.created_at.asc(), DocumentModel.id.asc())
                .all()
            )
            body = {
                "success": True,
                "source": source,
                "title": (docs[0].doc_metadata or {}).get("title", "") if docs else "",
                "fullText": "\n\n".join(d.content for d in docs),
                "chunkCount": len(docs),
            }
        return JSONResponse(body, headers=PRIVATE_CACHE)

    if grouped == "true":
        groups: Dict[str, Dict] = {}
        with db_session() as s:
            docs = (
                s.query(DocumentModel)
                .filter(DocumentModel.store_id == tenant_id)
                .order_by(DocumentModel.created_at.desc())
                .all()
            )
            for d in docs:
                meta = d.doc_metadata or {}
                src = meta.get("source") or "unknown"
                if src in groups:
                    groups[src]["chunkCount"] += 1
                    continue
                groups[src] = {
                    "source": src,
                    "title": meta.get("title") or src,
                    "chunkCount": 1,
                    "preview": d.content[:200],
                    "isManual": bool(meta.get("manual")),
                    "createdAt": _iso(d.created_at),
                }
        return JSONResponse(
            {"success": True, "sources": list(groups.values()), "totalSources": len(groups)},
            headers=PRIVATE_CACHE,
        )

    page_n = safe_parse_int(page, 1, 1000)
    limit_n = safe_parse_int(limit, 50, 200)
    term = (search or "").strip()[:SEARCH_MAX_LEN]
    with db_session() as s:
        q = s.query(DocumentModel).filter(DocumentModel.store_id == tenant_id)
        if term:
            q = q.filter(DocumentModel.content.ilike(f"%{escape_like(term)}%", escape="\\"))
        total = q.count()
        rows = (
            q.order_by(DocumentModel.created_at.desc())
            .offset((page_n - 1) * limit_n)
            .limit(limit_n)
            .all()
        )
        documents = [_doc_out(d) for d in rows]
    return JSONResponse(
        {"success": True, "documents": documents, "pagination": _pagination(page_n, limit_n, total), "search": term},
        headers=PRIVATE_CACHE,
    )


@router.post("/tenant/{tenant_id}/content")
def add_content(tenant_id: str, req: AddContentRequest, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id, write=True)
    _require_db()
    if req.url and persistence.count_documents(tenant_id, source=req.url) > 0:
        raise HTTPException(
            status_code=409,
            detail="Innhold for denne URLen finnes allerede. Bruk rediger-funksjonen for å oppdatere.",
        )
    source = req.url or "manual"
    try:
        count = add_manual_content(tenant_id, req.text, source=source, title=req.title, added_by=user.id)
    except IngestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_audit(user.email or user.id, "create", "documents", tenant_id, {"chunks": count, "source": source})
    return {"success": True, "message": f"Lagret {count} deler", "chunksCount": count}


@router.patch("/tenant/{tenant_id}/content")
def edit_content(tenant_id: str, req: EditContentRequest, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id, write=True)
    _require_db()
    try:
        result = replace_content(tenant_id, req.source, req.text, title=req.title, edited_by=user.id)
    except IngestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    log_audit(user.email or user.id, "update", "documents", tenant_id, {"source": req.source, "chunks": result["chunks"]})
    return {"success": True, "message": f"Oppdatert med {result['chunks']} deler", "chunksCount": result["chunks"]}


@router.delete("/tenant/{tenant_id}/content")
def delete_content(
    tenant_id: str,
    source: Optional[str] = None,
    id: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
):
    require_tenant_access(user, tenant_id, write=True)
    _require_db()
    if source:
        deleted = persistence.delete_documents_by_source(tenant_id, source)
        if deleted == 0:
            raise HTTPException(status_code=404, detail="No documents found for this source")
        log_audit(user.email or user.id, "delete", "documents", tenant_id, {"source": source, "deletedCount": deleted})
        return {"success": True, "message": f"Slettet {deleted} deler", "deletedCount": deleted}

    if not id:
        raise HTTPException(status_code=400, detail="Document ID or source required")
    # Scoped to the tenant: ids of other tenants read as missing
    if persistence.delete_documents_by_ids(tenant_id, [id]) == 0:
        raise HTTPException(status_code=404, detail="Document not found")
    log_audit(user.email or user.id, "delete", "documents", tenant_id, {"id": id})
    return {"success": True, "message": "Document deleted"}


# --- conversations ---

def conversation_page(
    store_id: Optional[str],
    search: Optional[str],
    intent: Optional[str],
    was_handled: Optional[str],
    page: Optional[str],
    limit: Optional[str],
) -> Dict:
    """Newest-first page of conversations; `store_id=None` spans all tenants."""
    page_n = safe_parse_int(page, 1, 1000)
    limit_n = safe_parse_int(limit, 20, 100)
    term = (search or "").strip()[:SEARCH_MAX_LEN]
    with db_session() as s:
        q = s.query(Conversation)
        if store_id:
            q = q.filter(Conversation.store_id == store_id)
        if term:
            q = q.filter(Conversation.user_query.ilike(f"%{escape_like(term)}%", escape="\\"))
        if intent and intent != "all":
            q = q.filter(Conversation.detected_intent == intent)
        if was_handled == "true":
            q = q.filter(Conversation.was_handled.is_(True))
        elif was_handled == "false":
            q = q.filter(Conversation.was_handled.is_(False))
        total = q.count()
        rows = q.order_by(Conversation.created_at.desc()).offset((page_n - 1) * limit_n).limit(limit_n).all()
        conversations = [conversation_out(c) for c in rows]
    return {"conversations": conversations, "pagination": _pagination(page_n, limit_n, total)}


@router.get("/tenant/{tenant_id}/conversations")
def list_conversations(
    tenant_id: str,
    search: Optional[str] = None,
    intent: Optional[str] = None,
    wasHandled: Optional[str] = None,
    page: Optional[str] = None,
    limit: Optional[str] = None,
    user: CurrentUser = Depends(get_current_user),
):
    require_tenant_access(user, tenant_id)
    _require_db()
    return JSONResponse(
        conversation_page(tenant_id, search, intent, wasHandled, page, limit),
        headers={"Cache-Control": "private, max-age=60"},
    )


# --- credits ---

@router.get("/tenant/{tenant_id}/credits", response_model=CreditStatusOut)
def tenant_credits(tenant_id: str, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id)
    _require_db()
    status = get_credit_status(tenant_id)
    if status is None:
        raise HTTPException(status_code=500, detail="Could not fetch credit status")
    return credit_status_out(status)


# --- system prompt ---

@router.get("/tenant/{tenant_id}/prompt")
def get_prompt(tenant_id: str, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id)
    _require_db()
    with db_session() as s:
        custom = s.query(TenantPrompt).filter(TenantPrompt.tenant_id == tenant_id).one_or_none()
        if custom is not None:
            return {
                "systemPrompt": custom.system_prompt,
                "version": custom.version,
                "updatedAt": _iso(custom.updated_at),
                "isCustom": True,
            }
        t = s.get(Tenant, tenant_id)
        fallback = with_guardrail(build_default_prompt(t.name, t.persona or "", t.language or "no")) if t else ""
    return {"systemPrompt": fallback, "version": 0, "updatedAt": None, "isCustom": False}


@router.put("/tenant/{tenant_id}/prompt")
def put_prompt(tenant_id: str, req: PromptUpdate, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id, write=True)
    _require_db()
    if not req.systemPrompt.strip():
        raise HTTPException(status_code=400, detail="Invalid system prompt")
    with db_session() as s:
        existing = s.query(TenantPrompt).filter(TenantPrompt.tenant_id == tenant_id).one_or_none()
        if existing is not None:
            existing.system_prompt = req.systemPrompt
            existing.version = (existing.version or 0) + 1
            existing.updated_by = user.id
            existing.updated_at = utcnow()
            version = existing.version
        else:
            s.add(
                TenantPrompt(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    system_prompt=req.systemPrompt,
                    version=1,
                    updated_by=user.id,
                )
            )
            version = 1
    log_audit(user.email or user.id, "update", "tenant_prompt", tenant_id, {"version": version})
    return {"success": True, "version": version}


# --- analytics ---

@router.get("/tenant/{tenant_id}/stats")
def tenant_stats(tenant_id: str, days: Optional[str] = None, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id)
    _require_db()
    period = safe_parse_int(days, 30, 365)
    now = utcnow()
    since = now - timedelta(days=period)
    volume_since = now - timedelta(days=14)

    with db_session() as s:
        tenant = s.get(Tenant, tenant_id)
        if tenant is None:
            raise HTTPException(status_code=404, detail="Unknown tenant")
        tenant_name = tenant.name

        rows = (
            s.query(Conversation.was_handled, Conversation.referred_to_email, Conversation.detected_intent, Conversation.user_query)
            .filter(Conversation.store_id == tenant_id, Conversation.created_at >= since)
            .all()
        )
        unanswered = (
            s.query(Conversation)
            .filter(Conversation.store_id == tenant_id, Conversation.was_handled.is_(False))
            .order_by(Conversation.created_at.desc())
            .limit(20)
            .all()
        )
        unanswered_out = [
            {"id": c.id, "created_at": _iso(c.created_at), "user_query": c.user_query, "ai_response": c.ai_response}
            for c in unanswered
        ]
        volume_dates = [
            as_utc(ts).date()
            for (ts,) in s.query(Conversation.created_at)
            .filter(Conversation.store_id == tenant_id, Conversation.created_at >= volume_since)
            .all()
        ]
        document_count = (
            s.query(func.count(DocumentModel.id)).filter(DocumentModel.store_id == tenant_id).scalar() or 0
        )

    handled = sum(1 for r in rows if r.was_handled)
    stats = {
        "total_conversations": len(rows),
        "handled_count": handled,
        "unhandled_count": len(rows) - handled,
        "email_referrals": sum(1 for r in rows if r.referred_to_email),
        "product_queries": sum(1 for r in rows if r.detected_intent == "product_query"),
        "support_queries": sum(1 for r in rows if r.detected_intent == "support"),
        "handled_rate": handled_rate(handled, len(rows)),
    }
    credits = get_credit_status(tenant_id)
    body = {
        "success": True,
        "tenantId": tenant_id,
        "tenantName": tenant_name,
        "period": f"{period} days",
        "stats": stats,
        "topSearchTerms": top_search_terms(r.user_query for r in rows),
        "unansweredQueries": unanswered_out,
        "dailyVolume": daily_volume(volume_dates, now.date()),
        "documentCount": int(document_count),
        "credits": credit_status_out(credits).model_dump() if credits else None,
    }
    return JSONResponse(body, headers={"Cache-Control": "private, max-age=60, stale-while-revalidate=30"})


# --- widget config ---

@router.get("/tenant/{tenant_id}/widget-config")
def get_widget_config(tenant_id: str, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id)
    _require_db()
    with db_session() as s:
        row = s.get(WidgetConfig, tenant_id)
        body = {"config": dict(row.config or {}), "updatedAt": _iso(row.updated_at)} if row else {"config": None}
    return JSONResponse(body, headers={"Cache-Control": "private, max-age=60"})


@router.put("/tenant/{tenant_id}/widget-config")
def put_widget_config(tenant_id: str, req: WidgetConfigUpdate, user: CurrentUser = Depends(get_current_user)):
    require_tenant_access(user, tenant_id, write=True)
    _require_db()
    with db_session() as s:
        row = s.get(WidgetConfig, tenant_id)
        if row is None:
            s.add(WidgetConfig(tenant_id=tenant_id, config=req.config, updated_by=user.id))
        else:
            row.config = req.config
            row.updated_by = user.id
            row.updated_at = utcnow()
    log_audit(user.email or user.id, "update", "widget_config", tenant_id)
    return {"success": True}


# --- memberships ---

@router.get("/user/tenants")
def user_tenants(user: CurrentUser = Depends(get_current_user)):
    _require_db()
    with db_session() as s:
        rows = (
            s.query(Tenant, TenantUserAccess.role)
            .join(TenantUserAccess, TenantUserAccess.tenant_id == Tenant.id)
            .filter(TenantUserAccess.user_id == user.id)
            .order_by(Tenant.id.asc())
            .all()
        )
        tenants: List[Dict] = [
            {"id": t.id, "name": t.name or t.id, "role": role, "persona": t.persona or None} for t, role in rows
        ]
    return {"tenants": tenants}
