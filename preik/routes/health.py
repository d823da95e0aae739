import os
from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from preik.db import base as db_base
from preik.db.models import Conversation, DocumentModel, Tenant

router = APIRouter()

_COUNTED = {"tenants": Tenant, "documents": DocumentModel, "conversations": Conversation}


@router.get("/health")
def health():
    """Liveness check; version is the short commit hash when deployed."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": os.getenv("APP_VERSION", "")[:7] or "dev",
    }


@router.get("/health/db")
def health_db():
    wiring = {
        "env_present": bool(os.getenv("DATABASE_URL", "").strip()),
        "engine_initialized": db_base.engine is not None,
        "session_initialized": db_base.SessionLocal is not None,
    }
    if db_base.SessionLocal is None:
        return {"db": "disabled", **wiring}
    try:
        with db_base.db_session() as s:
            counts = {name: s.scalar(select(func.count()).select_from(model)) for name, model in _COUNTED.items()}
    except SQLAlchemyError as e:
        return {"db": "error", "error": type(e).__name__, **wiring}
    return {"db": "ok", "dialect": db_base.engine.dialect.name, "counts": counts, **wiring}
