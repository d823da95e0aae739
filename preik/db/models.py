from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects.postgresql import JSONB

EMBED_DIM = 1536

# JSONB on Postgres (indexable `metadata->>'source'`), plain JSON elsewhere
JsonType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    allowed_domains: Mapped[list] = mapped_column(JsonType, default=list)
    language: Mapped[str] = mapped_column(String(8), default="no")
    persona: Mapped[str] = mapped_column(Text, default="")
    features: Mapped[dict] = mapped_column(JsonType, default=dict)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credit_limit: Mapped[int] = mapped_column(Integer, default=1000)
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    billing_cycle_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    # "80" or "100": highest warning email already sent this cycle
    last_credit_warning: Mapped[str | None] = mapped_column(String(8), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class TenantUserAccess(Base):
    __tablename__ = "tenant_user_access"
    __table_args__ = (UniqueConstraint("user_id", "tenant_id", name="uq_tenant_user_access"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    # Email at grant time; the auth provider owns the account itself
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    role: Mapped[str] = mapped_column(String(16), default="viewer")  # admin/viewer
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class TenantPrompt(Base):
    __tablename__ = "tenant_prompts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), unique=True)
    system_prompt: Mapped[str] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, default=1)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=func.now())


class WidgetConfig(Base):
    __tablename__ = "widget_config"

    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True)
    config: Mapped[dict] = mapped_column(JsonType, default=dict)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=func.now())


class DocumentModel(Base):
    """One embedded chunk of tenant content."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    content: Mapped[str] = mapped_column(Text)
    # {"source": url | "manual", "title": str, "manual": bool, "added_by": user_id}
    doc_metadata: Mapped[dict] = mapped_column("metadata", JsonType, default=dict)
    # Mirrors metadata.source so per-source lookups stay portable and indexed
    source: Mapped[str] = mapped_column(Text, index=True)
    checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)
    embedding: Mapped[Vector] = mapped_column(Vector(EMBED_DIM))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(100), index=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_query: Mapped[str] = mapped_column(Text)
    ai_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    detected_intent: Mapped[str] = mapped_column(String(32), default="unknown")  # product_query/support/general/unknown
    was_handled: Mapped[bool] = mapped_column(Boolean, default=True)
    referred_to_email: Mapped[bool] = mapped_column(Boolean, default=False)
    conv_metadata: Mapped[dict] = mapped_column("metadata", JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)


class CreditUsageLog(Base):
    __tablename__ = "credit_usage_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), index=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    credits_consumed: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor_email: Mapped[str] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(64), index=True)
    entity_type: Mapped[str] = mapped_column(String(64))
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    details: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
