"""initial schema: tenants, documents, conversations, credits, audit

Revision ID: 20260301_initial_schema
Revises: 
Create Date: 2026-03-01 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision = '20260301_initial_schema'
down_revision = None
branch_labels = None
depends_on = None

EMBED_DIM = 1536


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(length=100), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("allowed_domains", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("language", sa.String(length=8), nullable=False, server_default="no"),
        sa.Column("persona", sa.Text(), nullable=False, server_default=""),
        sa.Column("features", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("contact_email", sa.String(length=255), nullable=True),
        sa.Column("credit_limit", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billing_cycle_start", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_credit_warning", sa.String(length=8), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "tenant_user_access",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="viewer"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "tenant_id", name="uq_tenant_user_access"),
    )
    op.create_index("ix_tenant_user_access_user_id", "tenant_user_access", ["user_id"])
    op.create_index("ix_tenant_user_access_tenant_id", "tenant_user_access", ["tenant_id"])

    op.create_table(
        "tenant_prompts",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("system_prompt", sa.Text(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_by", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "widget_config",
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("config", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("updated_by", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "documents",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("store_id", sa.String(length=100), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("embedding", Vector(EMBED_DIM), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_documents_store_id", "documents", ["store_id"])
    op.create_index("ix_documents_source", "documents", ["source"])
    op.create_index("ix_documents_created_at", "documents", ["created_at"])
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_documents_embedding_hnsw "
        "ON documents USING hnsw (embedding vector_cosine_ops)"
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("store_id", sa.String(length=100), nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("user_query", sa.Text(), nullable=False),
        sa.Column("ai_response", sa.Text(), nullable=True),
        sa.Column("detected_intent", sa.String(length=32), nullable=False, server_default="unknown"),
        sa.Column("was_handled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("referred_to_email", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("metadata", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_conversations_store_id", "conversations", ["store_id"])
    op.create_index("ix_conversations_created_at", "conversations", ["created_at"])

    op.create_table(
        "credit_usage_log",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("tenant_id", sa.String(length=100), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=True),
        sa.Column("credits_consumed", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_credit_usage_log_tenant_id", "credit_usage_log", ["tenant_id"])
    op.create_index("ix_credit_usage_log_created_at", "credit_usage_log", ["created_at"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("actor_email", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("details", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("credit_usage_log")
    op.drop_table("conversations")
    op.execute("DROP INDEX IF EXISTS ix_documents_embedding_hnsw")
    op.drop_table("documents")
    op.drop_table("widget_config")
    op.drop_table("tenant_prompts")
    op.drop_table("tenant_user_access")
    op.drop_table("tenants")
