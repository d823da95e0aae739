"""tenant_user_access.user_email for the admin membership list

Revision ID: 20261019_access_user_email
Revises: 20260301_initial_schema
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_access_user_email'
down_revision = '20260301_initial_schema'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("tenant_user_access", sa.Column("user_email", sa.String(length=255), nullable=True))


def downgrade() -> None:
    op.drop_column("tenant_user_access", "user_email")
