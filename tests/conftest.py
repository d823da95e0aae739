# Environment for the whole test session: a throwaway SQLite database and no
# external services, so embeddings and replies use the deterministic fallbacks.
import os
import sys
import tempfile
import time
import uuid

import jwt
import pytest

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

_DB_DIR = tempfile.mkdtemp(prefix="preik-tests-")
# TEST_DATABASE_URL runs the suite against a real Postgres with pgvector
os.environ["DATABASE_URL"] = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
for _name in ("OPENAI_API_KEY", "REDIS_URL", "RESEND_API_KEY", "FIRECRAWL_API_KEY", "ADMIN_EMAILS", "APP_VERSION"):
    os.environ[_name] = ""
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-with-enough-length-for-hs256"
os.environ["SUPER_ADMIN_EMAILS"] = "root@preik.ai"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["PREIK_ENV"] = "production"
os.environ["LOG_FORMAT"] = "text"

from fastapi.testclient import TestClient  # noqa: E402

from preik.main import app  # noqa: E402
from preik.db import base as db_base  # noqa: E402
from preik.db.base import db_session, init_db  # noqa: E402
from preik.db.models import Base, Tenant, TenantUserAccess, utcnow  # noqa: E402
from preik.services.ratelimit import reset_memory_store  # noqa: E402

init_db()

SUPER_ADMIN = {"sub": "user-root", "email": "root@preik.ai"}
TENANT_ADMIN = {"sub": "user-admin", "email": "owner@shop.no"}
TENANT_VIEWER = {"sub": "user-viewer", "email": "staff@shop.no"}
OUTSIDER = {"sub": "user-outsider", "email": "someone@else.no"}


@pytest.fixture(autouse=True)
def clean_state():
    with db_base.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    reset_memory_store()
    yield


@pytest.fixture
def client():
    return TestClient(app)


def make_token(claims, secret=None, audience="authenticated"):
    payload = {"aud": audience, "exp": int(time.time()) + 3600, **claims}
    return jwt.encode(payload, secret or os.environ["SUPABASE_JWT_SECRET"], algorithm="HS256")


def auth_headers(claims):
    return {"Authorization": f"Bearer {make_token(claims)}"}


def seed_tenant(tenant_id="shop", **fields):
    values = dict(
        id=tenant_id,
        name="Båtpleie AS",
        allowed_domains=["shop.no"],
        language="no",
        persona="",
        features={},
        contact_email="post@shop.no",
        credit_limit=100,
        credits_used=0,
        billing_cycle_start=utcnow(),
    )
    values.update(fields)
    with db_session() as s:
        s.add(Tenant(**values))
    return tenant_id


def grant(user_claims, tenant_id, role):
    with db_session() as s:
        s.add(TenantUserAccess(id=str(uuid.uuid4()), user_id=user_claims["sub"], tenant_id=tenant_id, role=role))


@pytest.fixture
def tenant():
    tenant_id = seed_tenant()
    grant(TENANT_ADMIN, tenant_id, "admin")
    grant(TENANT_VIEWER, tenant_id, "viewer")
    return tenant_id
