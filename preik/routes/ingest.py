import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException

from preik.db.base import db_session
from preik.db.models import Tenant
from preik.db.persistence import is_db_enabled
from preik.models.types import IngestRequest, IngestResponse
from preik.services.audit import log_audit
from preik.services.auth import CurrentUser, require_super_admin
from preik.services.ingestion import IngestError, ingest_site
from preik.services.providers.firecrawl import FirecrawlError
from preik.services.ratelimit import RATE_LIMITS, check_rate_limit, rate_limit_headers
from preik.services.tenants import is_valid_store_id
from preik.services.url_safety import is_safe_url

router = APIRouter()
logger = logging.getLogger(__name__)


def _tenant_exists(store_id: str) -> bool:
    with db_session() as s:
        return s.get(Tenant, store_id) is not None


@router.post("/ingest", response_model=IngestResponse)
async def ingest(req: IngestRequest, user: CurrentUser = Depends(require_super_admin)):
    """Full re-crawl: wipes the tenant's documents and ingests the site from scratch."""
    rl = await asyncio.to_thread(check_rate_limit, f"ingest:{user.id}", RATE_LIMITS["ingest"])
    if not rl.allowed:
        raise HTTPException(status_code=429, detail="Too many requests", headers=rate_limit_headers(rl))
    if not is_safe_url(req.url):
        raise HTTPException(status_code=400, detail="URL must be a public https:// address")
    if not is_valid_store_id(req.storeId):
        raise HTTPException(status_code=400, detail="Invalid storeId")
    if not is_db_enabled():
        raise HTTPException(status_code=503, detail="Database not configured")
    if not await asyncio.to_thread(_tenant_exists, req.storeId):
        raise HTTPException(status_code=404, detail="Tenant not found")

    try:
        result = await ingest_site(req.storeId, req.url)
    except IngestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FirecrawlError as e:
        logger.error("ingest: crawl of %s failed: %s", req.url, e)
        raise HTTPException(status_code=502, detail="Crawl failed")

    await asyncio.to_thread(
        log_audit, user.email, "ingest_site", "tenant", req.storeId, {"url": req.url, "chunks": result["chunksCount"]}
    )
    return IngestResponse(**result)
