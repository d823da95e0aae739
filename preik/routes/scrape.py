import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from preik.db.persistence import is_db_enabled
from preik.models.types import DiscoverRequest, DiscoverResponse, ExecuteRequest
from preik.services.audit import log_audit
from preik.services.auth import CurrentUser, get_current_user, require_any_tenant_admin, require_tenant_access
from preik.services.discovery import filter_urls
from preik.services.ingestion import execute_scrape
from preik.services.providers.firecrawl import FirecrawlError, map_site
from preik.services.ratelimit import RATE_LIMITS, check_rate_limit, rate_limit_headers
from preik.services.tenants import is_valid_store_id
from preik.services.url_safety import is_safe_url

router = APIRouter()
logger = logging.getLogger(__name__)

MAP_LIMIT = 500


@router.post("/scrape/discover", response_model=DiscoverResponse)
async def discover(req: DiscoverRequest, user: CurrentUser = Depends(require_any_tenant_admin)):
    rl = await asyncio.to_thread(check_rate_limit, f"scrape:{user.id}", RATE_LIMITS["scrape"])
    if not rl.allowed:
        raise HTTPException(status_code=429, detail="Too many requests", headers=rate_limit_headers(rl))
    if not is_safe_url(req.baseUrl):
        raise HTTPException(status_code=400, detail="URL must be a public https:// address")

    try:
        links = await map_site(req.baseUrl, limit=MAP_LIMIT)
    except FirecrawlError as e:
        logger.error("discover: map of %s failed: %s", req.baseUrl, e)
        raise HTTPException(status_code=502, detail="Failed to discover pages")
    if not links:
        raise HTTPException(status_code=404, detail="No pages found on this website")

    urls = filter_urls(links, req.baseUrl)
    logger.info("discover: %d pages for %s (filtered from %d)", len(urls), req.baseUrl, len(links))
    return DiscoverResponse(success=True, totalCount=len(urls), urls=urls)


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


@router.post("/scrape/execute")
async def execute(req: ExecuteRequest, user: CurrentUser = Depends(get_current_user)):
    """Scrape selected pages; progress is streamed as server-sent events."""
    if not is_valid_store_id(req.storeId):
        raise HTTPException(status_code=400, detail="Invalid storeId")
    await asyncio.to_thread(require_tenant_access, user, req.storeId, write=True)
    unsafe = [u for u in req.urls if not is_safe_url(u)]
    if unsafe:
        raise HTTPException(status_code=400, detail=f"Unsafe URL rejected: {unsafe[0]}")
    if not is_db_enabled():
        raise HTTPException(status_code=503, detail="Database not configured")

    await asyncio.to_thread(log_audit, user.email, "scrape_execute", "tenant", req.storeId, {"urls": len(req.urls)})

    async def _events():
        async for event in execute_scrape(req.storeId, req.urls):
            yield _sse(event)

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )
