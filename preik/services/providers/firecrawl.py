from __future__ import annotations

import asyncio
import os
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from preik.services.metrics import elapsed_ms, now, record_http

CRAWL_POLL_INTERVAL_S = 2.0
CRAWL_TIMEOUT_S = 600.0


class FirecrawlError(RuntimeError):
    pass


class _Retryable(FirecrawlError):
    """429/5xx from the API; worth another attempt."""


def _base_url() -> str:
    return os.getenv("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev").rstrip("/")


def _headers() -> Dict[str, str]:
    api_key = os.getenv("FIRECRAWL_API_KEY", "")
    if not api_key:
        raise FirecrawlError("FIRECRAWL_API_KEY is not set")
    return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json", "Accept": "application/json"}


@retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type((_Retryable, httpx.TransportError)),
)
async def _request(method: str, path: str, payload: Optional[Dict[str, Any]] = None, timeout: float = 60.0) -> Dict[str, Any]:
    url = f"{_base_url()}{path}"
    t0 = now()
    async with httpx.AsyncClient(timeout=timeout, headers=_headers(), follow_redirects=True) as client:
        resp = await client.request(method, url, json=payload)
    # Crawl status paths carry a job id; keep the metric key stable
    endpoint = "/v1/crawl/:id" if path.startswith("/v1/crawl/") else path
    record_http("firecrawl", endpoint, resp.status_code, elapsed_ms(t0))
    if resp.status_code == 429 or resp.status_code >= 500:
        raise _Retryable(f"firecrawl {path} returned {resp.status_code}")
    if resp.status_code >= 400:
        raise FirecrawlError(f"firecrawl {path} returned {resp.status_code}: {resp.text[:200]}")
    data = resp.json() or {}
    if data.get("success") is False:
        raise FirecrawlError(f"firecrawl {path} failed: {data.get('error') or 'unknown error'}")
    return data


async def map_site(url: str, limit: int = 500) -> List[str]:
    """All URLs Firecrawl can find for a site (sitemap + links)."""
    data = await _request("POST", "/v1/map", {"url": url, "limit": limit})
    links = data.get("links") or []
    # Newer API versions return objects instead of bare strings
    return [l if isinstance(l, str) else (l.get("url") or "") for l in links if l]


async def scrape_page(url: str) -> Dict[str, Any]:
    """Scrape one page; returns {"markdown": str, "metadata": {...}}."""
    data = await _request(
        "POST",
        "/v1/scrape",
        {"url": url, "formats": ["markdown"], "onlyMainContent": True},
    )
    page = data.get("data") or {}
    return {"markdown": page.get("markdown") or "", "metadata": page.get("metadata") or {}}


async def crawl_site(url: str, limit: int = 500) -> List[Dict[str, Any]]:
    """Crawl a whole site and wait for the job; returns scraped pages."""
    started = await _request(
        "POST",
        "/v1/crawl",
        {"url": url, "limit": limit, "scrapeOptions": {"formats": ["markdown"]}},
    )
    job_id = started.get("id")
    if not job_id:
        raise FirecrawlError("firecrawl crawl did not return a job id")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + CRAWL_TIMEOUT_S
    while True:
        status = await _request("GET", f"/v1/crawl/{job_id}")
        state = status.get("status")
        if state == "completed":
            break
        if state in ("failed", "cancelled"):
            raise FirecrawlError(f"firecrawl crawl {job_id} {state}")
        if loop.time() > deadline:
            raise FirecrawlError(f"firecrawl crawl {job_id} timed out")
        await asyncio.sleep(CRAWL_POLL_INTERVAL_S)

    pages: List[Dict[str, Any]] = list(status.get("data") or [])
    next_url = status.get("next")
    # Large results are paginated through absolute `next` links
    while next_url:
        path = next_url[len(_base_url()):] if next_url.startswith(_base_url()) else next_url
        more = await _request("GET", path)
        pages.extend(more.get("data") or [])
        next_url = more.get("next")
    return [{"markdown": p.get("markdown") or "", "metadata": p.get("metadata") or {}} for p in pages]
