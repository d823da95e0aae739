"""Turning page text into embedded document rows."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from preik.db import persistence
from preik.services import metrics
from preik.services.chunker import calculate_checksum, split_into_chunks
from preik.services.embedder import embed_texts
from preik.services.providers import firecrawl

logger = logging.getLogger(__name__)

CRAWL_LIMIT = 500
SCRAPE_BATCH_SIZE = 5  # pages scraped concurrently during execute


class IngestError(Exception):
    """Nothing usable to store (empty crawl or text without content)."""


def _store_chunks(store_id: str, chunks: List[str], metadata: Dict[str, Any], checksum: Optional[str] = None) -> List[str]:
    embeddings = embed_texts(chunks)
    return persistence.insert_documents(store_id, chunks, embeddings, metadata, checksum=checksum)


async def ingest_site(store_id: str, url: str) -> Dict[str, Any]:
    """Replace a tenant's whole corpus with a fresh crawl of `url`."""
    metrics.begin_run()
    deleted = await asyncio.to_thread(persistence.delete_store_documents, store_id)
    logger.info("ingest: cleared %d documents for %s, crawling %s", deleted, store_id, url)

    pages = await firecrawl.crawl_site(url, limit=CRAWL_LIMIT)
    if not pages:
        raise IngestError("No pages found to crawl")

    # Chunks grouped per page so each row keeps its own source URL
    by_source: Dict[str, List[str]] = {}
    for page in pages:
        if not page["markdown"]:
            continue
        source = page["metadata"].get("sourceURL") or page["metadata"].get("url") or url
        by_source.setdefault(source, []).extend(split_into_chunks(page["markdown"]))

    total_chunks = sum(len(c) for c in by_source.values())
    if total_chunks == 0:
        raise IngestError("No content found on website")

    for source, chunks in by_source.items():
        if chunks:
            await asyncio.to_thread(_store_chunks, store_id, chunks, {"source": source})

    logger.info("ingest: run metrics", extra={"storeId": store_id, "metrics": metrics.end_run()})
    return {
        "success": True,
        "message": f"Successfully crawled {len(pages)} pages and ingested {total_chunks} chunks",
        "pagesCount": len(pages),
        "chunksCount": total_chunks,
    }


def _refresh_page(store_id: str, url: str, content: str) -> Dict[str, Any]:
    checksum = calculate_checksum(content)
    existing = persistence.source_checksum(store_id, url)
    if existing is not None and existing == checksum:
        return {"url": url, "status": "skipped", "chunks": 0}

    chunks = split_into_chunks(content)
    if not chunks:
        return {"url": url, "status": "empty", "chunks": 0}

    # Embed before touching the old rows so a failed embed keeps the page searchable
    embeddings = embed_texts(chunks)
    _, removed = persistence.replace_source_documents(store_id, chunks, embeddings, {"source": url}, checksum=checksum)
    return {"url": url, "status": "updated" if removed else "new", "chunks": len(chunks)}


async def process_url(store_id: str, url: str) -> Dict[str, Any]:
    """Scrape one page and bring its rows up to date. Errors are reported, not raised."""
    try:
        page = await firecrawl.scrape_page(url)
        if not page["markdown"]:
            return {"url": url, "status": "empty", "chunks": 0}
        return await asyncio.to_thread(_refresh_page, store_id, url, page["markdown"])
    except Exception as e:
        logger.warning("scrape: %s failed: %s", url, e)
        return {"url": url, "status": "error", "chunks": 0, "error": str(e)}


async def execute_scrape(store_id: str, urls: List[str]) -> AsyncIterator[Dict[str, Any]]:
    """Yield start, per-URL progress and complete events."""
    metrics.begin_run()
    total = len(urls)
    yield {"type": "start", "total": total, "storeId": store_id}

    processed = 0
    stats = {"errors": 0, "newPages": 0, "updatedPages": 0, "skippedPages": 0}
    counters = {"error": "errors", "new": "newPages", "updated": "updatedPages", "skipped": "skippedPages"}

    for i in range(0, total, SCRAPE_BATCH_SIZE):
        batch = urls[i:i + SCRAPE_BATCH_SIZE]
        results = await asyncio.gather(*[process_url(store_id, u) for u in batch])
        for r in results:
            processed += 1
            if r["status"] in counters:
                stats[counters[r["status"]]] += 1
            event = {
                "type": "progress",
                "current": processed,
                "total": total,
                "url": r["url"],
                "status": r["status"],
                "chunks": r.get("chunks", 0),
                "stats": dict(stats),
            }
            if r.get("error"):
                event["error"] = r["error"]
            yield event

    logger.info("scrape: run metrics", extra={"storeId": store_id, "metrics": metrics.end_run()})
    yield {"type": "complete", "total": processed, "stats": dict(stats)}


MANUAL_TITLE = "Manuell inntasting"


def add_manual_content(
    store_id: str,
    text: str,
    *,
    source: str,
    title: Optional[str] = None,
    added_by: Optional[str] = None,
) -> int:
    chunks = split_into_chunks(text)
    if not chunks:
        raise IngestError("No content to process")
    metadata: Dict[str, Any] = {"source": source, "title": title or MANUAL_TITLE, "manual": True}
    if added_by:
        metadata["added_by"] = added_by
    _store_chunks(store_id, chunks, metadata, checksum=calculate_checksum(text))
    return len(chunks)


def replace_content(
    store_id: str,
    source: str,
    text: str,
    *,
    title: Optional[str] = None,
    edited_by: Optional[str] = None,
) -> Dict[str, int]:
    """Swap the rows of one source for a re-chunked version.

    Embedding happens first and the swap is a single transaction, so any
    failure leaves the previous content in place.
    """
    chunks = split_into_chunks(text)
    if not chunks:
        raise IngestError("No content to process")
    metadata: Dict[str, Any] = {"source": source, "title": title or MANUAL_TITLE}
    if source == "manual" or not source.startswith("http"):
        metadata.update(manual=True, added_by=edited_by)
    embeddings = embed_texts(chunks)
    _, removed = persistence.replace_source_documents(
        store_id, chunks, embeddings, metadata, checksum=calculate_checksum(text)
    )
    return {"chunks": len(chunks), "removed": removed}
