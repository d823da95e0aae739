import asyncio

import pytest

from conftest import seed_tenant
from preik.db import persistence
from preik.db.base import db_session
from preik.db.models import DocumentModel
from preik.services import ingestion
from preik.services.providers import firecrawl


def _collect(agen):
    async def run():
        return [event async for event in agen]
    return asyncio.run(run())


def _fake_scraper(pages):
    async def scrape_page(url):
        if url not in pages:
            raise firecrawl.FirecrawlError(f"firecrawl /v1/scrape returned 500 for {url}")
        return {"markdown": pages[url], "metadata": {"sourceURL": url}}
    return scrape_page


def test_execute_scrape_reports_new_skipped_updated_and_errors(monkeypatch):
    seed_tenant()
    pages = {"https://shop.no/a": "Båtvoks gir glans.", "https://shop.no/b": "Polish for gelcoat."}
    monkeypatch.setattr(firecrawl, "scrape_page", _fake_scraper(pages))

    events = _collect(ingestion.execute_scrape("shop", ["https://shop.no/a", "https://shop.no/b", "https://shop.no/missing"]))
    assert events[0] == {"type": "start", "total": 3, "storeId": "shop"}
    progress = [e for e in events if e["type"] == "progress"]
    assert [e["current"] for e in progress] == [1, 2, 3]
    assert [e["status"] for e in progress] == ["new", "new", "error"]
    assert "500" in progress[2]["error"]
    assert events[-1] == {
        "type": "complete",
        "total": 3,
        "stats": {"errors": 1, "newPages": 2, "updatedPages": 0, "skippedPages": 0},
    }

    # Unchanged page is skipped, edited page replaces its rows
    pages["https://shop.no/b"] = "Polish for gelcoat, nå også i 1 liter."
    events = _collect(ingestion.execute_scrape("shop", ["https://shop.no/a", "https://shop.no/b"]))
    assert [e["status"] for e in events if e["type"] == "progress"] == ["skipped", "updated"]
    assert persistence.count_documents("shop") == 2
    with db_session() as s:
        contents = sorted(d.content for d in s.query(DocumentModel).all())
    assert contents == ["Båtvoks gir glans.", "Polish for gelcoat, nå også i 1 liter."]


def test_execute_scrape_empty_page(monkeypatch):
    seed_tenant()
    monkeypatch.setattr(firecrawl, "scrape_page", _fake_scraper({"https://shop.no/tom": ""}))
    events = _collect(ingestion.execute_scrape("shop", ["https://shop.no/tom"]))
    assert events[1]["status"] == "empty"
    assert events[-1]["stats"] == {"errors": 0, "newPages": 0, "updatedPages": 0, "skippedPages": 0}


def test_ingest_site_replaces_corpus(monkeypatch):
    seed_tenant()
    persistence.insert_documents("shop", ["gammelt"], ingestion.embed_texts(["gammelt"]), {"source": "manual"})

    async def crawl_site(url, limit=500):
        return [
            {"markdown": "Forside om båtpleie.", "metadata": {"sourceURL": "https://shop.no/"}},
            {"markdown": "", "metadata": {"sourceURL": "https://shop.no/tom"}},
            {"markdown": "Voks.\n\n" + "x" * 1200, "metadata": {"sourceURL": "https://shop.no/voks"}},
        ]

    monkeypatch.setattr(firecrawl, "crawl_site", crawl_site)
    result = asyncio.run(ingestion.ingest_site("shop", "https://shop.no"))
    assert result == {
        "success": True,
        "message": "Successfully crawled 3 pages and ingested 3 chunks",
        "pagesCount": 3,
        "chunksCount": 3,
    }
    assert persistence.count_documents("shop", source="manual") == 0
    assert persistence.count_documents("shop", source="https://shop.no/voks") == 2


def test_ingest_site_without_pages(monkeypatch):
    seed_tenant()

    async def crawl_site(url, limit=500):
        return []

    monkeypatch.setattr(firecrawl, "crawl_site", crawl_site)
    with pytest.raises(ingestion.IngestError, match="No pages found"):
        asyncio.run(ingestion.ingest_site("shop", "https://shop.no"))


def test_manual_content_add_and_replace():
    seed_tenant()
    count = ingestion.add_manual_content("shop", "Åpningstider: 10-16.", source="manual", added_by="user-1")
    assert count == 1
    with db_session() as s:
        doc = s.query(DocumentModel).one()
        assert doc.doc_metadata == {"source": "manual", "title": "Manuell inntasting", "manual": True, "added_by": "user-1"}

    result = ingestion.replace_content("shop", "manual", "Ny tekst.\n\n" + "y" * 1200, title="Info", edited_by="user-2")
    assert result == {"chunks": 2, "removed": 1}
    with db_session() as s:
        docs = s.query(DocumentModel).all()
    assert len(docs) == 2
    assert all(d.doc_metadata["title"] == "Info" and d.doc_metadata["added_by"] == "user-2" for d in docs)

    with pytest.raises(ingestion.IngestError):
        ingestion.add_manual_content("shop", "  \n\n ", source="manual")
