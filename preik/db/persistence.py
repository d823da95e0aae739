from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple
import uuid
from datetime import timedelta
import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from preik.db.base import db_session
from preik.db import base as db_base
from preik.db.models import DocumentModel, utcnow

INSERT_BATCH_SIZE = 500  # rows per INSERT round trip


def is_db_enabled() -> bool:
    return db_base.SessionLocal is not None  # read at call time, init_db rebinds it


def _document_rows(
    store_id: str,
    chunks: List[str],
    embeddings: np.ndarray,
    metadata: Dict[str, Any],
    checksum: Optional[str],
) -> List[DocumentModel]:
    if embeddings.shape[0] != len(chunks):
        raise ValueError(f"{embeddings.shape[0]} embeddings for {len(chunks)} chunks")
    source = str(metadata.get("source") or "")
    # Distinct timestamps keep chunk order when reading a source back by created_at
    stamp = utcnow()
    return [
        DocumentModel(
            id=str(uuid.uuid4()),
            store_id=store_id,
            content=text,
            doc_metadata=dict(metadata),
            source=source,
            checksum=checksum,
            embedding=embeddings[i].tolist(),
            created_at=stamp + timedelta(microseconds=i),
        )
        for i, text in enumerate(chunks)
    ]


def _add_in_batches(s: Session, rows: List[DocumentModel]) -> None:
    # Batches are flushed, not committed: the caller's transaction covers all of them
    for start in range(0, len(rows), INSERT_BATCH_SIZE):
        s.add_all(rows[start:start + INSERT_BATCH_SIZE])
        s.flush()


def insert_documents(
    store_id: str,
    chunks: List[str],
    embeddings: np.ndarray,
    metadata: Dict[str, Any],
    *,
    checksum: Optional[str] = None,
) -> List[str]:
    """Insert one row per chunk, all sharing `metadata`. Returns the new row ids.

    All-or-nothing: a failing batch rolls back the batches before it.
    """
    rows = _document_rows(store_id, chunks, embeddings, metadata, checksum)
    with db_session() as s:
        _add_in_batches(s, rows)
    return [r.id for r in rows]


def replace_source_documents(
    store_id: str,
    chunks: List[str],
    embeddings: np.ndarray,
    metadata: Dict[str, Any],
    *,
    checksum: Optional[str] = None,
) -> Tuple[List[str], int]:
    """Swap every row of `metadata["source"]` for the given chunks in one transaction.

    Returns (new ids, number of rows removed). On any failure the old rows stay.
    """
    rows = _document_rows(store_id, chunks, embeddings, metadata, checksum)
    source = str(metadata.get("source") or "")
    with db_session() as s:
        removed = s.execute(
            delete(DocumentModel).where(DocumentModel.store_id == store_id, DocumentModel.source == source)
        ).rowcount or 0
        _add_in_batches(s, rows)
    return [r.id for r in rows], removed


def delete_store_documents(store_id: str) -> int:
    with db_session() as s:
        res = s.execute(delete(DocumentModel).where(DocumentModel.store_id == store_id))
        return res.rowcount or 0


def delete_documents_by_source(store_id: str, source: str) -> int:
    with db_session() as s:
        res = s.execute(
            delete(DocumentModel).where(DocumentModel.store_id == store_id, DocumentModel.source == source)
        )
        return res.rowcount or 0


def delete_documents_by_ids(store_id: str, ids: List[str]) -> int:
    if not ids:
        return 0
    with db_session() as s:
        res = s.execute(
            delete(DocumentModel).where(DocumentModel.store_id == store_id, DocumentModel.id.in_(ids))
        )
        return res.rowcount or 0


def source_checksum(store_id: str, source: str) -> Optional[str]:
    """Checksum stored with the current chunks of a page, None when the page is new."""
    with db_session() as s:
        return s.execute(
            select(DocumentModel.checksum)
            .where(DocumentModel.store_id == store_id, DocumentModel.source == source)
            .limit(1)
        ).scalar_one_or_none()


def count_documents(store_id: str, source: Optional[str] = None) -> int:
    with db_session() as s:
        q = select(func.count()).select_from(DocumentModel).where(DocumentModel.store_id == store_id)
        if source is not None:
            q = q.where(DocumentModel.source == source)
        return int(s.execute(q).scalar_one())


def load_store_embeddings(store_id: str) -> Optional[Tuple[List[dict], np.ndarray]]:
    """All chunks + embeddings of one tenant, for in-process ranking.

    Returns (rows, embeddings) or None when the tenant has no content.
    """
    with db_session() as s:
        docs = (
            s.query(DocumentModel)
            .filter(DocumentModel.store_id == store_id)
            .order_by(DocumentModel.created_at.asc(), DocumentModel.id.asc())
            .all()
        )
        if not docs:
            return None
        rows: List[dict] = []
        embs: List[List[float]] = []
        for d in docs:
            rows.append({"id": d.id, "content": d.content, "metadata": dict(d.doc_metadata or {})})
            # pgvector returns ndarray or list; normalize
            embs.append(np.asarray(d.embedding, dtype=np.float32).tolist())
        return rows, np.array(embs, dtype=np.float32)
