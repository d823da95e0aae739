from typing import Any, Dict, List, Tuple
import logging
import numpy as np
from sqlalchemy import select

from preik.db.base import db_session, is_postgres
from preik.db.models import DocumentModel
from preik.db.persistence import load_store_embeddings
from preik.models.types import MatchedDocument

logger = logging.getLogger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.4
DEFAULT_MATCH_COUNT = 8


class Index:
    def __init__(self, embeddings: np.ndarray, items: List[Dict[str, Any]]):
        self.embeddings = embeddings  # shape (N, D)
        self.items = items
        self.norms = np.linalg.norm(embeddings, axis=1, keepdims=True) + 1e-8

    def search(self, query_vec: np.ndarray, top_k: int = 5) -> List[Tuple[Dict[str, Any], float]]:
        if query_vec.ndim == 1:
            q = query_vec[None, :]
        else:
            q = query_vec
        q = q / (np.linalg.norm(q, axis=1, keepdims=True) + 1e-8)
        sims = (self.embeddings @ q.T) / self.norms  # (N,1)
        sims = sims.squeeze(-1)
        idx = np.argsort(-sims, kind="stable")[:top_k]
        return [(self.items[i], float(sims[i])) for i in idx]


def _match_pgvector(store_id: str, query: List[float], threshold: float, count: int) -> List[MatchedDocument]:
    distance = DocumentModel.embedding.cosine_distance(query)
    with db_session() as s:
        rows = s.execute(
            select(DocumentModel.id, DocumentModel.content, DocumentModel.doc_metadata, (1 - distance).label("similarity"))
            .where(DocumentModel.store_id == store_id, (1 - distance) > threshold)
            .order_by(distance.asc())
            .limit(count)
        ).all()
    return [
        MatchedDocument(id=r.id, content=r.content, metadata=dict(r.doc_metadata or {}), similarity=float(r.similarity))
        for r in rows
    ]


def _match_numpy(store_id: str, query: np.ndarray, threshold: float, count: int) -> List[MatchedDocument]:
    loaded = load_store_embeddings(store_id)
    if loaded is None:
        return []
    items, embeddings = loaded
    index = Index(embeddings, items)
    return [
        MatchedDocument(id=item["id"], content=item["content"], metadata=item["metadata"], similarity=sim)
        for item, sim in index.search(query, top_k=count)
        if sim > threshold
    ]


def match_site_content(
    store_id: str,
    query_embedding: np.ndarray,
    match_threshold: float = DEFAULT_MATCH_THRESHOLD,
    match_count: int = DEFAULT_MATCH_COUNT,
) -> List[MatchedDocument]:
    """Best-first cosine matches within one tenant's documents."""
    q = np.asarray(query_embedding, dtype=np.float32)
    if is_postgres():
        return _match_pgvector(store_id, q.tolist(), match_threshold, match_count)
    return _match_numpy(store_id, q, match_threshold, match_count)
