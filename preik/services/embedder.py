import hashlib
import os
from typing import List

import numpy as np
from tenacity import retry, stop_after_attempt, wait_exponential

from preik.db.models import EMBED_DIM
from preik.services.metrics import elapsed_ms, now, record_llm

EMBED_BATCH_SIZE = 100  # inputs per embeddings request


def embed_model() -> str:
    return os.getenv("EMBED_MODEL", "text-embedding-3-small")


def _fallback_embed(texts: List[str]) -> np.ndarray:
    """Hash-seeded unit vectors: same text, same vector. Used without an API key."""
    out = np.empty((len(texts), EMBED_DIM), dtype=np.float32)
    for row, content in enumerate(texts):
        digest = hashlib.sha256(content.encode("utf-8")).digest()
        vec = np.random.default_rng(int.from_bytes(digest[:8], "big")).random(EMBED_DIM)
        out[row] = vec / (np.linalg.norm(vec) or 1.0)
    return out


@retry(reraise=True, stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.5, min=0.5, max=4))
def _embed_openai(texts: List[str]) -> np.ndarray:
    from openai import OpenAI  # lazy: only needed with a key

    resp = OpenAI().embeddings.create(model=embed_model(), input=texts, dimensions=EMBED_DIM)
    ordered = sorted(resp.data, key=lambda item: item.index)
    return np.asarray([item.embedding for item in ordered], dtype=np.float32)


def _embed_batch(batch: List[str]) -> np.ndarray:
    started = now()
    ok = False
    try:
        vectors = _embed_openai(batch)
        ok = True
        return vectors
    finally:
        record_llm("openai", embed_model(), latency_ms=elapsed_ms(started), ok=ok)


def embed_texts(texts: List[str]) -> np.ndarray:
    """Embed `texts`; row i of the result belongs to texts[i].

    OpenAI errors propagate after retries. Placeholder vectors for real
    content would make the stored chunks unretrievable without anyone noticing.
    """
    if not texts:
        return np.zeros((0, EMBED_DIM), dtype=np.float32)
    if not os.getenv("OPENAI_API_KEY"):
        started = now()
        vectors = _fallback_embed(texts)
        record_llm("embedder-fallback", "deterministic", latency_ms=elapsed_ms(started))
        return vectors
    batches = [texts[i:i + EMBED_BATCH_SIZE] for i in range(0, len(texts), EMBED_BATCH_SIZE)]
    return np.concatenate([_embed_batch(b) for b in batches], axis=0)


def embed_query(text: str) -> np.ndarray:
    return embed_texts([text])[0]
