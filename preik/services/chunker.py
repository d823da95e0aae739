from typing import List
import hashlib
import re

# Greedy packing: whole paragraphs first, words only for oversized paragraphs.
# Chunks are embedded one-to-one, so ~1000 chars keeps each well under the
# embedding model's input limit while staying specific enough to retrieve.

DEFAULT_CHUNK_SIZE = 1000

_PARAGRAPH_RE = re.compile(r"\n\n+")
_WORD_RE = re.compile(r"\s+")


def split_into_chunks(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> List[str]:
    chunks: List[str] = []
    current = ""

    for paragraph in _PARAGRAPH_RE.split(text):
        if len(current) + len(paragraph) + 2 <= chunk_size:
            current += ("\n\n" if current else "") + paragraph
            continue

        if current:
            chunks.append(current.strip())

        if len(paragraph) > chunk_size:
            current = ""
            for word in _WORD_RE.split(paragraph):
                if len(current) + len(word) + 1 <= chunk_size:
                    current += (" " if current else "") + word
                else:
                    if current:
                        chunks.append(current.strip())
                    current = word
        else:
            current = paragraph

    if current.strip():
        chunks.append(current.strip())

    return [c for c in chunks if c]


def calculate_checksum(text: str) -> str:
    """SHA-256 of page content; unchanged pages are skipped on re-scrape."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
