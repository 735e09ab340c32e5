from __future__ import annotations

from collections import Counter
import hashlib
import math
import re
from typing import Protocol, runtime_checkable

from docindex.services.rag.errors import EmbeddingError
from docindex.services.rag.types import Chunk, Embedding

_WORD = re.compile(r"\w+")


class Embedder(Protocol):
    model_id: str
    dimension: int

    def embed(self, text: str) -> Embedding: ...


@runtime_checkable
class BatchEmbedder(Protocol):
    model_id: str
    dimension: int

    def embed(self, text: str) -> Embedding: ...

    def embed_texts(self, texts: list[str]) -> list[Embedding]: ...


def tokenize(text: str) -> list[str]:
    return [word.lower() for word in _WORD.findall(text)]


class HashingEmbedder:
    """Term-frequency vectors folded into a fixed number of buckets.

    Each lowercase word token is hashed with sha256; the digest picks the
    bucket and the sign, so the output depends only on the text and the
    dimension.
    """

    def __init__(self, *, dimension: int = 256) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")
        self.dimension = dimension
        self.model_id = f"hashing-tf-v1-d{dimension}"

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        bucket = int.from_bytes(digest[:8], "big") % self.dimension
        sign = 1.0 if digest[8] & 1 else -1.0
        return bucket, sign

    def embed(self, text: str) -> Embedding:
        counts = Counter(tokenize(text))
        total = sum(counts.values()) or 1
        vector = [0.0] * self.dimension

        for token, count in sorted(counts.items()):
            bucket, sign = self._bucket(token)
            vector[bucket] += sign * (count / total)

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            vector = [value / norm for value in vector]

        return Embedding(vector=tuple(vector), model_id=self.model_id)


def embed_chunks(embedder: Embedder, chunks: list[Chunk]) -> list[Embedding]:
    """Embed chunk texts, in one request when the embedder supports batches."""
    if not chunks:
        return []

    texts = [chunk.text for chunk in chunks]
    if isinstance(embedder, BatchEmbedder):
        embeddings = list(embedder.embed_texts(texts))
    else:
        embeddings = [embedder.embed(text) for text in texts]

    if len(embeddings) != len(chunks):
        raise EmbeddingError(
            f"{embedder.model_id} returned {len(embeddings)} embeddings for {len(chunks)} chunks"
        )
    for embedding in embeddings:
        if embedding.dimension != embedder.dimension:
            raise EmbeddingError(
                f"{embedder.model_id} returned {embedding.dimension} values, "
                f"declared {embedder.dimension}"
            )
        if not all(math.isfinite(value) for value in embedding.vector):
            raise EmbeddingError(f"{embedder.model_id} returned non-finite values")
    return embeddings
