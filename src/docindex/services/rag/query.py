from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
import re

from docindex.services.rag.embedder import Embedder, tokenize
from docindex.services.rag.normalizer import normalize_text
from docindex.services.rag.types import Chunk, QueryResult, SearchHit, vector_norm
from docindex.services.rag.vector_index import MetadataFilter, VectorIndex

Reranker = Callable[[str, Sequence[SearchHit]], Sequence[SearchHit]]

ELLIPSIS = "…"


def extract_snippet(text: str, query_text: str, *, budget: int) -> str:
    """Return ``text`` whole if it fits ``budget``, else a window of that size.

    The window is centered on the first query term found in the text and
    falls back to the start of the text.
    """
    text = text.strip()
    if len(text) <= budget:
        return text

    center = 0
    terms = sorted(set(tokenize(query_text)), key=lambda term: (-len(term), term))
    if terms:
        pattern = re.compile(
            r"\b(?:" + "|".join(re.escape(term) for term in terms) + r")\b",
            re.IGNORECASE,
        )
        match = pattern.search(text)
        if match is not None:
            center = (match.start() + match.end()) // 2

    start = max(0, min(center - budget // 2, len(text) - budget))
    end = start + budget

    # Snap inward to word boundaries so the window never cuts a word in half.
    if start > 0:
        space = text.find(" ", start, end)
        if space >= 0:
            start = space + 1
    if end < len(text):
        space = text.rfind(" ", start, end)
        if space > start:
            end = space

    snippet = text[start:end].strip()
    if start > 0:
        snippet = ELLIPSIS + snippet
    if end < len(text):
        snippet = snippet + ELLIPSIS
    return snippet


class QueryPipeline:
    def __init__(
        self,
        *,
        index: VectorIndex,
        embedder: Embedder,
        chunks: Mapping[str, Chunk],
        snippet_chars: int = 240,
        overfetch: int = 4,
        min_score: float | None = None,
    ) -> None:
        if snippet_chars <= 0:
            raise ValueError("snippet_chars must be > 0")
        if overfetch < 1:
            raise ValueError("overfetch must be >= 1")
        self._index = index
        self._embedder = embedder
        self._chunks = chunks
        self._snippet_chars = snippet_chars
        self._overfetch = overfetch
        self._min_score = min_score

    def _text_for(self, chunk_id: str) -> str:
        chunk = self._chunks.get(chunk_id)
        return chunk.text if chunk is not None else ""

    def search(
        self,
        query_text: str,
        k: int,
        filter: MetadataFilter | None = None,
    ) -> list[SearchHit]:
        normalized_query = normalize_text(query_text)
        if not normalized_query:
            raise ValueError("query_text must not be empty")
        if k <= 0:
            raise ValueError("k must be > 0")

        embedding = self._embedder.embed(normalized_query)
        if vector_norm(embedding.vector) == 0:
            # A zero query vector would score 1.0 against every entry.
            return []
        matches = self._index.search_entries(embedding.vector, k, filter)

        return [
            SearchHit(
                chunk_id=entry.chunk_id,
                score=score,
                text=self._text_for(entry.chunk_id),
                metadata=entry.metadata,
            )
            for entry, score in matches
            if self._min_score is None or score >= self._min_score
        ]

    def answer(
        self,
        query_text: str,
        k: int,
        filter: MetadataFilter | None = None,
        reranker: Reranker | None = None,
    ) -> list[QueryResult]:
        if k <= 0:
            raise ValueError("k must be > 0")

        fetch_k = k * self._overfetch if reranker is not None else k
        candidates = self.search(query_text, fetch_k, filter)

        if reranker is None:
            selected = candidates[:k]
        else:
            selected = _validated_rerank(
                list(reranker(query_text, tuple(candidates))),
                candidates,
                k,
            )

        return [
            QueryResult(
                chunk_id=hit.chunk_id,
                score=hit.score,
                snippet=extract_snippet(hit.text, query_text, budget=self._snippet_chars),
                metadata=dict(hit.metadata),
            )
            for hit in selected
        ]


def _validated_rerank(
    reranked: list[SearchHit], candidates: list[SearchHit], k: int
) -> list[SearchHit]:
    by_id = {hit.chunk_id: hit for hit in candidates}
    if len(reranked) > k:
        raise ValueError(f"reranker returned {len(reranked)} candidates, expected at most {k}")

    seen: set[str] = set()
    selected: list[SearchHit] = []
    for hit in reranked:
        if hit.chunk_id not in by_id:
            raise ValueError(f"reranker returned unknown chunk_id {hit.chunk_id}")
        if hit.chunk_id in seen:
            raise ValueError(f"reranker returned duplicate chunk_id {hit.chunk_id}")
        seen.add(hit.chunk_id)
        selected.append(by_id[hit.chunk_id])
    return selected
