from __future__ import annotations

import logging
import os
from pathlib import Path
import threading
from time import perf_counter
from typing import TypedDict

from docindex.services.rag.artifacts import NORMALIZED_TEXT_NAME, WORD_TALLY_NAME
from docindex.services.rag.chunker import validate_strategy
from docindex.services.rag.embedder import Embedder
from docindex.services.rag.ingest import ingest_documents
from docindex.services.rag.records import ChunkStore
from docindex.services.rag.types import Strategy
from docindex.services.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)

# Rebuilds share the ``.rebuild`` files next to their targets.
_REINDEX_LOCK = threading.Lock()


class ReindexResult(TypedDict):
    documents: int
    skipped: int
    chunks: int
    tokens: int
    index_path: str
    chunks_path: str
    artifacts: list[str]
    duration_ms: int
    dimension: int
    model_id: str


def _tmp_path(path: Path) -> Path:
    return path.with_suffix(f"{path.suffix}.rebuild")


def _self_check(index_path: Path, chunks_path: Path, embedder: Embedder) -> tuple[int, int]:
    index = VectorIndex.load(index_path)
    chunks = ChunkStore.load(chunks_path)

    if len(index) <= 0:
        raise ValueError("reindex self-check failed: index is empty")
    if index.dimension != embedder.dimension:
        raise ValueError(
            f"reindex self-check failed: index dimension {index.dimension} "
            f"!= embedder dimension {embedder.dimension}"
        )
    missing = [chunk_id for chunk_id in index.chunk_ids() if chunk_id not in chunks]
    if missing:
        raise ValueError(f"reindex self-check failed: {len(missing)} indexed chunks lack records")

    return len(index), index.dimension


def run_reindex(
    *,
    source_dir: Path,
    index_path: Path,
    chunks_path: Path,
    embedder: Embedder,
    strategy: Strategy,
    dedup_paragraphs: bool = True,
    max_workers: int | None = None,
    artifact_dir: Path | None = None,
    emit_normalized: bool = False,
    emit_word_tally: bool = False,
) -> ReindexResult:
    """Rebuild the index from scratch and swap it in only after it reloads cleanly.

    Concurrent calls run one at a time. With ``artifact_dir`` set, the
    normalized corpus and the word tally are written there on request.
    """
    validate_strategy(strategy)

    normalized_path = word_tally_path = None
    if artifact_dir is not None:
        if emit_normalized:
            normalized_path = artifact_dir / NORMALIZED_TEXT_NAME
        if emit_word_tally:
            word_tally_path = artifact_dir / WORD_TALLY_NAME

    tmp_index_path = _tmp_path(index_path)
    tmp_chunks_path = _tmp_path(chunks_path)

    with _REINDEX_LOCK:
        start = perf_counter()
        for path in (tmp_index_path, tmp_chunks_path):
            if path.exists():
                path.unlink()

        try:
            index = VectorIndex()
            chunk_store = ChunkStore()
            summary = ingest_documents(
                source_dir=source_dir,
                index=index,
                embedder=embedder,
                strategy=strategy,
                chunk_store=chunk_store,
                dedup_paragraphs=dedup_paragraphs,
                max_workers=max_workers,
                normalized_path=normalized_path,
                word_tally_path=word_tally_path,
            )
            index.persist(tmp_index_path)
            chunk_store.save(tmp_chunks_path)

            chunk_count, dimension = _self_check(tmp_index_path, tmp_chunks_path, embedder)
            os.replace(tmp_index_path, index_path)
            os.replace(tmp_chunks_path, chunks_path)
        finally:
            for path in (tmp_index_path, tmp_chunks_path):
                if path.exists():
                    path.unlink()

        duration_ms = int((perf_counter() - start) * 1000)

    logger.info("reindex finished chunks=%d duration_ms=%d", chunk_count, duration_ms)
    return {
        "documents": summary.document_count,
        "skipped": len(summary.skipped),
        "chunks": chunk_count,
        "tokens": sum(summary.token_counts.values()),
        "index_path": str(index_path),
        "chunks_path": str(chunks_path),
        "artifacts": list(summary.artifacts),
        "duration_ms": duration_ms,
        "dimension": dimension,
        "model_id": embedder.model_id,
    }
