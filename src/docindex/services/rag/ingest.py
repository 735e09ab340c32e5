from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
from pathlib import Path

from docindex.services.rag.artifacts import count_words, write_normalized_corpus, write_word_tally
from docindex.services.rag.chunker import chunk, validate_strategy
from docindex.services.rag.embedder import Embedder, embed_chunks, tokenize
from docindex.services.rag.errors import EncodingError
from docindex.services.rag.loader import load_documents
from docindex.services.rag.normalizer import normalize
from docindex.services.rag.records import ChunkStore
from docindex.services.rag.types import (
    Chunk,
    Document,
    IngestionSummary,
    NormalizedText,
    SkippedDocument,
    Strategy,
)
from docindex.services.rag.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedDocument:
    document: Document
    normalized: NormalizedText
    chunks: tuple[Chunk, ...]
    token_count: int


def prepare_document(
    document: Document, strategy: Strategy, *, dedup: bool = True
) -> PreparedDocument:
    normalized = normalize(document, dedup=dedup)
    return PreparedDocument(
        document=document,
        normalized=normalized,
        chunks=tuple(chunk(normalized, strategy)),
        token_count=len(tokenize(normalized.text)),
    )


def prepare_documents(
    documents: list[Document],
    strategy: Strategy,
    *,
    dedup: bool = True,
    max_workers: int | None = None,
) -> tuple[list[PreparedDocument], list[SkippedDocument]]:
    """Normalize and chunk documents in parallel, returned in input order."""
    validate_strategy(strategy)

    prepared: list[PreparedDocument] = []
    skipped: list[SkippedDocument] = []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [
            executor.submit(prepare_document, document, strategy, dedup=dedup)
            for document in documents
        ]
        for document, future in zip(documents, futures):
            try:
                prepared.append(future.result())
            except EncodingError as exc:
                logger.warning("skipping %s: %s", document.source_path, exc)
                skipped.append(SkippedDocument(source_path=document.source_path, reason=str(exc)))

    return prepared, skipped


def _shared_paragraphs(prepared: list[PreparedDocument]) -> dict[str, tuple[str, ...]]:
    owners: dict[str, list[str]] = {}
    for item in prepared:
        seen_here: set[str] = set()
        for paragraph in item.normalized.paragraphs:
            if paragraph.is_heading or paragraph.content_hash in seen_here:
                continue
            seen_here.add(paragraph.content_hash)
            owners.setdefault(paragraph.content_hash, []).append(item.document.source_path)

    return {
        content_hash: tuple(paths)
        for content_hash, paths in owners.items()
        if len(paths) > 1
    }


def _is_unchanged(index: VectorIndex, item: PreparedDocument) -> bool:
    if not item.chunks:
        return False
    expected = sorted(chunk.chunk_id for chunk in item.chunks)
    return index.document_chunk_ids(item.document.doc_id) == expected


def _write_artifacts(
    prepared: list[PreparedDocument],
    *,
    normalized_path: Path | None,
    word_tally_path: Path | None,
) -> tuple[str, ...]:
    written: list[Path] = []
    if normalized_path is not None:
        written.append(
            write_normalized_corpus(normalized_path, (item.normalized for item in prepared))
        )
    if word_tally_path is not None:
        counts = count_words(item.normalized.text for item in prepared)
        written.append(write_word_tally(word_tally_path, counts))
    for path in written:
        logger.info("wrote ingestion artifact %s", path)
    return tuple(str(path) for path in written)


def index_documents(
    documents: list[Document],
    *,
    index: VectorIndex,
    embedder: Embedder,
    strategy: Strategy,
    chunk_store: ChunkStore | None = None,
    dedup_paragraphs: bool = True,
    max_workers: int | None = None,
    prune_missing: bool = False,
    normalized_path: Path | None = None,
    word_tally_path: Path | None = None,
) -> IngestionSummary:
    prepared, skipped = prepare_documents(
        documents,
        strategy,
        dedup=dedup_paragraphs,
        max_workers=max_workers,
    )

    indexed_count = 0
    unchanged_count = 0
    for item in prepared:
        doc_id = item.document.doc_id
        if _is_unchanged(index, item):
            if chunk_store is not None:
                chunk_store.put_document(doc_id, item.chunks)
            unchanged_count += 1
            continue

        # The store only takes records whose embeddings are already indexed.
        embeddings = embed_chunks(embedder, list(item.chunks))
        index.replace_document(
            doc_id,
            [
                (chunk_item.chunk_id, embedding, chunk_item.metadata)
                for chunk_item, embedding in zip(item.chunks, embeddings)
            ],
        )
        if chunk_store is not None:
            chunk_store.put_document(doc_id, item.chunks)
        indexed_count += 1
        logger.debug("indexed %s (%d chunks)", item.document.source_path, len(item.chunks))

    if prune_missing:
        current = {document.doc_id for document in documents}
        for doc_id in index.document_ids():
            if doc_id in current:
                continue
            removed = index.remove_document(doc_id)
            if chunk_store is not None:
                chunk_store.remove_document(doc_id)
            logger.info("pruned %d entries of missing document %s", removed, doc_id)

    summary = IngestionSummary(
        document_count=len(documents),
        indexed_count=indexed_count,
        unchanged_count=unchanged_count,
        chunk_count=sum(len(item.chunks) for item in prepared),
        skipped=tuple(skipped),
        shared_paragraphs=_shared_paragraphs(prepared),
        token_counts={item.document.source_path: item.token_count for item in prepared},
        artifacts=_write_artifacts(
            prepared, normalized_path=normalized_path, word_tally_path=word_tally_path
        ),
    )
    logger.info(
        "ingested documents=%d indexed=%d unchanged=%d skipped=%d chunks=%d",
        summary.document_count,
        summary.indexed_count,
        summary.unchanged_count,
        len(summary.skipped),
        summary.chunk_count,
    )
    return summary


def ingest_documents(
    *,
    source_dir: Path,
    index: VectorIndex,
    embedder: Embedder,
    strategy: Strategy,
    chunk_store: ChunkStore | None = None,
    dedup_paragraphs: bool = True,
    max_workers: int | None = None,
    prune_missing: bool = False,
    normalized_path: Path | None = None,
    word_tally_path: Path | None = None,
) -> IngestionSummary:
    validate_strategy(strategy)

    documents = load_documents(source_dir)
    return index_documents(
        documents,
        index=index,
        embedder=embedder,
        strategy=strategy,
        chunk_store=chunk_store,
        dedup_paragraphs=dedup_paragraphs,
        max_workers=max_workers,
        prune_missing=prune_missing,
        normalized_path=normalized_path,
        word_tally_path=word_tally_path,
    )
