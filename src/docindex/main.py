from collections.abc import Mapping
from dataclasses import replace
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from docindex.config import Settings, configure_logging, get_settings
from docindex.services.rag.embedder import Embedder, HashingEmbedder
from docindex.services.rag.embedding_client import OllamaEmbeddingClient
from docindex.services.rag.errors import (
    ConfigError,
    CorruptIndexError,
    EmbeddingError,
    IndexIOError,
    VectorIndexError,
)
from docindex.services.rag.query import QueryPipeline
from docindex.services.rag.records import ChunkStore
from docindex.services.rag.reindex import run_reindex
from docindex.services.rag.types import MetadataValue, QueryResult, Strategy
from docindex.services.rag.vector_index import MetadataFilter, VectorIndex

app = FastAPI(title="docindex", version="0.1.0")

MISSING_INDEX_HINT = "Run POST /rag/reindex first."


class ReindexRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_dir: str | None = None
    chunk_strategy: str | None = Field(default=None, pattern="^(fixed|structured)$")
    chunk_size: int | None = Field(default=None, ge=1)
    chunk_overlap: int | None = Field(default=None, ge=0)
    section_max_size: int | None = Field(default=None, ge=1)


@app.on_event("startup")
def startup() -> None:
    configure_logging()


def get_embedder() -> Embedder:
    settings = get_settings()
    if settings.rag_embedder == "ollama":
        return OllamaEmbeddingClient(
            base_url=settings.ollama_embed_base_url,
            model=settings.ollama_embed_model,
            dimension=settings.rag_embedding_dim,
            timeout_seconds=settings.ollama_timeout_seconds,
        )
    return HashingEmbedder(dimension=settings.rag_embedding_dim)


@lru_cache(maxsize=4)
def _load_snapshot(
    index_path: str, chunks_path: str, index_mtime_ns: int, chunks_mtime_ns: int
) -> tuple[VectorIndex, ChunkStore]:
    # mtimes are part of the cache key so a swapped-in rebuild is picked up.
    del index_mtime_ns, chunks_mtime_ns
    return VectorIndex.load(Path(index_path)), ChunkStore.load(Path(chunks_path))


def _current_snapshot(settings: Settings) -> tuple[VectorIndex, ChunkStore]:
    index_path = Path(settings.rag_index_path)
    chunks_path = Path(settings.rag_chunks_path)

    try:
        return _load_snapshot(
            str(index_path),
            str(chunks_path),
            index_path.stat().st_mtime_ns,
            chunks_path.stat().st_mtime_ns,
        )
    except (FileNotFoundError, IndexIOError) as exc:
        raise HTTPException(
            status_code=503, detail=f"RAG index not available: {exc}. {MISSING_INDEX_HINT}"
        ) from exc
    except (CorruptIndexError, ValueError) as exc:
        raise HTTPException(status_code=500, detail=f"RAG index is corrupt: {exc}") from exc


def get_query_pipeline(
    embedder: Annotated[Embedder, Depends(get_embedder)],
) -> QueryPipeline:
    settings = get_settings()
    index, chunks = _current_snapshot(settings)

    return QueryPipeline(
        index=index,
        embedder=embedder,
        chunks=chunks,
        snippet_chars=settings.rag_snippet_chars,
        overfetch=settings.rag_rerank_overfetch,
        min_score=settings.rag_min_score,
    )


def _source_filter(source: str) -> MetadataFilter:
    def matches(metadata: Mapping[str, MetadataValue]) -> bool:
        return metadata.get("source_path") == source

    return matches


def _result_payload(result: QueryResult) -> dict[str, Any]:
    payload = result.to_dict()
    payload["score"] = round(result.score, 6)
    return payload


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/rag/search")
def rag_search(
    q: str,
    pipeline: Annotated[QueryPipeline, Depends(get_query_pipeline)],
    k: int = 3,
    source: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")

    top_k = max(1, min(k, 50))
    metadata_filter = _source_filter(source) if source is not None else None

    try:
        results = pipeline.answer(q, top_k, metadata_filter)
    except EmbeddingError as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc
    except VectorIndexError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return [_result_payload(result) for result in results]


@app.get("/rag/status")
def rag_status() -> dict[str, Any]:
    settings = get_settings()
    index, chunks = _current_snapshot(settings)

    return {
        **index.describe(),
        "chunk_records": len(chunks),
        "index_path": settings.rag_index_path,
    }


def _reindex_strategy(settings: Settings, request: ReindexRequest) -> Strategy:
    overrides = replace(
        settings,
        rag_chunk_strategy=request.chunk_strategy or settings.rag_chunk_strategy,
        rag_chunk_size=request.chunk_size or settings.rag_chunk_size,
        rag_chunk_overlap=(
            request.chunk_overlap
            if request.chunk_overlap is not None
            else settings.rag_chunk_overlap
        ),
        rag_section_max_size=request.section_max_size or settings.rag_section_max_size,
    )
    return overrides.chunk_strategy()


@app.post("/rag/reindex")
def rag_reindex(
    embedder: Annotated[Embedder, Depends(get_embedder)],
    request: ReindexRequest | None = None,
) -> dict[str, Any]:
    settings = get_settings()
    request = request or ReindexRequest()

    try:
        strategy = _reindex_strategy(settings, request)
        metrics = run_reindex(
            source_dir=Path(request.source_dir or settings.rag_source_dir),
            index_path=Path(settings.rag_index_path),
            chunks_path=Path(settings.rag_chunks_path),
            embedder=embedder,
            strategy=strategy,
            dedup_paragraphs=settings.rag_dedup_paragraphs,
            max_workers=settings.rag_ingest_workers,
            artifact_dir=Path(settings.rag_artifact_dir),
            emit_normalized=settings.rag_emit_normalized,
            emit_word_tally=settings.rag_emit_word_tally,
        )
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid chunking parameters: {exc}") from exc
    except (FileNotFoundError, NotADirectoryError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except EmbeddingError as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc
    except (VectorIndexError, ValueError) as exc:
        raise HTTPException(status_code=500, detail=f"Reindex failed: {exc}") from exc

    return dict(metrics)


def run() -> None:
    import uvicorn

    uvicorn.run("docindex.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
