from dataclasses import dataclass
from functools import lru_cache
import logging
import os
from pathlib import Path
import sys

from docindex.services.rag.types import FixedWindow, Strategy, StructureAware


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    rag_source_dir: str
    rag_index_dir: str
    rag_index_path: str
    rag_chunks_path: str
    rag_chunk_strategy: str
    rag_chunk_size: int
    rag_chunk_overlap: int
    rag_chunk_unit: str
    rag_section_max_size: int
    rag_section_min_size: int
    rag_dedup_paragraphs: bool
    rag_ingest_workers: int
    rag_embedder: str
    rag_embedding_dim: int
    rag_snippet_chars: int
    rag_rerank_overfetch: int
    rag_min_score: float | None
    rag_artifact_dir: str
    rag_emit_normalized: bool
    rag_emit_word_tally: bool
    ollama_embed_base_url: str
    ollama_embed_model: str
    ollama_timeout_seconds: float
    log_level: str

    def chunk_strategy(self) -> Strategy:
        if self.rag_chunk_strategy == "structured":
            return StructureAware(
                max_size=self.rag_section_max_size,
                min_size=self.rag_section_min_size,
            )
        return FixedWindow(
            size=self.rag_chunk_size,
            overlap=self.rag_chunk_overlap,
            unit=self.rag_chunk_unit,
        )


@lru_cache
def get_settings() -> Settings:
    index_dir = os.getenv("RAG_INDEX_DIR", "data/rag_index")
    return Settings(
        rag_source_dir=os.getenv("RAG_SOURCE_DIR", "data/sample_docs"),
        rag_index_dir=index_dir,
        rag_index_path=os.getenv("RAG_INDEX_PATH", str(Path(index_dir) / "index.jsonl")),
        rag_chunks_path=os.getenv("RAG_CHUNKS_PATH", str(Path(index_dir) / "chunks.jsonl")),
        rag_chunk_strategy=os.getenv("RAG_CHUNK_STRATEGY", "fixed"),
        rag_chunk_size=_to_int(os.getenv("RAG_CHUNK_SIZE"), default=500, minimum=1),
        rag_chunk_overlap=_to_int(os.getenv("RAG_CHUNK_OVERLAP"), default=50, minimum=0),
        rag_chunk_unit=os.getenv("RAG_CHUNK_UNIT", "char"),
        rag_section_max_size=_to_int(
            os.getenv("RAG_SECTION_MAX_SIZE"), default=1200, minimum=1
        ),
        rag_section_min_size=_to_int(os.getenv("RAG_SECTION_MIN_SIZE"), default=0, minimum=0),
        rag_dedup_paragraphs=_to_bool(os.getenv("RAG_DEDUP_PARAGRAPHS"), default=True),
        rag_ingest_workers=_to_int(os.getenv("RAG_INGEST_WORKERS"), default=4, minimum=1),
        rag_embedder=os.getenv("RAG_EMBEDDER", "hashing"),
        rag_embedding_dim=_to_int(os.getenv("RAG_EMBEDDING_DIM"), default=256, minimum=8),
        rag_snippet_chars=_to_int(os.getenv("RAG_SNIPPET_CHARS"), default=240, minimum=16),
        rag_rerank_overfetch=_to_int(os.getenv("RAG_RERANK_OVERFETCH"), default=4, minimum=1),
        rag_min_score=_to_optional_float(os.getenv("RAG_MIN_SCORE")),
        rag_artifact_dir=os.getenv("RAG_ARTIFACT_DIR", str(Path(index_dir) / "artifacts")),
        rag_emit_normalized=_to_bool(os.getenv("RAG_EMIT_NORMALIZED"), default=False),
        rag_emit_word_tally=_to_bool(os.getenv("RAG_EMIT_WORD_TALLY"), default=False),
        ollama_embed_base_url=os.getenv("OLLAMA_EMBED_BASE_URL", "http://localhost:11434/v1"),
        ollama_embed_model=os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        ollama_timeout_seconds=float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(handler)
    root_logger.setLevel(level or get_settings().log_level)
    logging.getLogger("httpx").setLevel(logging.WARNING)
