from docindex.services.rag.chunker import chunk
from docindex.services.rag.ingest import index_documents, ingest_documents
from docindex.services.rag.normalizer import normalize
from docindex.services.rag.query import QueryPipeline
from docindex.services.rag.records import ChunkStore
from docindex.services.rag.types import (
    Chunk,
    Embedding,
    FixedWindow,
    IngestionSummary,
    QueryResult,
    StructureAware,
)
from docindex.services.rag.vector_index import VectorIndex

__all__ = [
    "Chunk",
    "ChunkStore",
    "Embedding",
    "FixedWindow",
    "IngestionSummary",
    "QueryPipeline",
    "QueryResult",
    "StructureAware",
    "VectorIndex",
    "chunk",
    "index_documents",
    "ingest_documents",
    "normalize",
]
