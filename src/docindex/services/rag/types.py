from __future__ import annotations

from dataclasses import dataclass, field
import math
from types import MappingProxyType
from typing import Any, Mapping, Sequence, Union

from docindex.services.rag.errors import ConfigError

MetadataValue = Union[str, int, float]
Metadata = Mapping[str, MetadataValue]

DOCUMENT_KINDS = ("txt", "md")
CHUNK_UNITS = ("char", "token")


def vector_norm(vector: Sequence[float]) -> float:
    return math.sqrt(math.fsum(value * value for value in vector))


def validate_metadata(metadata: Mapping[str, Any]) -> dict[str, MetadataValue]:
    validated: dict[str, MetadataValue] = {}
    for key, value in metadata.items():
        if not isinstance(key, str):
            raise ValueError(f"metadata keys must be strings, got {key!r}")
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValueError(f"metadata value for {key!r} must be a string or number")
        if isinstance(value, float) and not math.isfinite(value):
            raise ValueError(f"metadata value for {key!r} must be finite")
        validated[key] = value
    return validated


@dataclass(frozen=True)
class Document:
    doc_id: str
    source_path: str
    content: bytes
    encoding: str
    content_hash: str
    kind: str


@dataclass(frozen=True)
class Paragraph:
    start: int
    end: int
    content_hash: str
    heading_level: int
    source_start: int
    source_end: int

    @property
    def is_heading(self) -> bool:
        return self.heading_level > 0


@dataclass(frozen=True)
class DuplicateParagraph:
    content_hash: str
    source_start: int
    source_end: int
    kept_index: int


@dataclass(frozen=True)
class NormalizedText:
    doc_id: str
    source_path: str
    kind: str
    content_hash: str
    text: str
    paragraphs: tuple[Paragraph, ...]
    duplicates: tuple[DuplicateParagraph, ...] = ()

    def paragraph_range(self, start: int, end: int) -> tuple[int, int]:
        """Index range ``[first, last]`` of paragraphs overlapping ``[start, end)``."""
        first = last = -1
        for index, paragraph in enumerate(self.paragraphs):
            if paragraph.end <= start:
                continue
            if paragraph.start >= end:
                break
            if first < 0:
                first = index
            last = index
        return first, last


@dataclass(frozen=True)
class FixedWindow:
    size: int
    overlap: int = 0
    unit: str = "char"

    tag = "fixed_window"

    def __post_init__(self) -> None:
        if isinstance(self.size, bool) or not isinstance(self.size, int) or self.size <= 0:
            raise ConfigError("size must be a positive integer")
        if isinstance(self.overlap, bool) or not isinstance(self.overlap, int) or self.overlap < 0:
            raise ConfigError("overlap must be an integer >= 0")
        if self.overlap >= self.size:
            raise ConfigError("overlap must be smaller than size")
        if self.unit not in CHUNK_UNITS:
            raise ConfigError(f"unit must be one of {CHUNK_UNITS}, got {self.unit!r}")

    def describe(self) -> dict[str, MetadataValue]:
        return {"chunk_size": self.size, "chunk_overlap": self.overlap, "chunk_unit": self.unit}


@dataclass(frozen=True)
class StructureAware:
    max_size: int
    min_size: int = 0

    tag = "structure_aware"

    def __post_init__(self) -> None:
        if (
            isinstance(self.max_size, bool)
            or not isinstance(self.max_size, int)
            or self.max_size <= 0
        ):
            raise ConfigError("max_size must be a positive integer")
        if (
            isinstance(self.min_size, bool)
            or not isinstance(self.min_size, int)
            or self.min_size < 0
        ):
            raise ConfigError("min_size must be an integer >= 0")
        if self.min_size > self.max_size:
            raise ConfigError("min_size must not exceed max_size")

    def describe(self) -> dict[str, MetadataValue]:
        return {"section_max_size": self.max_size, "section_min_size": self.min_size}


Strategy = Union[FixedWindow, StructureAware]


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    document_id: str
    strategy: str
    start_offset: int
    end_offset: int
    text: str
    metadata: Mapping[str, MetadataValue] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "strategy": self.strategy,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "text": self.text,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class Embedding:
    vector: tuple[float, ...]
    model_id: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "vector", tuple(float(value) for value in self.vector))

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass(frozen=True)
class VectorIndexEntry:
    chunk_id: str
    embedding: Embedding
    metadata: Mapping[str, MetadataValue]
    norm: float

    @classmethod
    def create(
        cls, chunk_id: str, embedding: Embedding, metadata: Mapping[str, Any]
    ) -> VectorIndexEntry:
        return cls(
            chunk_id=chunk_id,
            embedding=embedding,
            metadata=MappingProxyType(validate_metadata(metadata)),
            norm=vector_norm(embedding.vector),
        )


@dataclass(frozen=True)
class SearchHit:
    chunk_id: str
    score: float
    text: str
    metadata: Mapping[str, MetadataValue]


@dataclass(frozen=True)
class QueryResult:
    chunk_id: str
    score: float
    snippet: str
    metadata: Mapping[str, MetadataValue]

    def to_dict(self) -> dict[str, object]:
        return {
            "chunk_id": self.chunk_id,
            "score": self.score,
            "snippet": self.snippet,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class SkippedDocument:
    source_path: str
    reason: str


@dataclass(frozen=True)
class IngestionSummary:
    document_count: int
    indexed_count: int
    unchanged_count: int
    chunk_count: int
    skipped: tuple[SkippedDocument, ...] = ()
    shared_paragraphs: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    token_counts: Mapping[str, int] = field(default_factory=dict)
    artifacts: tuple[str, ...] = ()
