from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
import json
import os
from pathlib import Path
import threading
from types import MappingProxyType
from typing import Any

from docindex.services.rag.types import Chunk, validate_metadata

_INT_FIELDS = ("start_offset", "end_offset")
_STR_FIELDS = ("chunk_id", "document_id", "strategy", "text")


def chunk_from_record(record: Mapping[str, Any]) -> Chunk:
    for key in _STR_FIELDS:
        if not isinstance(record.get(key), str):
            raise ValueError(f"chunk record field {key!r} must be a string")
    for key in _INT_FIELDS:
        value = record.get(key)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"chunk record field {key!r} must be a non-negative integer")
    if record["end_offset"] < record["start_offset"]:
        raise ValueError("chunk record end_offset precedes start_offset")

    metadata = record.get("metadata", {})
    if not isinstance(metadata, dict):
        raise ValueError("chunk record field 'metadata' must be an object")

    return Chunk(
        chunk_id=record["chunk_id"],
        document_id=record["document_id"],
        strategy=record["strategy"],
        start_offset=record["start_offset"],
        end_offset=record["end_offset"],
        text=record["text"],
        metadata=validate_metadata(metadata),
    )


def write_chunk_records(path: Path, chunks: Iterable[Chunk]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            for chunk in chunks:
                handle.write(json.dumps(chunk.to_record(), ensure_ascii=False) + "\n")
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return path


def read_chunk_records(path: Path) -> list[Chunk]:
    chunks: list[Chunk] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                chunks.append(chunk_from_record(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as exc:
                raise ValueError(f"{path}:{line_number}: invalid chunk record: {exc}") from exc
    return chunks


class ChunkStore(Mapping[str, Chunk]):
    """chunk_id -> Chunk lookup, grouped by owning document."""

    def __init__(self, chunks: Iterable[Chunk] = ()) -> None:
        self._lock = threading.Lock()
        self._by_document: dict[str, tuple[Chunk, ...]] = {}
        self._by_id: Mapping[str, Chunk] = MappingProxyType({})
        for document_id, group in _group_by_document(chunks).items():
            self._by_document[document_id] = group
        self._reindex()

    def _reindex(self) -> None:
        self._by_id = MappingProxyType(
            {
                chunk.chunk_id: chunk
                for group in self._by_document.values()
                for chunk in group
            }
        )

    def __getitem__(self, chunk_id: str) -> Chunk:
        return self._by_id[chunk_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_id)

    def __len__(self) -> int:
        return len(self._by_id)

    def document_ids(self) -> list[str]:
        return sorted(self._by_document)

    def document_chunks(self, document_id: str) -> tuple[Chunk, ...]:
        return self._by_document.get(document_id, ())

    def put_document(self, document_id: str, chunks: Iterable[Chunk]) -> None:
        group = tuple(chunks)
        with self._lock:
            if group:
                self._by_document[document_id] = group
            else:
                self._by_document.pop(document_id, None)
            self._reindex()

    def remove_document(self, document_id: str) -> None:
        self.put_document(document_id, ())

    def ordered_chunks(self) -> list[Chunk]:
        return [
            chunk
            for document_id in sorted(self._by_document)
            for chunk in self._by_document[document_id]
        ]

    def save(self, path: Path) -> Path:
        with self._lock:
            return write_chunk_records(path, self.ordered_chunks())

    @classmethod
    def load(cls, path: Path) -> ChunkStore:
        return cls(read_chunk_records(path))


def _group_by_document(chunks: Iterable[Chunk]) -> dict[str, tuple[Chunk, ...]]:
    grouped: dict[str, list[Chunk]] = {}
    for chunk in chunks:
        grouped.setdefault(chunk.document_id, []).append(chunk)
    return {document_id: tuple(group) for document_id, group in grouped.items()}
