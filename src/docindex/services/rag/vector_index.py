from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
import json
import logging
import math
import os
from pathlib import Path
import threading
from types import MappingProxyType
from typing import Any, Union

from docindex.services.rag.errors import (
    ChunkNotFoundError,
    CorruptIndexError,
    DimensionMismatchError,
    IndexIOError,
    ModelMismatchError,
)
from docindex.services.rag.types import (
    Embedding,
    MetadataValue,
    VectorIndexEntry,
    validate_metadata,
    vector_norm,
)

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "docindex.vector-index"
SNAPSHOT_VERSION = 1

MetadataFilter = Callable[[Mapping[str, MetadataValue]], bool]
QueryVector = Union[Embedding, Sequence[float]]
IndexItem = tuple[str, Embedding, Mapping[str, Any]]


@dataclass(frozen=True)
class _IndexState:
    dimension: int | None
    model_id: str | None
    entries: Mapping[str, VectorIndexEntry]


_EMPTY_STATE = _IndexState(dimension=None, model_id=None, entries=MappingProxyType({}))


def cosine_similarity(
    a: Sequence[float],
    b: Sequence[float],
    *,
    norm_a: float | None = None,
    norm_b: float | None = None,
) -> float:
    """Cosine of the angle between ``a`` and ``b``, clamped to ``[-1, 1]``.

    A zero vector is proportional to every vector, so any comparison
    involving one scores 1.0.
    """
    if len(a) != len(b):
        raise DimensionMismatchError(expected=len(b), actual=len(a))

    norm_a = vector_norm(a) if norm_a is None else norm_a
    norm_b = vector_norm(b) if norm_b is None else norm_b
    if norm_a == 0 or norm_b == 0:
        return 1.0

    dot = math.fsum(x * y for x, y in zip(a, b))
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def _check_finite(vector: Sequence[float]) -> None:
    if not all(math.isfinite(value) for value in vector):
        raise ValueError("vector values must be finite")


class VectorIndex:
    """In-memory brute-force cosine index.

    Writers are serialized by a lock and publish a new immutable state on
    commit; readers use whichever state was committed when they started, so
    they never see a half-applied write and never block on writers.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()
        self._state = _EMPTY_STATE

    @property
    def dimension(self) -> int | None:
        return self._state.dimension

    @property
    def model_id(self) -> str | None:
        return self._state.model_id

    def __len__(self) -> int:
        return len(self._state.entries)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._state.entries

    def chunk_ids(self) -> list[str]:
        return sorted(self._state.entries)

    def get(self, chunk_id: str) -> VectorIndexEntry:
        entry = self._state.entries.get(chunk_id)
        if entry is None:
            raise ChunkNotFoundError(chunk_id)
        return entry

    def document_chunk_ids(self, document_id: str) -> list[str]:
        return sorted(
            chunk_id
            for chunk_id, entry in self._state.entries.items()
            if entry.metadata.get("document_id") == document_id
        )

    def document_ids(self) -> list[str]:
        return sorted(
            {
                str(entry.metadata["document_id"])
                for entry in self._state.entries.values()
                if "document_id" in entry.metadata
            }
        )

    def describe(self) -> dict[str, object]:
        state = self._state
        return {
            "dimension": state.dimension,
            "model_id": state.model_id,
            "entry_count": len(state.entries),
            "document_count": len(self.document_ids()),
        }

    def _prepare(
        self, state: _IndexState, items: Iterable[IndexItem]
    ) -> tuple[int | None, str | None, list[VectorIndexEntry]]:
        dimension = state.dimension
        model_id = state.model_id
        prepared: list[VectorIndexEntry] = []

        for chunk_id, embedding, metadata in items:
            if not isinstance(chunk_id, str) or not chunk_id:
                raise ValueError("chunk_id must be a non-empty string")
            if embedding.dimension == 0:
                raise ValueError("embedding vector must not be empty")
            _check_finite(embedding.vector)

            if dimension is None:
                dimension = embedding.dimension
            elif embedding.dimension != dimension:
                raise DimensionMismatchError(expected=dimension, actual=embedding.dimension)

            if model_id is None:
                model_id = embedding.model_id
            elif embedding.model_id != model_id:
                raise ModelMismatchError(expected=model_id, actual=embedding.model_id)

            prepared.append(VectorIndexEntry.create(chunk_id, embedding, metadata or {}))

        return dimension, model_id, prepared

    def _commit(
        self,
        items: Iterable[IndexItem],
        *,
        drop: Callable[[VectorIndexEntry], bool] | None = None,
    ) -> int:
        with self._write_lock:
            state = self._state
            dimension, model_id, prepared = self._prepare(state, items)

            entries = {
                chunk_id: entry
                for chunk_id, entry in state.entries.items()
                if drop is None or not drop(entry)
            }
            for entry in prepared:
                entries[entry.chunk_id] = entry

            self._state = _IndexState(
                dimension=dimension,
                model_id=model_id,
                entries=MappingProxyType(entries),
            )
        return len(prepared)

    def add(
        self,
        chunk_id: str,
        embedding: Embedding,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        self._commit([(chunk_id, embedding, metadata or {})])

    def add_many(self, items: Iterable[IndexItem]) -> int:
        return self._commit(list(items))

    def replace_document(self, document_id: str, items: Iterable[IndexItem]) -> int:
        """Swap every entry of ``document_id`` for ``items`` in one commit."""
        return self._commit(
            list(items),
            drop=lambda entry: entry.metadata.get("document_id") == document_id,
        )

    def remove(self, chunk_id: str) -> None:
        with self._write_lock:
            state = self._state
            if chunk_id not in state.entries:
                raise ChunkNotFoundError(chunk_id)

            entries = {key: value for key, value in state.entries.items() if key != chunk_id}
            self._state = _IndexState(
                dimension=state.dimension,
                model_id=state.model_id,
                entries=MappingProxyType(entries),
            )

    def remove_document(self, document_id: str) -> int:
        before = len(self._state.entries)
        self._commit(
            [],
            drop=lambda entry: entry.metadata.get("document_id") == document_id,
        )
        return before - len(self._state.entries)

    def search(
        self,
        query_vector: QueryVector,
        k: int,
        filter: MetadataFilter | None = None,
    ) -> list[tuple[str, float]]:
        return [
            (entry.chunk_id, score)
            for entry, score in self.search_entries(query_vector, k, filter)
        ]

    def search_entries(
        self,
        query_vector: QueryVector,
        k: int,
        filter: MetadataFilter | None = None,
    ) -> list[tuple[VectorIndexEntry, float]]:
        if k <= 0:
            raise ValueError("k must be > 0")

        state = self._state
        query = query_vector.vector if isinstance(query_vector, Embedding) else tuple(
            float(value) for value in query_vector
        )
        if state.dimension is None:
            return []
        if len(query) != state.dimension:
            raise DimensionMismatchError(expected=state.dimension, actual=len(query))
        _check_finite(query)

        query_norm = vector_norm(query)
        scored = [
            (
                entry,
                cosine_similarity(
                    query, entry.embedding.vector, norm_a=query_norm, norm_b=entry.norm
                ),
            )
            for entry in state.entries.values()
            if filter is None or filter(entry.metadata)
        ]
        scored.sort(key=lambda item: (-item[1], item[0].chunk_id))
        return scored[:k]

    def persist(self, target: Path) -> Path:
        # Writers wait for the snapshot so it matches one committed state.
        with self._write_lock:
            state = self._state
            tmp_path = target.with_suffix(f"{target.suffix}.tmp")
            header = {
                "format": SNAPSHOT_FORMAT,
                "version": SNAPSHOT_VERSION,
                "dimension": state.dimension,
                "entry_count": len(state.entries),
                "model_id": state.model_id,
            }

            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                with tmp_path.open("w", encoding="utf-8") as handle:
                    handle.write(json.dumps(header) + "\n")
                    for chunk_id in sorted(state.entries):
                        entry = state.entries[chunk_id]
                        record = {
                            "chunk_id": chunk_id,
                            "vector": list(entry.embedding.vector),
                            "metadata": dict(entry.metadata),
                        }
                        handle.write(json.dumps(record, ensure_ascii=False, allow_nan=False) + "\n")
                os.replace(tmp_path, target)
            except OSError as exc:
                with suppress(OSError):
                    tmp_path.unlink()
                raise IndexIOError(f"Failed to persist index to {target}: {exc}") from exc

        logger.info("persisted %d index entries to %s", header["entry_count"], target)
        return target

    @classmethod
    def load(cls, source: Path) -> VectorIndex:
        try:
            raw = source.read_bytes()
        except OSError as exc:
            raise IndexIOError(f"Failed to read index snapshot {source}: {exc}") from exc

        try:
            state = _parse_snapshot(raw)
        except CorruptIndexError as exc:
            raise CorruptIndexError(f"{source}: {exc}") from exc

        index = cls()
        index._state = state
        logger.info("loaded %d index entries from %s", len(state.entries), source)
        return index


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_json_line(line: str, line_number: int) -> dict[str, Any]:
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError as exc:
        raise CorruptIndexError(f"line {line_number}: invalid JSON ({exc.msg})") from exc
    if not isinstance(parsed, dict):
        raise CorruptIndexError(f"line {line_number}: expected a JSON object")
    return parsed


def _parse_header(line: str) -> tuple[int | None, str | None, int]:
    header = _parse_json_line(line, 1)
    if header.get("format") != SNAPSHOT_FORMAT:
        raise CorruptIndexError(f"unknown snapshot format {header.get('format')!r}")
    if header.get("version") != SNAPSHOT_VERSION:
        raise CorruptIndexError(f"unsupported snapshot version {header.get('version')!r}")

    dimension = header.get("dimension")
    model_id = header.get("model_id")
    entry_count = header.get("entry_count")
    if dimension is not None and (not _is_int(dimension) or dimension <= 0):
        raise CorruptIndexError("header dimension must be a positive integer or null")
    if model_id is not None and not isinstance(model_id, str):
        raise CorruptIndexError("header model_id must be a string or null")
    if not _is_int(entry_count) or entry_count < 0:
        raise CorruptIndexError("header entry_count must be a non-negative integer")
    if entry_count > 0 and (dimension is None or model_id is None):
        raise CorruptIndexError("non-empty snapshot must declare dimension and model_id")
    return dimension, model_id, entry_count


def _parse_entry(
    line: str, line_number: int, dimension: int, model_id: str
) -> VectorIndexEntry:
    record = _parse_json_line(line, line_number)

    chunk_id = record.get("chunk_id")
    vector = record.get("vector")
    metadata = record.get("metadata")
    if not isinstance(chunk_id, str) or not chunk_id:
        raise CorruptIndexError(f"line {line_number}: chunk_id must be a non-empty string")
    if not isinstance(vector, list) or len(vector) != dimension:
        raise CorruptIndexError(f"line {line_number}: vector must hold {dimension} numbers")
    if not all(
        isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
        for value in vector
    ):
        raise CorruptIndexError(f"line {line_number}: vector values must be finite numbers")
    if not isinstance(metadata, dict):
        raise CorruptIndexError(f"line {line_number}: metadata must be an object")

    try:
        validate_metadata(metadata)
    except ValueError as exc:
        raise CorruptIndexError(f"line {line_number}: {exc}") from exc

    return VectorIndexEntry.create(chunk_id, Embedding(vector=vector, model_id=model_id), metadata)


def _parse_snapshot(raw: bytes) -> _IndexState:
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptIndexError("snapshot is not valid UTF-8") from exc

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    if not lines:
        raise CorruptIndexError("snapshot is empty")

    dimension, model_id, entry_count = _parse_header(lines[0])
    if len(lines) - 1 != entry_count:
        raise CorruptIndexError(
            f"header declares {entry_count} entries, found {len(lines) - 1}"
        )

    entries: dict[str, VectorIndexEntry] = {}
    for line_number, line in enumerate(lines[1:], start=2):
        entry = _parse_entry(line, line_number, dimension or 0, model_id or "")
        if entry.chunk_id in entries:
            raise CorruptIndexError(f"line {line_number}: duplicate chunk_id {entry.chunk_id}")
        entries[entry.chunk_id] = entry

    return _IndexState(
        dimension=dimension,
        model_id=model_id,
        entries=MappingProxyType(entries),
    )
