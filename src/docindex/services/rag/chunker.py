from __future__ import annotations

import hashlib
import re

from docindex.services.rag.errors import ConfigError
from docindex.services.rag.types import (
    Chunk,
    FixedWindow,
    MetadataValue,
    NormalizedText,
    Strategy,
    StructureAware,
)

_TOKEN = re.compile(r"\S+")

Span = tuple[int, int, dict[str, MetadataValue]]


def validate_strategy(strategy: object) -> Strategy:
    if not isinstance(strategy, (FixedWindow, StructureAware)):
        raise ConfigError(f"Unknown chunking strategy: {strategy!r}")
    return strategy


def _window_bounds(length: int, size: int, overlap: int) -> list[tuple[int, int]]:
    # A trailing window adding no more than `overlap` new units is folded
    # into its predecessor, which then runs to the end.
    if length <= 0:
        return []

    step = size - overlap
    bounds: list[tuple[int, int]] = []
    start = 0
    while True:
        end = start + size
        if end >= length - overlap:
            bounds.append((start, length))
            return bounds
        bounds.append((start, end))
        start += step


def _fixed_window_spans(text: str, strategy: FixedWindow) -> list[Span]:
    if strategy.unit == "char":
        return [
            (start, end, {})
            for start, end in _window_bounds(len(text), strategy.size, strategy.overlap)
        ]

    tokens = [match.start() for match in _TOKEN.finditer(text)]
    spans: list[Span] = []
    for first, last in _window_bounds(len(tokens), strategy.size, strategy.overlap):
        start = 0 if first == 0 else tokens[first]
        end = len(text) if last == len(tokens) else tokens[last]
        spans.append((start, end, {"token_start": first, "token_end": last}))
    return spans


def _rebalance_tail(pieces: list[tuple[int, int]], min_size: int) -> list[tuple[int, int]]:
    # A short tail shares the last two pieces' span evenly, so neither piece
    # grows past the section limit.
    if len(pieces) < 2 or pieces[-1][1] - pieces[-1][0] >= min_size:
        return pieces

    (previous_start, _), (_, tail_end) = pieces[-2:]
    middle = previous_start + (tail_end - previous_start + 1) // 2
    return [*pieces[:-2], (previous_start, middle), (middle, tail_end)]


def _structure_aware_spans(normalized: NormalizedText, strategy: StructureAware) -> list[Span]:
    text = normalized.text
    if not text:
        return []

    headings = {
        paragraph.start: paragraph.heading_level
        for paragraph in normalized.paragraphs
        if paragraph.is_heading
    }
    boundaries = sorted({0, *headings})
    boundaries.append(len(text))

    spans: list[Span] = []
    for section_index, (section_start, section_end) in enumerate(
        zip(boundaries, boundaries[1:])
    ):
        section_meta: dict[str, MetadataValue] = {"section_index": section_index}
        if section_start in headings:
            heading_end = text.find("\n", section_start, section_end)
            section_meta["section_heading"] = text[
                section_start : section_end if heading_end < 0 else heading_end
            ]
            section_meta["section_level"] = headings[section_start]

        pieces = _rebalance_tail(
            _window_bounds(section_end - section_start, strategy.max_size, 0),
            strategy.min_size,
        )

        for start, end in pieces:
            spans.append((section_start + start, section_start + end, dict(section_meta)))
    return spans


def _fingerprint(normalized: NormalizedText, strategy: Strategy) -> str:
    digest = hashlib.sha256()
    digest.update(normalized.text.encode("utf-8"))
    digest.update(repr(strategy).encode("utf-8"))
    return digest.hexdigest()[:8]


def _duplicate_metadata(
    normalized: NormalizedText, first: int, last: int
) -> dict[str, MetadataValue]:
    dropped = [
        duplicate
        for duplicate in normalized.duplicates
        if first <= duplicate.kept_index <= last
    ]
    if not dropped:
        return {"duplicates_dropped": 0}
    return {
        "duplicates_dropped": len(dropped),
        "duplicate_source_offsets": ",".join(
            f"{duplicate.source_start}-{duplicate.source_end}" for duplicate in dropped
        ),
    }


def chunk(normalized: NormalizedText, strategy: Strategy) -> list[Chunk]:
    validate_strategy(strategy)

    if isinstance(strategy, FixedWindow):
        spans = _fixed_window_spans(normalized.text, strategy)
    else:
        spans = _structure_aware_spans(normalized, strategy)

    fingerprint = _fingerprint(normalized, strategy)
    chunks: list[Chunk] = []
    for index, (start, end, extra) in enumerate(spans):
        first, last = normalized.paragraph_range(start, end)
        metadata: dict[str, MetadataValue] = {
            "document_id": normalized.doc_id,
            "source_path": normalized.source_path,
            "kind": normalized.kind,
            "chunk_index": index,
            "paragraph_start": first,
            "paragraph_end": last,
            **strategy.describe(),
            **_duplicate_metadata(normalized, first, last),
            **extra,
        }
        chunks.append(
            Chunk(
                chunk_id=f"{normalized.doc_id}-{fingerprint}-{index:04d}",
                document_id=normalized.doc_id,
                strategy=strategy.tag,
                start_offset=start,
                end_offset=end,
                text=normalized.text[start:end],
                metadata=metadata,
            )
        )
    return chunks


def chunk_documents(
    documents: list[NormalizedText], strategy: Strategy
) -> list[Chunk]:
    validate_strategy(strategy)

    chunks: list[Chunk] = []
    for normalized in documents:
        chunks.extend(chunk(normalized, strategy))
    return chunks
