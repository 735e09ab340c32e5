import pytest

from docindex.services.rag.chunker import chunk, chunk_documents
from docindex.services.rag.errors import ConfigError
from docindex.services.rag.loader import build_document
from docindex.services.rag.normalizer import normalize
from docindex.services.rag.types import FixedWindow, NormalizedText, StructureAware


def _normalized(name: str, text: str) -> NormalizedText:
    return normalize(build_document(name, text.encode("utf-8")))


def test_fixed_window_produces_overlapping_windows() -> None:
    normalized = _normalized("long.txt", "a" * 1000)

    chunks = chunk(normalized, FixedWindow(size=200, overlap=50))

    assert [(item.start_offset, item.end_offset) for item in chunks] == [
        (0, 200),
        (150, 350),
        (300, 500),
        (450, 650),
        (600, 800),
        (750, 1000),
    ]
    assert all(item.strategy == "fixed_window" for item in chunks)


def test_fixed_window_covers_text_and_respects_bounds() -> None:
    text = " ".join(f"word{index}" for index in range(300))
    normalized = _normalized("words.txt", text)
    strategy = FixedWindow(size=97, overlap=13)

    chunks = chunk(normalized, strategy)

    assert chunks[0].start_offset == 0
    assert chunks[-1].end_offset == len(normalized.text)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_offset <= previous.end_offset
        assert previous.end_offset - current.start_offset == strategy.overlap
    for item in chunks:
        assert item.text == normalized.text[item.start_offset : item.end_offset]
        assert 0 < len(item.text) <= strategy.size + strategy.overlap


def test_text_shorter_than_window_is_one_chunk() -> None:
    normalized = _normalized("short.txt", "tiny document")

    chunks = chunk(normalized, FixedWindow(size=500, overlap=50))

    assert len(chunks) == 1
    assert chunks[0].text == "tiny document"


def test_empty_text_produces_no_chunks() -> None:
    assert chunk(_normalized("empty.txt", ""), FixedWindow(size=10)) == []


@pytest.mark.parametrize(
    ("size", "overlap"),
    [(10, 10), (10, 11), (0, 0), (-5, 0), (10, -1)],
)
def test_invalid_fixed_window_raises_config_error(size: int, overlap: int) -> None:
    with pytest.raises(ConfigError):
        FixedWindow(size=size, overlap=overlap)


def test_unknown_strategy_raises_config_error() -> None:
    normalized = _normalized("doc.txt", "some text")

    with pytest.raises(ConfigError, match="Unknown chunking strategy"):
        chunk(normalized, "fixed")  # type: ignore[arg-type]


def test_token_unit_windows_snap_to_token_starts() -> None:
    normalized = _normalized("tokens.txt", "one two three four five six seven")

    chunks = chunk(normalized, FixedWindow(size=3, overlap=1, unit="token"))

    assert [item.text for item in chunks] == [
        "one two three ",
        "three four five ",
        "five six seven",
    ]
    assert [(item.metadata["token_start"], item.metadata["token_end"]) for item in chunks] == [
        (0, 3),
        (2, 5),
        (4, 7),
    ]


@pytest.mark.parametrize("min_size", [0, 20, 100])
def test_structure_aware_starts_sections_at_headings(min_size: int) -> None:
    normalized = _normalized("guide.md", "# A\n\nalpha body\n\n## B\n\nbeta body\n")

    chunks = chunk(normalized, StructureAware(max_size=100, min_size=min_size))

    assert [item.text for item in chunks] == ["A\n\nalpha body\n\n", "B\n\nbeta body"]
    assert chunks[0].metadata["section_heading"] == "A"
    assert chunks[0].metadata["section_level"] == 1
    assert chunks[1].metadata["section_heading"] == "B"
    assert chunks[1].metadata["section_level"] == 2
    assert all(item.strategy == "structure_aware" for item in chunks)


def test_structure_aware_rebalances_short_tail_within_max_size() -> None:
    normalized = _normalized("plain.txt", "x" * 25)

    chunks = chunk(normalized, StructureAware(max_size=10, min_size=6))

    assert [(item.start_offset, item.end_offset) for item in chunks] == [
        (0, 10),
        (10, 18),
        (18, 25),
    ]
    assert all(len(item.text) <= 10 for item in chunks)
    assert "section_heading" not in chunks[0].metadata


def test_structure_aware_never_exceeds_max_size() -> None:
    text = "# Intro\n\n" + "word " * 200 + "\n\n## Next\n\n" + "more " * 37
    normalized = _normalized("long.md", text)
    strategy = StructureAware(max_size=64, min_size=60)

    chunks = chunk(normalized, strategy)

    assert all(0 < len(item.text) <= strategy.max_size for item in chunks)
    assert chunks[0].start_offset == 0
    assert chunks[-1].end_offset == len(normalized.text)
    for previous, current in zip(chunks, chunks[1:]):
        assert previous.end_offset == current.start_offset


def test_heading_starts_new_chunk_even_below_min_size() -> None:
    normalized = _normalized("short.md", "# A\n\ntiny\n\n# B\n\nalso tiny\n")

    chunks = chunk(normalized, StructureAware(max_size=100, min_size=50))

    assert [item.text for item in chunks] == ["A\n\ntiny\n\n", "B\n\nalso tiny"]
    assert [item.metadata["section_heading"] for item in chunks] == ["A", "B"]


def test_chunk_ids_are_deterministic_and_unique() -> None:
    normalized = _normalized("doc.txt", "b" * 450)
    strategy = FixedWindow(size=100, overlap=10)

    first = chunk(normalized, strategy)
    second = chunk(normalized, strategy)
    other_strategy = chunk(normalized, FixedWindow(size=100, overlap=20))

    assert first == second
    assert len({item.chunk_id for item in first}) == len(first)
    assert all(item.chunk_id.startswith(normalized.doc_id) for item in first)
    assert first[0].chunk_id != other_strategy[0].chunk_id


def test_chunk_metadata_describes_origin_and_dropped_duplicates() -> None:
    normalized = _normalized("dup.txt", "dup\n\nother\n\ndup")

    [only] = chunk(normalized, FixedWindow(size=1000))

    assert only.metadata["source_path"] == "dup.txt"
    assert only.metadata["document_id"] == normalized.doc_id
    assert only.metadata["chunk_index"] == 0
    assert only.metadata["paragraph_start"] == 0
    assert only.metadata["paragraph_end"] == 1
    assert only.metadata["chunk_size"] == 1000
    assert only.metadata["duplicates_dropped"] == 1
    assert only.metadata["duplicate_source_offsets"] == "12-15"


def test_chunk_documents_keeps_document_order() -> None:
    documents = [_normalized("b.txt", "second"), _normalized("a.txt", "first")]

    chunks = chunk_documents(documents, FixedWindow(size=50))

    assert [item.metadata["source_path"] for item in chunks] == ["b.txt", "a.txt"]
