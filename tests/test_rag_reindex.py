from pathlib import Path
import threading

import pytest

from docindex.services.rag.embedder import HashingEmbedder
from docindex.services.rag.errors import ConfigError
from docindex.services.rag.records import ChunkStore
from docindex.services.rag.reindex import run_reindex
from docindex.services.rag.types import FixedWindow, StructureAware
from docindex.services.rag.vector_index import VectorIndex


def _paths(tmp_path: Path) -> tuple[Path, Path]:
    index_dir = tmp_path / "rag"
    index_dir.mkdir(parents=True, exist_ok=True)
    return index_dir / "index.jsonl", index_dir / "chunks.jsonl"


def test_run_reindex_writes_atomically_and_returns_metrics(
    tmp_path: Path, embedder: HashingEmbedder
) -> None:
    source_dir = tmp_path / "source"
    source_dir.mkdir(parents=True)
    (source_dir / "doc.txt").write_text("alpha beta gamma " * 80, encoding="utf-8")
    (source_dir / "guide.md").write_text("# Setup\n\ninstall it\n\n# Run\n\nstart it", encoding="utf-8")
    index_path, chunks_path = _paths(tmp_path)

    metrics = run_reindex(
        source_dir=source_dir,
        index_path=index_path,
        chunks_path=chunks_path,
        embedder=embedder,
        strategy=FixedWindow(size=120, overlap=20),
    )

    assert index_path.exists()
    assert chunks_path.exists()
    assert not index_path.with_suffix(".jsonl.rebuild").exists()
    assert not chunks_path.with_suffix(".jsonl.rebuild").exists()
    assert metrics["documents"] == 2
    assert metrics["skipped"] == 0
    assert metrics["chunks"] > 2
    assert metrics["dimension"] == embedder.dimension
    assert metrics["model_id"] == embedder.model_id

    index = VectorIndex.load(index_path)
    chunks = ChunkStore.load(chunks_path)
    assert len(index) == metrics["chunks"]
    assert sorted(chunks) == index.chunk_ids()


def test_run_reindex_self_check_failure_keeps_previous_index(
    tmp_path: Path, embedder: HashingEmbedder
) -> None:
    source_dir = tmp_path / "source"
    source_dir.mkdir(parents=True)
    (source_dir / "doc.txt").write_text("hello world " * 40, encoding="utf-8")
    index_path, chunks_path = _paths(tmp_path)
    strategy = StructureAware(max_size=200)

    run_reindex(
        source_dir=source_dir,
        index_path=index_path,
        chunks_path=chunks_path,
        embedder=embedder,
        strategy=strategy,
    )
    (source_dir / "doc.txt").unlink()

    with pytest.raises(ValueError, match="index is empty"):
        run_reindex(
            source_dir=source_dir,
            index_path=index_path,
            chunks_path=chunks_path,
            embedder=embedder,
            strategy=strategy,
        )

    assert len(VectorIndex.load(index_path)) > 0
    assert not index_path.with_suffix(".jsonl.rebuild").exists()
    assert not chunks_path.with_suffix(".jsonl.rebuild").exists()


def test_run_reindex_rejects_unknown_strategy(tmp_path: Path, embedder: HashingEmbedder) -> None:
    index_path, chunks_path = _paths(tmp_path)

    with pytest.raises(ConfigError):
        run_reindex(
            source_dir=tmp_path,
            index_path=index_path,
            chunks_path=chunks_path,
            embedder=embedder,
            strategy="fixed",  # type: ignore[arg-type]
        )

    assert not index_path.exists()


def test_concurrent_reindexes_leave_matching_files(
    tmp_path: Path, embedder: HashingEmbedder
) -> None:
    source_dir = tmp_path / "source"
    source_dir.mkdir(parents=True)
    for number in range(6):
        (source_dir / f"doc{number}.txt").write_text(
            f"document {number} " + "conveyor inspection notes " * 30, encoding="utf-8"
        )
    index_path, chunks_path = _paths(tmp_path)
    strategies = [FixedWindow(size=90, overlap=10), StructureAware(max_size=70)]
    results: list[int] = []
    errors: list[BaseException] = []

    def rebuild(strategy: FixedWindow | StructureAware) -> None:
        try:
            metrics = run_reindex(
                source_dir=source_dir,
                index_path=index_path,
                chunks_path=chunks_path,
                embedder=embedder,
                strategy=strategy,
            )
            results.append(metrics["chunks"])
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=rebuild, args=(strategy,)) for strategy in strategies * 2]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(results) == 4
    index = VectorIndex.load(index_path)
    assert sorted(ChunkStore.load(chunks_path)) == index.chunk_ids()
    assert not index_path.with_suffix(".jsonl.rebuild").exists()
    assert not chunks_path.with_suffix(".jsonl.rebuild").exists()


def test_run_reindex_emits_requested_artifacts(
    tmp_path: Path, embedder: HashingEmbedder
) -> None:
    source_dir = tmp_path / "source"
    source_dir.mkdir(parents=True)
    (source_dir / "doc.txt").write_text("Pump pump valve", encoding="utf-8")
    index_path, chunks_path = _paths(tmp_path)
    artifact_dir = tmp_path / "artifacts"

    metrics = run_reindex(
        source_dir=source_dir,
        index_path=index_path,
        chunks_path=chunks_path,
        embedder=embedder,
        strategy=FixedWindow(size=100),
        artifact_dir=artifact_dir,
        emit_word_tally=True,
    )

    assert metrics["tokens"] == 3
    assert metrics["artifacts"] == [str(artifact_dir / "word_tally.csv")]
    assert (artifact_dir / "word_tally.csv").read_text(encoding="utf-8") == (
        "word,count\npump,2\nvalve,1\n"
    )
    assert not (artifact_dir / "normalized.txt").exists()
