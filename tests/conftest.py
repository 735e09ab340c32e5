from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from docindex.config import get_settings
from docindex.main import _load_snapshot, app, get_embedder
from docindex.services.rag.embedder import HashingEmbedder


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    _load_snapshot.cache_clear()
    yield
    get_settings.cache_clear()
    _load_snapshot.cache_clear()


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder(dimension=256)


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, embedder: HashingEmbedder
) -> Iterator[TestClient]:
    source_dir = tmp_path / "sample_docs"
    source_dir.mkdir(parents=True)

    monkeypatch.setenv("RAG_SOURCE_DIR", str(source_dir))
    monkeypatch.setenv("RAG_INDEX_DIR", str(tmp_path / "rag_index"))
    monkeypatch.delenv("RAG_INDEX_PATH", raising=False)
    monkeypatch.delenv("RAG_CHUNKS_PATH", raising=False)

    app.dependency_overrides[get_embedder] = lambda: embedder
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
