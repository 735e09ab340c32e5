import math

import pytest

from docindex.services.rag.embedder import HashingEmbedder, embed_chunks, tokenize
from docindex.services.rag.errors import EmbeddingError
from docindex.services.rag.types import Chunk, Embedding


def _chunk(chunk_id: str, text: str) -> Chunk:
    return Chunk(
        chunk_id=chunk_id,
        document_id="doc",
        strategy="fixed_window",
        start_offset=0,
        end_offset=len(text),
        text=text,
    )


def test_tokenize_lowercases_words() -> None:
    assert tokenize("Robot-Arm, robot ARM!") == ["robot", "arm", "robot", "arm"]


def test_hashing_embedder_is_deterministic_and_normalized() -> None:
    embedder = HashingEmbedder(dimension=32)

    first = embedder.embed("predictive maintenance for robots")
    second = HashingEmbedder(dimension=32).embed("predictive maintenance for robots")

    assert first == second
    assert first.dimension == 32
    assert first.model_id == "hashing-tf-v1-d32"
    assert math.isclose(math.sqrt(sum(value * value for value in first.vector)), 1.0)


def test_hashing_embedder_returns_zero_vector_for_empty_text() -> None:
    embedding = HashingEmbedder(dimension=8).embed("  ")

    assert embedding.vector == (0.0,) * 8


def test_hashing_embedder_rejects_non_positive_dimension() -> None:
    with pytest.raises(ValueError, match="dimension"):
        HashingEmbedder(dimension=0)


def test_embed_chunks_preserves_order() -> None:
    embedder = HashingEmbedder(dimension=16)
    chunks = [_chunk("c1", "alpha"), _chunk("c2", "beta")]

    embeddings = embed_chunks(embedder, chunks)

    assert embeddings == [embedder.embed("alpha"), embedder.embed("beta")]


class _LyingEmbedder:
    model_id = "liar"
    dimension = 4

    def embed(self, text: str) -> Embedding:
        del text
        return Embedding(vector=(1.0, 0.0), model_id=self.model_id)


def test_embed_chunks_rejects_wrong_dimension() -> None:
    with pytest.raises(EmbeddingError, match="returned 2 values"):
        embed_chunks(_LyingEmbedder(), [_chunk("c1", "text")])


class _RecordingBatchEmbedder:
    model_id = "batch"
    dimension = 2

    def __init__(self) -> None:
        self.batches: list[list[str]] = []

    def embed(self, text: str) -> Embedding:
        raise AssertionError(f"single embed called for {text!r}")

    def embed_texts(self, texts: list[str]) -> list[Embedding]:
        self.batches.append(list(texts))
        return [Embedding(vector=(float(len(text)), 1.0), model_id=self.model_id) for text in texts]


def test_embed_chunks_sends_one_batch_when_supported() -> None:
    embedder = _RecordingBatchEmbedder()
    chunks = [_chunk("c1", "alpha"), _chunk("c2", "be"), _chunk("c3", "gamma ray")]

    embeddings = embed_chunks(embedder, chunks)

    assert embedder.batches == [["alpha", "be", "gamma ray"]]
    assert [embedding.vector[0] for embedding in embeddings] == [5.0, 2.0, 9.0]


def test_embed_chunks_skips_empty_input() -> None:
    embedder = _RecordingBatchEmbedder()

    assert embed_chunks(embedder, []) == []
    assert embedder.batches == []


class _ShortBatchEmbedder(_RecordingBatchEmbedder):
    def embed_texts(self, texts: list[str]) -> list[Embedding]:
        return super().embed_texts(texts)[:-1]


class _NanEmbedder:
    model_id = "nan"
    dimension = 2

    def embed(self, text: str) -> Embedding:
        del text
        return Embedding(vector=(float("nan"), 1.0), model_id=self.model_id)


def test_embed_chunks_rejects_missing_embeddings() -> None:
    with pytest.raises(EmbeddingError, match="returned 1 embeddings for 2 chunks"):
        embed_chunks(_ShortBatchEmbedder(), [_chunk("c1", "a"), _chunk("c2", "b")])


def test_embed_chunks_rejects_non_finite_values() -> None:
    with pytest.raises(EmbeddingError, match="non-finite"):
        embed_chunks(_NanEmbedder(), [_chunk("c1", "text")])
