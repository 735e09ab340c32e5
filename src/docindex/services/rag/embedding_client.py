from __future__ import annotations

import httpx

from docindex.services.rag.errors import EmbeddingError
from docindex.services.rag.types import Embedding


class OllamaEmbeddingClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        dimension: int,
        timeout_seconds: float = 30.0,
    ) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self.model_id = model
        self.dimension = dimension

    def embed(self, text: str) -> Embedding:
        return self.embed_texts([text])[0]

    def embed_texts(self, texts: list[str]) -> list[Embedding]:
        if not texts:
            return []

        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self.model_id, "input": texts},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EmbeddingError(str(exc)) from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingError("Invalid embeddings payload: missing data")

        embeddings: list[Embedding] = []
        for item in data:
            vector = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(vector, list) or not vector:
                raise EmbeddingError("Invalid embeddings payload: missing embedding vector")
            if len(vector) != self.dimension:
                raise EmbeddingError(
                    f"Invalid embeddings payload: expected dimension {self.dimension}, "
                    f"got {len(vector)}"
                )
            try:
                embeddings.append(Embedding(vector=vector, model_id=self.model_id))
            except (TypeError, ValueError) as exc:
                raise EmbeddingError(f"Invalid embeddings payload: {exc}") from exc

        if len(embeddings) != len(texts):
            raise EmbeddingError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(embeddings)}"
            )

        return embeddings
