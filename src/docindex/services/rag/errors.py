from __future__ import annotations


class RagError(Exception):
    pass


class EncodingError(RagError):
    def __init__(self, source_path: str, message: str) -> None:
        super().__init__(f"{source_path}: {message}")
        self.source_path = source_path


class ConfigError(RagError, ValueError):
    pass


class EmbeddingError(RagError, RuntimeError):
    pass


class VectorIndexError(RagError):
    pass


class DimensionMismatchError(VectorIndexError):
    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(f"dimension mismatch: index has {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ModelMismatchError(VectorIndexError):
    def __init__(self, *, expected: str, actual: str) -> None:
        super().__init__(f"model mismatch: index built with {expected!r}, got {actual!r}")
        self.expected = expected
        self.actual = actual


class ChunkNotFoundError(VectorIndexError):
    def __init__(self, chunk_id: str) -> None:
        super().__init__(f"chunk not found: {chunk_id}")
        self.chunk_id = chunk_id


class CorruptIndexError(VectorIndexError):
    pass


class IndexIOError(VectorIndexError):
    pass
