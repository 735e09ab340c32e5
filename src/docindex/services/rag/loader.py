from __future__ import annotations

import codecs
import hashlib
from pathlib import Path

from docindex.services.rag.types import Document

SUPPORTED_EXTENSIONS = {".txt", ".md"}

_BOMS = (
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)


def sniff_encoding(content: bytes, default: str = "utf-8") -> str:
    for bom, encoding in _BOMS:
        if content.startswith(bom):
            return encoding
    return default


def document_id_for(relative_path: str) -> str:
    return hashlib.sha256(relative_path.encode("utf-8")).hexdigest()[:16]


def build_document(
    relative_path: str,
    content: bytes,
    *,
    encoding: str | None = None,
) -> Document:
    suffix = Path(relative_path).suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported document type: {relative_path}")

    return Document(
        doc_id=document_id_for(relative_path),
        source_path=relative_path,
        content=content,
        encoding=encoding or sniff_encoding(content),
        content_hash=hashlib.sha256(content).hexdigest(),
        kind=suffix.lstrip("."),
    )


def load_documents(
    source_dir: Path,
    supported_extensions: set[str] | None = None,
) -> list[Document]:
    if not source_dir.exists():
        raise FileNotFoundError(f"Source directory not found: {source_dir}")
    if not source_dir.is_dir():
        raise NotADirectoryError(f"Source path is not a directory: {source_dir}")

    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    files = sorted(
        path
        for path in source_dir.rglob("*")
        if path.is_file() and path.suffix.lower() in extensions
    )

    return [
        build_document(path.relative_to(source_dir).as_posix(), path.read_bytes())
        for path in files
    ]
