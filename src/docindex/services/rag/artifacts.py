from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable
import csv
import os
from pathlib import Path
from typing import TextIO

from docindex.services.rag.embedder import tokenize
from docindex.services.rag.types import NormalizedText

NORMALIZED_TEXT_NAME = "normalized.txt"
WORD_TALLY_NAME = "word_tally.csv"


def count_words(texts: Iterable[str]) -> Counter[str]:
    counts: Counter[str] = Counter()
    for text in texts:
        counts.update(tokenize(text))
    return counts


def _replace_atomically(path: Path, write: Callable[[TextIO], None]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8", newline="") as handle:
            write(handle)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return path


def write_normalized_corpus(path: Path, documents: Iterable[NormalizedText]) -> Path:
    """Dump each document's normalized text under a ``### <source path>`` header."""

    def write(handle: TextIO) -> None:
        for normalized in documents:
            handle.write(f"### {normalized.source_path}\n\n{normalized.text}\n\n")

    return _replace_atomically(path, write)


def write_word_tally(path: Path, counts: Counter[str]) -> Path:
    """Write ``word,count`` rows, most frequent first, ties alphabetical."""

    def write(handle: TextIO) -> None:
        writer = csv.writer(handle, lineterminator="\n")
        writer.writerow(["word", "count"])
        for word, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
            writer.writerow([word, count])

    return _replace_atomically(path, write)
