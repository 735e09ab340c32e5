from __future__ import annotations

from dataclasses import dataclass
import hashlib
import re
import unicodedata
from typing import Iterator

from docindex.services.rag.errors import EncodingError
from docindex.services.rag.types import Document, DuplicateParagraph, NormalizedText, Paragraph

PARAGRAPH_SEPARATOR = "\n\n"

_BLANK_LINES = re.compile(r"\n(?:[^\S\n]*\n)+")
_INLINE_WHITESPACE = re.compile(r"[^\S\n]+")

_ATX_HEADING = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?(?:[ \t]+#+)?[ \t]*$")
_FENCE = re.compile(r"^ {0,3}(?:`{3,}|~{3,})")
_HORIZONTAL_RULE = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
_BLOCKQUOTE = re.compile(r"^ {0,3}(?:>[ \t]?)+")

_MARKDOWN_INLINE = (
    (re.compile(r"!\[([^\]]*)\]\([^)]*\)"), r"\1"),
    (re.compile(r"\[([^\]]+)\]\([^)]*\)"), r"\1"),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"(\*\*|__)(?=\S)(.+?)(?<=\S)\1"), r"\2"),
    (re.compile(r"~~(?=\S)(.+?)(?<=\S)~~"), r"\1"),
    (re.compile(r"(?<![\w*])\*(?=\S)(.+?)(?<=\S)\*(?![\w*])"), r"\1"),
    (re.compile(r"(?<!\w)_(?=\S)(.+?)(?<=\S)_(?!\w)"), r"\1"),
)


@dataclass(frozen=True)
class _Block:
    text: str
    heading_level: int
    source_start: int
    source_end: int


def _content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def decode_document(document: Document) -> str:
    try:
        text = document.content.decode(document.encoding)
    except (UnicodeDecodeError, LookupError) as exc:
        raise EncodingError(
            document.source_path, f"cannot decode as {document.encoding}: {exc}"
        ) from exc

    if "\x00" in text:
        raise EncodingError(document.source_path, "binary content (NUL characters)")

    return text.replace("\r\n", "\n").replace("\r", "\n")


def _clean_line(line: str, *, markdown: bool) -> str:
    line = unicodedata.normalize("NFC", line)
    if markdown:
        line = _BLOCKQUOTE.sub("", line)
        for pattern, replacement in _MARKDOWN_INLINE:
            line = pattern.sub(replacement, line)
    return _INLINE_WHITESPACE.sub(" ", line).strip()


def _iter_source_blocks(source: str) -> Iterator[tuple[int, int]]:
    cursor = 0
    for match in _BLANK_LINES.finditer(source):
        yield cursor, match.start()
        cursor = match.end()
    yield cursor, len(source)


def _iter_lines(source: str, start: int, end: int) -> Iterator[tuple[int, int]]:
    cursor = start
    while cursor < end:
        newline = source.find("\n", cursor, end)
        line_end = end if newline < 0 else newline
        yield cursor, line_end
        cursor = line_end + 1


def _split_blocks(source: str, *, markdown: bool) -> list[_Block]:
    blocks: list[_Block] = []
    for block_start, block_end in _iter_source_blocks(source):
        lines: list[str] = []
        lines_start = lines_end = -1

        def flush() -> None:
            if lines:
                blocks.append(
                    _Block("\n".join(lines), 0, lines_start, lines_end)
                )
                lines.clear()

        for line_start, line_end in _iter_lines(source, block_start, block_end):
            raw_line = source[line_start:line_end]
            if markdown:
                heading = _ATX_HEADING.match(raw_line)
                if heading is not None:
                    flush()
                    title = _clean_line(heading.group(2) or "", markdown=True)
                    if title:
                        blocks.append(
                            _Block(title, len(heading.group(1)), line_start, line_end)
                        )
                    continue
                if _FENCE.match(raw_line) or _HORIZONTAL_RULE.match(raw_line):
                    continue

            cleaned = _clean_line(raw_line, markdown=markdown)
            if not cleaned:
                continue
            if not lines:
                lines_start = line_start
            lines.append(cleaned)
            lines_end = line_end
        flush()
    return blocks


def normalize(document: Document, *, dedup: bool = True) -> NormalizedText:
    """Decode, clean and paragraph-split a document.

    Body paragraphs that repeat an earlier paragraph of the same document are
    dropped when ``dedup`` is set; each dropped occurrence is recorded with its
    offsets in the decoded source. Headings are always kept so that section
    boundaries survive deduplication.
    """
    source = decode_document(document)
    blocks = _split_blocks(source, markdown=document.kind == "md")

    kept: list[tuple[_Block, str]] = []
    duplicates: list[DuplicateParagraph] = []
    first_seen: dict[str, int] = {}

    for block in blocks:
        digest = _content_hash(block.text)
        if dedup and block.heading_level == 0:
            if digest in first_seen:
                duplicates.append(
                    DuplicateParagraph(
                        content_hash=digest,
                        source_start=block.source_start,
                        source_end=block.source_end,
                        kept_index=first_seen[digest],
                    )
                )
                continue
            first_seen[digest] = len(kept)
        kept.append((block, digest))

    text = PARAGRAPH_SEPARATOR.join(block.text for block, _ in kept)

    paragraphs: list[Paragraph] = []
    cursor = 0
    for index, (block, digest) in enumerate(kept):
        is_last = index == len(kept) - 1
        end = len(text) if is_last else cursor + len(block.text) + len(PARAGRAPH_SEPARATOR)
        paragraphs.append(
            Paragraph(
                start=cursor,
                end=end,
                content_hash=digest,
                heading_level=block.heading_level,
                source_start=block.source_start,
                source_end=block.source_end,
            )
        )
        cursor = end

    return NormalizedText(
        doc_id=document.doc_id,
        source_path=document.source_path,
        kind=document.kind,
        content_hash=document.content_hash,
        text=text,
        paragraphs=tuple(paragraphs),
        duplicates=tuple(duplicates),
    )


def normalize_text(text: str) -> str:
    """Apply the plain-text cleanup to free text such as a query."""
    source = text.replace("\r\n", "\n").replace("\r", "\n")
    return PARAGRAPH_SEPARATOR.join(
        block.text for block in _split_blocks(source, markdown=False)
    )
