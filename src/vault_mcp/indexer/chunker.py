"""Chunking logic for splitting Markdown documents into token-bounded segments.

The segmenter works in four stages:

1. Structural split: the document is parsed into blocks and cut into sections
   at level 1-3 headings and thematic breaks. Fenced code blocks form their
   own section. Code blocks and tables are atomic, and tables are rewritten as
   ``Header: value | Header2: value2`` lines.
2. Token-ceiling split: sections above ``max_tokens`` are rebuilt greedily
   from paragraph-level units. A unit that alone exceeds the ceiling is
   sliced on token boundaries.
3. Minimum-token merge: undersized chunks are merged into the previous
   chunk, then the next one, as long as the merge stays within the ceiling.
4. Output in document order; the list index is the segment ordinal.
"""

import logging
import re
from dataclasses import dataclass

from vault_mcp.indexer.models import ContentFingerprint
from vault_mcp.indexer.tokens import (
    MAX_TOKENS,
    MIN_TOKENS,
    count_tokens,
    decode,
    decode_strict,
    encode,
)

logger = logging.getLogger(__name__)

# Bump whenever the output of segment() can change for the same input
CHUNKING_VERSION = 1

# Headings at or above this level start a new section
SECTION_HEADING_LEVEL = 3

# Undersized chunks get at most this many merge attempts per pass
MAX_MERGE_ATTEMPTS = 2

CHUNK_SEPARATOR = "\n\n"

FENCE_PATTERN = re.compile(r"^ {0,3}(`{3,}|~{3,})")
HEADING_PATTERN = re.compile(r"^ {0,3}(#{1,6})(?:[ \t]+(.*?))?[ \t]*#*[ \t]*$")
RULE_PATTERN = re.compile(r"^ {0,3}([-*_])(?:[ \t]*\1){2,}[ \t]*$")
SETEXT_PATTERN = re.compile(r"^ {0,3}(=+|-+)[ \t]*$")
TABLE_SEPARATOR_PATTERN = re.compile(r"^[\s|:\-]+$")
CELL_SPLIT_PATTERN = re.compile(r"(?<!\\)\|")


@dataclass
class Block:
    """A structural block of a Markdown document."""

    kind: str  # heading, paragraph, code, table, rule
    text: str
    level: int = 0


@dataclass
class TextChunk:
    """A chunk of document text ready to be stored as a segment."""

    ordinal: int
    text: str
    token_count: int

    @property
    def fingerprint(self) -> ContentFingerprint:
        return ContentFingerprint.of(self.text)


# Structural parsing


def _is_table_separator(line: str) -> bool:
    stripped = line.strip()
    return (
        "-" in stripped
        and "|" in stripped
        and TABLE_SEPARATOR_PATTERN.match(stripped) is not None
    )


def _is_table_start(lines: list[str], i: int) -> bool:
    return (
        i + 1 < len(lines)
        and "|" in lines[i]
        and _is_table_separator(lines[i + 1])
    )


def _split_cells(line: str) -> list[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|") and not stripped.endswith("\\|"):
        stripped = stripped[:-1]
    return [cell.strip().replace("\\|", "|") for cell in CELL_SPLIT_PATTERN.split(stripped)]


def normalize_table(lines: list[str]) -> str:
    """Rewrite a Markdown table as sentence-like ``Header: value`` rows."""
    if not lines:
        return ""
    headers = _split_cells(lines[0])
    rows = [line for line in lines[2:] if line.strip()]
    if not rows:
        return " | ".join(h for h in headers if h)

    out: list[str] = []
    for row in rows:
        cells = _split_cells(row)
        pairs: list[str] = []
        for idx, value in enumerate(cells):
            if not value:
                continue
            header = headers[idx] if idx < len(headers) else ""
            pairs.append(f"{header}: {value}" if header else value)
        if pairs:
            out.append(" | ".join(pairs))
    return "\n".join(out)


def parse_blocks(content: str) -> list[Block]:
    """Parse Markdown content into a flat sequence of blocks.

    Fenced code and tables are consumed whole, so blank lines or rule-like
    lines inside them never start a new block.
    """
    lines = content.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    blocks: list[Block] = []
    paragraph: list[str] = []

    def flush_paragraph() -> None:
        if paragraph:
            blocks.append(Block("paragraph", "\n".join(paragraph).strip()))
            paragraph.clear()

    i = 0
    while i < len(lines):
        line = lines[i]

        fence = FENCE_PATTERN.match(line)
        if fence:
            flush_paragraph()
            marker = fence.group(1)
            code_lines = [line]
            i += 1
            while i < len(lines):
                code_lines.append(lines[i])
                closing = lines[i].strip()
                i += 1
                if closing.startswith(marker[0] * len(marker)) and not closing.strip(marker[0]):
                    break
            blocks.append(Block("code", "\n".join(code_lines).strip()))
            continue

        if not line.strip():
            flush_paragraph()
            i += 1
            continue

        if paragraph:
            setext = SETEXT_PATTERN.match(line)
            if setext:
                level = 1 if setext.group(1).startswith("=") else 2
                text = "\n".join(paragraph).strip()
                paragraph.clear()
                blocks.append(Block("heading", text, level))
                i += 1
                continue

        heading = HEADING_PATTERN.match(line)
        if heading:
            flush_paragraph()
            blocks.append(Block("heading", line.strip(), len(heading.group(1))))
            i += 1
            continue

        if RULE_PATTERN.match(line):
            flush_paragraph()
            blocks.append(Block("rule", line.strip()))
            i += 1
            continue

        if _is_table_start(lines, i):
            flush_paragraph()
            table_lines = [line, lines[i + 1]]
            i += 2
            while i < len(lines):
                if lines[i].strip() and "|" in lines[i]:
                    table_lines.append(lines[i])
                    i += 1
                    continue
                # Blank lines inside a table do not end it if more rows follow
                j = i
                while j < len(lines) and not lines[j].strip():
                    j += 1
                if j > i and j < len(lines) and lines[j].lstrip().startswith("|"):
                    i = j
                    continue
                break
            blocks.append(Block("table", normalize_table(table_lines)))
            continue

        paragraph.append(line)
        i += 1

    flush_paragraph()
    return [b for b in blocks if b.kind == "rule" or b.text]


def split_sections(blocks: list[Block]) -> list[list[Block]]:
    """Group blocks into sections.

    A heading of level 1-3 opens a new section, a thematic break closes the
    current one, and a fenced code block always stands alone.
    """
    sections: list[list[Block]] = []
    current: list[Block] = []

    def close() -> None:
        if current:
            sections.append(list(current))
            current.clear()

    for block in blocks:
        if block.kind == "rule":
            close()
        elif block.kind == "heading" and block.level <= SECTION_HEADING_LEVEL:
            close()
            current.append(block)
        elif block.kind == "code":
            close()
            sections.append([block])
        else:
            current.append(block)
    close()
    return sections


# Token budgets


def _join(parts: list[str]) -> str:
    return CHUNK_SEPARATOR.join(p for p in parts if p)


def split_by_tokens(text: str, max_tokens: int) -> list[str]:
    """Slice text purely on token boundaries.

    Slices never split a UTF-8 sequence and never exceed ``max_tokens`` once
    re-tokenized.
    """
    tokens = encode(text)
    pieces: list[str] = []
    start = 0
    while start < len(tokens):
        end = min(start + max_tokens, len(tokens))
        piece: str | None = None
        while end > start:
            candidate = decode_strict(tokens[start:end])
            if candidate is not None and count_tokens(candidate) <= max_tokens:
                piece = candidate
                break
            end -= 1
        if piece is None:
            # A single character spans more tokens than fit; take it whole
            end = start + 1
            while end < len(tokens) and decode_strict(tokens[start:end]) is None:
                end += 1
            piece = decode(tokens[start:end])
        piece = piece.strip()
        if piece:
            pieces.append(piece)
        start = end
    return pieces


def _section_units(section: list[Block]) -> list[str]:
    return [block.text for block in section if block.text]


def split_section(units: list[str], max_tokens: int) -> list[str]:
    """Split one section's units into chunks within ``max_tokens``."""
    whole = _join(units)
    if count_tokens(whole) <= max_tokens:
        return [whole]

    chunks: list[str] = []
    current: list[str] = []
    for unit in units:
        if count_tokens(unit) > max_tokens:
            if current:
                chunks.append(_join(current))
                current = []
            chunks.extend(split_by_tokens(unit, max_tokens))
            continue
        if current and count_tokens(_join(current + [unit])) > max_tokens:
            chunks.append(_join(current))
            current = []
        current.append(unit)
    if current:
        chunks.append(_join(current))
    return chunks


def merge_small_chunks(chunks: list[str], max_tokens: int, min_tokens: int) -> list[str]:
    """Merge chunks below ``min_tokens`` into a neighbour.

    The previous chunk is tried first, then the next one. A merge is only
    applied when the result stays within ``max_tokens``. Passes repeat until
    nothing changes.
    """
    chunks = list(chunks)
    changed = True
    while changed and len(chunks) > 1:
        changed = False
        i = 0
        while i < len(chunks) and len(chunks) > 1:
            if count_tokens(chunks[i]) >= min_tokens:
                i += 1
                continue

            attempts = 0
            if i > 0:
                attempts += 1
                merged = _join([chunks[i - 1], chunks[i]])
                if count_tokens(merged) <= max_tokens:
                    chunks[i - 1] = merged
                    del chunks[i]
                    i -= 1
                    changed = True
                    if count_tokens(chunks[i]) >= min_tokens:
                        i += 1
                        continue

            if attempts < MAX_MERGE_ATTEMPTS and i + 1 < len(chunks):
                merged = _join([chunks[i], chunks[i + 1]])
                if count_tokens(merged) <= max_tokens:
                    chunks[i] = merged
                    del chunks[i + 1]
                    changed = True
            i += 1
    return chunks


def segment(
    content: str,
    max_tokens: int = MAX_TOKENS,
    min_tokens: int = MIN_TOKENS,
) -> list[TextChunk]:
    """Split Markdown content into ordered chunks obeying token budgets.

    Args:
        content: Markdown text to segment.
        max_tokens: Ceiling per chunk. Only exceeded when a single character
            cannot be represented in fewer tokens.
        min_tokens: Floor per chunk, enforced by merging with neighbours when
            the merge stays within the ceiling.

    Returns:
        Chunks in document order. Empty content yields an empty list.
    """
    if max_tokens <= 0:
        raise ValueError(f"max_tokens must be positive, got {max_tokens}")
    if min_tokens < 0 or min_tokens > max_tokens:
        raise ValueError(f"min_tokens must be between 0 and {max_tokens}, got {min_tokens}")
    if not content.strip():
        return []

    raw: list[str] = []
    for section in split_sections(parse_blocks(content)):
        units = _section_units(section)
        if units:
            raw.extend(split_section(units, max_tokens))

    merged = merge_small_chunks(raw, max_tokens, min_tokens)
    texts = [text.strip() for text in merged if text.strip()]
    return [
        TextChunk(ordinal=i, text=text, token_count=count_tokens(text))
        for i, text in enumerate(texts)
    ]


def chunk_document(content: str, version: int = CHUNKING_VERSION) -> list[TextChunk]:
    """Chunk a document with the algorithm for the given chunking version."""
    if version != CHUNKING_VERSION:
        logger.debug(
            "Unknown chunking version %s, using version %s", version, CHUNKING_VERSION
        )
    return segment(content)
