"""
Table-aware Chunker
--------------------
Extracted PDF text mixes prose paragraphs with tables whose rows only make
sense together (a "TOTAL" line is useless without its column headers a few
lines up).  The chunker therefore segments text into blocks first and picks a
strategy per block:

  - TABLE blocks   : sliding window over LINES (50 lines, 6 overlap) so row
                     groups stay intact.  Blank lines inside a table do not
                     end the block; PDF extraction often inserts them
                     between rows.
  - PROSE blocks   : kept whole up to 700 chars, otherwise a character
                     window (700 chars, 120 overlap).

A final pass trims, drops empties and removes exact duplicates while keeping
first-occurrence order.

chunk() is the plain positional character window with no block awareness,
exposed for callers that want fixed-size pieces.
"""
from __future__ import annotations

import re

from loguru import logger


# ── Constants ─────────────────────────────────────────────────────────────────

TABLE_WINDOW_LINES = 50
TABLE_OVERLAP_LINES = 6
PROSE_WINDOW_CHARS = 700
PROSE_OVERLAP_CHARS = 120

MIN_TABLE_LINES = 4           # Blocks shorter than this are never tables
MIN_NUMERIC_ROWS = 3          # Lines with >=2 numeric tokens
MIN_DIGIT_LINES = 4           # Lines containing any digit
MAX_TABLE_AVG_LINE_LEN = 120  # Mean line length for the digit-lines rule
MAX_TABLEISH_LINE_LEN = 140   # Segmentation hint for a single line

_MULTI_SPACE = re.compile(r"[ \t]{2,}")
_MANY_NEWLINES = re.compile(r"\n{3,}")
_HAS_DIGIT = re.compile(r"\d")
_NUMBER = re.compile(r"-?\d+(\.\d+)?")


# ── Normalisation & heuristics ────────────────────────────────────────────────

def normalize(text: str | None) -> str:
    """Strip CRs, collapse horizontal whitespace and blank-line runs, rstrip lines."""
    if text is None:
        return ""
    t = text.replace("\r", "")
    t = _MULTI_SPACE.sub(" ", t)
    t = _MANY_NEWLINES.sub("\n\n", t)
    t = "\n".join(line.rstrip() for line in t.split("\n"))
    return t.strip()


def count_numeric_tokens(line: str) -> int:
    """Count whitespace tokens that read as numbers once ',' and '$' are removed."""
    count = 0
    for part in line.split():
        token = part.replace(",", "").replace("$", "").strip()
        if token and _NUMBER.fullmatch(token):
            count += 1
    return count


def _is_tableish_line(line: str) -> bool:
    if not line:
        return False
    if count_numeric_tokens(line) >= 2:
        return True
    return bool(_HAS_DIGIT.search(line)) and len(line) < MAX_TABLEISH_LINE_LEN


def looks_like_table(block: str) -> bool:
    """
    Classify a block as tabular.

    Needs at least MIN_TABLE_LINES non-blank lines, then either
    MIN_NUMERIC_ROWS lines with two or more numeric tokens, or
    MIN_DIGIT_LINES lines containing a digit with a short mean line length.
    """
    lines = [line.strip() for line in block.split("\n") if line.strip()]
    if len(lines) < MIN_TABLE_LINES:
        return False

    numeric_rows = sum(1 for line in lines if count_numeric_tokens(line) >= 2)
    if numeric_rows >= MIN_NUMERIC_ROWS:
        return True

    digit_lines = sum(1 for line in lines if _HAS_DIGIT.search(line))
    avg_len = sum(len(line) for line in lines) / len(lines)
    return digit_lines >= MIN_DIGIT_LINES and avg_len < MAX_TABLE_AVG_LINE_LEN


def split_blocks(text: str) -> list[str]:
    """
    Split normalised text into blocks on blank lines.

    A block turns table-like as soon as it starts with, or absorbs, a
    table-ish line; from then on blank lines are skipped instead of ending it.
    """
    blocks: list[str] = []
    current: list[str] = []
    current_is_table = False

    for raw_line in text.split("\n"):
        line = raw_line.strip()
        blank = not line
        tableish = _is_tableish_line(line)

        if not current:
            if blank:
                continue
            current.append(line)
            current_is_table = tableish
            continue

        if blank:
            if not current_is_table:
                blocks.append("\n".join(current).strip())
                current = []
            continue

        current.append(line)
        if tableish:
            current_is_table = True

    if current:
        blocks.append("\n".join(current).strip())
    return [b for b in blocks if b]


# ── Window chunkers ───────────────────────────────────────────────────────────

def chunk(text: str | None, max_chars: int, overlap_chars: int) -> list[str]:
    """
    Fixed character window with overlap over the normalised text.

    Every piece is at most max_chars long.  The window always advances by at
    least one character, even when overlap_chars >= max_chars.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be > 0")
    t = normalize(text)
    if not t:
        return []

    step = max(1, max_chars - max(0, overlap_chars))
    out: list[str] = []
    start = 0
    while start < len(t):
        end = min(len(t), start + max_chars)
        piece = t[start:end].strip()
        if piece:
            out.append(piece)
        if end == len(t):
            break
        start += step
    return out


def chunk_by_lines(text: str | None, max_lines: int, overlap_lines: int) -> list[str]:
    """Sliding window over non-blank lines; keeps table rows whole."""
    if max_lines <= 0:
        raise ValueError("max_lines must be > 0")
    t = normalize(text)
    if not t:
        return []
    lines = [line.strip() for line in t.split("\n") if line.strip()]
    if not lines:
        return []

    step = max(1, max_lines - max(0, overlap_lines))
    out: list[str] = []
    start = 0
    while start < len(lines):
        end = min(len(lines), start + max_lines)
        piece = "\n".join(lines[start:end]).strip()
        if piece:
            out.append(piece)
        if end == len(lines):
            break
        start += step
    return out


def _chunk_prose(block: str) -> list[str]:
    if len(block) <= PROSE_WINDOW_CHARS:
        return [block]
    return chunk(block, PROSE_WINDOW_CHARS, PROSE_OVERLAP_CHARS)


def _dedupe_preserve_order(pieces: list[str]) -> list[str]:
    return list(dict.fromkeys(pieces))


# ── Main entry point ──────────────────────────────────────────────────────────

def smart_chunk(text: str | None) -> list[str]:
    """
    Block-aware chunking for extracted document text (prose and tables).

    Returns an ordered list of unique, non-empty passages.
    """
    t = normalize(text)
    if not t:
        return []

    out: list[str] = []
    blocks = split_blocks(t)
    table_blocks = 0
    for block in blocks:
        if looks_like_table(block):
            table_blocks += 1
            out.extend(chunk_by_lines(block, TABLE_WINDOW_LINES, TABLE_OVERLAP_LINES))
        else:
            out.extend(_chunk_prose(block))

    chunks = _dedupe_preserve_order([p.strip() for p in out if p.strip()])
    logger.debug(
        f"[Chunker] {len(t)} chars | {len(blocks)} block(s), "
        f"{table_blocks} table | -> {len(chunks)} chunk(s)"
    )
    return chunks
