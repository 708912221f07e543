"""
Splits long extracted text into bounded, overlapping chunks so each model
request stays under the context limit.
"""
from __future__ import annotations

from typing import Iterator

from .config import CHUNK_OVERLAP, MAX_CHUNK_SIZE
from .errors import ConfigurationError


def _validate_sizes(max_chunk_size: int, overlap: int):
    if int(max_chunk_size) <= 0:
        raise ConfigurationError(f"max_chunk_size must be positive, got {max_chunk_size}")
    if int(overlap) < 0:
        raise ConfigurationError(f"overlap must be non-negative, got {overlap}")
    if int(overlap) >= int(max_chunk_size):
        raise ConfigurationError(
            f"overlap ({overlap}) must be smaller than max_chunk_size ({max_chunk_size})"
        )


def _boundary_before(text: str, start: int, end: int) -> int:
    """Returns the cut point just after the last '.' or blank line in text[start:end], or -1."""
    sentence = text.rfind(".", start, end)
    paragraph = text.rfind("\n\n", start, end)
    candidates = []
    if sentence != -1:
        candidates.append(sentence + 1)
    if paragraph != -1:
        candidates.append(paragraph + 2)
    return max(candidates) if candidates else -1


def iter_chunk_spans(
    text: str,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> Iterator[tuple[int, int]]:
    """
    Yields (start, end) offsets of each window over `text`.

    Windows are at most `max_chunk_size` long. A window whose right edge falls
    inside the text is pulled back to the nearest sentence or paragraph
    boundary when that keeps it at least half the maximum size. The next
    window starts `overlap` characters before the previous end.
    """
    _validate_sizes(max_chunk_size, overlap)
    text = text or ""
    length = len(text)
    if length <= max_chunk_size:
        yield 0, length
        return

    min_window = max_chunk_size // 2
    start = 0
    while start < length:
        end = min(start + max_chunk_size, length)
        if end < length:
            cut = _boundary_before(text, start, end)
            # Never snap so far back that the next window would not advance.
            if cut != -1 and cut - start >= min_window and cut - overlap > start:
                end = cut
        yield start, end
        if end >= length:
            return
        next_start = end - overlap
        if next_start <= start:
            raise ConfigurationError(
                f"chunking stalled at offset {start} (max_chunk_size={max_chunk_size}, overlap={overlap})"
            )
        start = next_start


def chunk_text(
    text: str,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[str]:
    """Returns trimmed chunks; short text comes back as a single chunk."""
    text = text or ""
    chunks = []
    for start, end in iter_chunk_spans(text, max_chunk_size, overlap):
        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)
    if not chunks:
        return [text.strip()]
    return chunks


def spread_evenly(items: list, limit: int) -> list:
    """Picks up to `limit` items spread across the sequence, keeping document order."""
    limit = max(1, int(limit))
    if len(items) <= limit:
        return list(items)
    if limit == 1:
        return [items[0]]
    step = (len(items) - 1) / (limit - 1)
    indices = sorted({round(i * step) for i in range(limit)})
    return [items[idx] for idx in indices]
