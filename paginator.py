# ABOUTME: Packs sentence chunks into viewport-sized pages from measured line metrics
# ABOUTME: Greedy line walk; chunks are never split across pages or duplicated
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from layout_prober import LineMetric
from segmenter import Chunk, flatten_chunks

logger = logging.getLogger("reader-core.paginator")


@dataclass
class Page:
    number: int  # 1-based
    chunks: list[Chunk] = field(default_factory=list)

    @property
    def leading_sequence_index(self) -> int | None:
        return self.chunks[0].sequence_index if self.chunks else None

    @property
    def sequence_indices(self) -> list[int]:
        return [c.sequence_index for c in self.chunks]


def _chunk_bottoms(spans: list[tuple[int, int]], lines: list[LineMetric]) -> list[float]:
    """Bottom edge of the last line each chunk touches."""
    bottoms = [0.0] * len(spans)
    line_idx = 0
    for i, (start, end) in enumerate(spans):
        while line_idx < len(lines) and lines[line_idx].end_offset <= start:
            line_idx += 1
        j = line_idx
        while j < len(lines) and lines[j].start_offset < end:
            bottoms[i] = lines[j].y + lines[j].height
            j += 1
    return bottoms


def paginate(
    chunks: list[Chunk],
    lines: list[LineMetric],
    viewport_height: float,
    *,
    whole_chunks: bool = False,
) -> list[Page]:
    """Split chunks into pages whose rendered lines fit viewport_height.

    lines must be measured against flatten_chunks(chunks). A chunk goes to
    the page where it is first met; with whole_chunks the fit test uses the
    chunk's last line instead of the line where it starts.
    """
    if not chunks or not lines:
        return []

    _, spans = flatten_chunks(chunks)
    bottoms = _chunk_bottoms(spans, lines) if whole_chunks else None

    pages: list[Page] = []
    current: list[Chunk] = []
    placed: set[int] = set()
    page_start_y = lines[0].y
    first = 0  # Chunks before this index are placed or end before the current line

    for line in lines:
        while first < len(spans) and spans[first][1] <= line.start_offset:
            first += 1

        for i in range(first, len(spans)):
            start, end = spans[i]
            if start >= line.end_offset:
                break
            if i in placed:
                continue

            bottom = bottoms[i] if bottoms is not None else line.y + line.height
            if bottom - page_start_y <= viewport_height or not current:
                current.append(chunks[i])
            else:
                pages.append(Page(number=len(pages) + 1, chunks=current))
                page_start_y = line.y
                current = [chunks[i]]
            placed.add(i)

    if current:
        pages.append(Page(number=len(pages) + 1, chunks=current))

    if len(placed) != len(chunks):
        raise ValueError(
            f"Line metrics cover {len(placed)} of {len(chunks)} chunks; "
            "they were measured against different text"
        )

    logger.debug("Paginated %d chunks over %d lines into %d pages", len(chunks), len(lines), len(pages))
    return pages


def find_page_for_chunk(pages: list[Page], sequence_index: int) -> int | None:
    """0-based index of the page holding sequence_index, or None."""
    for i, page in enumerate(pages):
        if page.chunks and page.chunks[0].sequence_index <= sequence_index <= page.chunks[-1].sequence_index:
            return i
    return None
