# ABOUTME: Splits chapter paragraphs into sentence chunks with paragraph-break markers
# ABOUTME: Sequence indices are contiguous per chapter and key translation/selection state
from __future__ import annotations

import re
from dataclasses import dataclass

SENTENCE = "sentence"
PARAGRAPH_BREAK = "paragraph_break"

# Sentence boundary: after .?! followed by whitespace
SENTENCE_SPLIT = re.compile(r"(?<=[.?!])\s+")


@dataclass(frozen=True)
class Chunk:
    kind: str
    sequence_index: int
    text: str = ""  # Empty for paragraph breaks

    @property
    def is_sentence(self) -> bool:
        return self.kind == SENTENCE


def segment_paragraphs(paragraphs: list[str] | None) -> list[Chunk]:
    """Split raw paragraphs into ordered sentence chunks and paragraph breaks."""
    if not paragraphs:
        return []

    # (kind, text) pairs first, numbered once the trailing break is dropped
    records: list[tuple[str, str]] = []
    for para in paragraphs:
        para = para.strip()
        if not para:
            continue
        for sent in SENTENCE_SPLIT.split(para):
            sent = sent.strip()
            if sent:
                records.append((SENTENCE, sent))
        records.append((PARAGRAPH_BREAK, ""))

    if records and records[-1][0] == PARAGRAPH_BREAK:
        records.pop()

    return [Chunk(kind=kind, sequence_index=i, text=text) for i, (kind, text) in enumerate(records)]


def flatten_chunks(chunks: list[Chunk]) -> tuple[str, list[tuple[int, int]]]:
    """Build the measurement text and each chunk's [start, end) range in it.

    A sentence contributes its text plus one trailing space, a paragraph
    break contributes a newline.
    """
    parts: list[str] = []
    spans: list[tuple[int, int]] = []
    offset = 0
    for chunk in chunks:
        piece = chunk.text + " " if chunk.is_sentence else "\n"
        parts.append(piece)
        spans.append((offset, offset + len(piece)))
        offset += len(piece)
    return "".join(parts), spans
