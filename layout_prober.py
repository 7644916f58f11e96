# ABOUTME: Off-screen measurement of flattened chapter text with a real font engine
# ABOUTME: Word-wraps at the page width and reports per-line offsets, position and height
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Callable

from PIL import ImageFont

logger = logging.getLogger("reader-core.prober")

FONT_PATH = os.environ.get("READER_FONT_PATH") or None

# Runs of non-newline whitespace, or a word with its trailing spaces
TOKEN = re.compile(r"[^\S\n]+|\S+[^\S\n]*")

Measure = Callable[[str, int], float]


@dataclass(frozen=True)
class LineMetric:
    start_offset: int
    end_offset: int  # Exclusive; includes trailing spaces and the hard newline
    y: float
    height: float


@dataclass(frozen=True)
class LayoutConfig:
    width: float
    font_size: int
    line_height: float


def load_font(font_path: str | None, font_size: int) -> ImageFont.FreeTypeFont:
    if font_path:
        try:
            return ImageFont.truetype(font_path, font_size)
        except OSError:
            logger.warning("Font %s not loadable, using bundled default", font_path)
    return ImageFont.load_default(size=font_size)


class PillowMeasure:
    """Measuring function backed by Pillow's FreeType layout.

    Loaded fonts belong to this instance only: a FreeType face must not be
    used from two threads at once, so each prober gets its own.
    """

    def __init__(self, font_path: str | None = FONT_PATH):
        self.font_path = font_path
        self._fonts: dict[int, ImageFont.FreeTypeFont] = {}

    def font(self, font_size: int) -> ImageFont.FreeTypeFont:
        font = self._fonts.get(font_size)
        if font is None:
            font = self._fonts[font_size] = load_font(self.font_path, font_size)
        return font

    def __call__(self, text: str, font_size: int) -> float:
        return self.font(font_size).getlength(text)


class LayoutProber:
    """Measures text line-by-line without displaying it."""

    def __init__(self, measure: Measure | None = None):
        self.measure = measure or PillowMeasure()

    def _fits(self, text: str, config: LayoutConfig) -> bool:
        # Trailing whitespace hangs past the margin
        return self.measure(text.rstrip(), config.font_size) <= config.width

    def _break_word(self, text: str, start: int, end: int, config: LayoutConfig) -> int:
        """Longest prefix of text[start:end] that fits on one line (at least one char)."""
        cut = start + 1
        while cut < end and self._fits(text[start:cut + 1], config):
            cut += 1
        return cut

    def _wrap_segment(
        self, text: str, seg_start: int, seg_end: int, config: LayoutConfig,
    ) -> list[tuple[int, int]]:
        """Greedy word-wrap of text[seg_start:seg_end] (no newlines inside)."""
        ranges: list[tuple[int, int]] = []
        line_start = seg_start
        pos = seg_start

        for match in TOKEN.finditer(text, seg_start, seg_end):
            tok_start, tok_end = match.start(), match.end()
            if not match.group().strip() or self._fits(text[line_start:tok_end], config):
                pos = tok_end
                continue

            if pos > line_start:
                ranges.append((line_start, pos))
                line_start = pos

            # A single word wider than the page is broken at character level
            word_end = tok_start + len(match.group().rstrip())
            while not self._fits(text[line_start:word_end], config):
                cut = self._break_word(text, line_start, word_end, config)
                ranges.append((line_start, cut))
                line_start = cut
            pos = tok_end

        if pos > line_start:
            ranges.append((line_start, pos))
        return ranges

    def probe(self, flat_text: str, config: LayoutConfig) -> list[LineMetric]:
        """Lay out flat_text at config and return line metrics covering every character."""
        if not flat_text:
            return []

        ranges: list[tuple[int, int]] = []
        seg_start = 0
        while seg_start < len(flat_text):
            newline = flat_text.find("\n", seg_start)
            seg_end = len(flat_text) if newline == -1 else newline
            wrapped = self._wrap_segment(flat_text, seg_start, seg_end, config)
            if newline != -1:
                # The hard break closes the last wrapped line (or forms its own)
                if wrapped:
                    last_start, _ = wrapped.pop()
                    wrapped.append((last_start, newline + 1))
                else:
                    wrapped.append((newline, newline + 1))
                seg_start = newline + 1
            else:
                seg_start = seg_end
            ranges.extend(wrapped)

        lines = [
            LineMetric(start_offset=start, end_offset=end, y=i * config.line_height, height=config.line_height)
            for i, (start, end) in enumerate(ranges)
        ]
        logger.debug("Probed %d chars into %d lines (width=%s, font=%d)",
                     len(flat_text), len(lines), config.width, config.font_size)
        return lines
