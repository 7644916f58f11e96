"""Shared fixtures: a deterministic text measure and an in-memory backend."""

import asyncio

import pytest

from layout_prober import LayoutProber
from reader_client import APIError, ChapterContent, ReadingPosition, TranslationResult
from session import ReaderSettings, ReadingSession, Viewport


def monospace(text: str, font_size: int) -> float:
    """Every character is half the font size wide."""
    return len(text) * font_size * 0.5


def make_paragraphs(count: int, sentences: int = 3) -> list[str]:
    return [
        " ".join(f"Paragraph {p} has sentence number {s} in it." for s in range(sentences))
        for p in range(count)
    ]


class FakeAPI:
    """Stands in for ReaderAPIClient; gates let tests hold responses back."""

    def __init__(self, chapters: dict[int, list[str]] | None = None, progress: ReadingPosition | None = None):
        self.chapters = chapters or {1: make_paragraphs(6), 2: make_paragraphs(8), 3: make_paragraphs(4)}
        self.progress = progress
        self.saves: list[ReadingPosition] = []
        self.translations: list[str] = []
        self.fetches: list[int] = []
        self.fail_saves = False
        self.fail_chapters: set[int] = set()
        self.fail_translations: set[str] = set()
        self.chapter_gates: dict[int, asyncio.Event] = {}
        self.translate_gates: dict[str, asyncio.Event] = {}

    async def fetch_chapter_content(self, book_id, chapter_order):
        self.fetches.append(chapter_order)
        gate = self.chapter_gates.get(chapter_order)
        if gate is not None:
            await gate.wait()
        if chapter_order in self.fail_chapters:
            raise APIError("Chapter unavailable", 500)
        return ChapterContent(
            order=chapter_order,
            title=f"Chapter {chapter_order}",
            paragraphs=self.chapters[chapter_order],
            total_chapters=len(self.chapters),
        )

    async def save_reading_progress(self, book_id, position):
        if self.fail_saves:
            raise APIError("Save rejected", 503)
        self.saves.append(position)

    async def get_reading_progress(self, book_id):
        return self.progress

    async def translate(self, text, book_id, service):
        gate = self.translate_gates.get(text)
        if gate is not None:
            await gate.wait()
        self.translations.append(text)
        if text in self.fail_translations:
            raise APIError("Translation service down", 502)
        return TranslationResult(original_text=text, translated_text=text.upper(), service_name=service)

    async def health_check(self):
        return {"status": "ok"}

    async def close(self):
        pass


@pytest.fixture
def prober() -> LayoutProber:
    return LayoutProber(measure=monospace)


@pytest.fixture
def api() -> FakeAPI:
    return FakeAPI()


@pytest.fixture
def make_session(api, prober):
    """Build a session over the fake backend; small viewport so chapters span several pages."""

    def _make(**kwargs) -> ReadingSession:
        kwargs.setdefault("prober", prober)
        kwargs.setdefault("save_delay", 0.05)
        kwargs.setdefault("settings_delay", 0.01)
        viewport = kwargs.pop("viewport", Viewport(width=200, height=130))
        settings = kwargs.pop("settings", ReaderSettings())
        return ReadingSession(7, kwargs.pop("api", api), viewport, settings, **kwargs)

    return _make
