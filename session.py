# ABOUTME: Reading session controller: chapter loading, re-pagination on layout changes, position saving
# ABOUTME: Debounced progress/settings persistence, stale-response guards, per-chapter translation cache
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from layout_prober import LayoutConfig, LayoutProber, LineMetric
from paginator import Page, find_page_for_chunk, paginate
from reader_client import ChapterContent, ReaderAPIClient, ReadingPosition, TranslationResult
from segmenter import Chunk, flatten_chunks, segment_paragraphs
from store import ReaderStore
from tokenizer import clean_word

logger = logging.getLogger("reader-core.session")

SAVE_DEBOUNCE_SECS = 1.2
SETTINGS_DEBOUNCE_SECS = 0.5

MIN_FONT_SIZE = 12
MAX_FONT_SIZE = 28
DEFAULT_FONT_SIZE = 16
LINE_HEIGHT_RATIO = 1.6

THEMES = ("light", "sepia", "dark")
TRANSLATION_SERVICES = ("deepl", "chatgpt")


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SEGMENTING = "segmenting"
    PROBING = "probing"
    PAGINATED = "paginated"


@dataclass(frozen=True)
class Viewport:
    width: float
    height: float


@dataclass
class ReaderSettings:
    font_size: int = DEFAULT_FONT_SIZE
    theme: str = "light"
    translation_service: str = "deepl"

    @property
    def line_height(self) -> float:
        return self.font_size * LINE_HEIGHT_RATIO


@dataclass
class TranslationEntry:
    in_flight: bool = True
    result_text: str | None = None
    error: str | None = None
    result: TranslationResult | None = None


@dataclass
class TranslationCache:
    """Chunk translations keyed by sequence index, word lookups keyed by cleaned text."""
    chunks: dict[int, TranslationEntry] = field(default_factory=dict)
    words: dict[str, TranslationEntry] = field(default_factory=dict)

    def clear(self):
        self.chunks.clear()
        self.words.clear()


class Debouncer:
    """Runs an async callback once input has been quiet for `delay` seconds.

    Only the arguments of the latest schedule() call are used.
    """

    def __init__(self, delay: float, callback: Callable[..., Awaitable[None]]):
        self.delay = delay
        self._callback = callback
        self._task: asyncio.Task | None = None
        self._pending: tuple | None = None

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def schedule(self, *args):
        if self._task and not self._task.done():
            self._task.cancel()
        self._pending = args
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        await asyncio.sleep(self.delay)
        args, self._pending, self._task = self._pending, None, None
        if args is not None:
            await self._callback(*args)

    def cancel(self):
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None
        self._pending = None

    async def flush(self):
        """Run the pending call now instead of waiting for the timer."""
        args = self._pending
        self.cancel()
        if args is not None:
            await self._callback(*args)


def _clamp_font_size(size: int) -> int:
    return max(MIN_FONT_SIZE, min(MAX_FONT_SIZE, int(size)))


class ReadingSession:
    """State of one reader screen for one book."""

    def __init__(
        self,
        book_id: int | str,
        api: ReaderAPIClient,
        viewport: Viewport,
        settings: ReaderSettings | None = None,
        *,
        prober: LayoutProber | None = None,
        store: ReaderStore | None = None,
        save_delay: float = SAVE_DEBOUNCE_SECS,
        settings_delay: float = SETTINGS_DEBOUNCE_SECS,
        whole_chunks: bool = True,
    ):
        self.book_id = book_id
        self.api = api
        self.viewport = viewport
        self.settings = settings or ReaderSettings()
        self.prober = prober or LayoutProber()
        self.store = store
        self.whole_chunks = whole_chunks
        self._restore_settings = settings is None

        self.state = SessionState.IDLE
        self.chapter: ChapterContent | None = None
        self.chunks: list[Chunk] = []
        self.lines: list[LineMetric] = []
        self.pages: list[Page] = []
        self.current_page_index = 0
        self.last_error: str | None = None

        self.translations = TranslationCache()
        self.selected_word: tuple[int, int] | None = None  # (sequence_index, word_index)
        self.word_lookup: TranslationEntry | None = None

        self.saved_position: ReadingPosition | None = None
        self.last_saved_position: ReadingPosition | None = None
        self._last_scheduled_position: ReadingPosition | None = None
        self._visited_chapters: set[int] = set()

        # Identity guards for async results
        self._requested_order: int | None = None
        self._chapter_generation = 0
        self._layout_generation = 0
        self._lookup_token = 0

        # Where to land once the next pagination completes
        self._pending_anchor: int | None = None
        self._pending_target_page: int | None = None

        self._layout_lock = asyncio.Lock()
        self._save_debouncer = Debouncer(save_delay, self._save_position)
        self._settings_debouncer = Debouncer(settings_delay, self._save_settings)
        self._closed = False

    # --- exposed state ---

    @property
    def is_loading(self) -> bool:
        return self._requested_order is not None

    @property
    def current_page(self) -> Page | None:
        if not self.pages:
            return None
        return self.pages[self.current_page_index]

    @property
    def position(self) -> ReadingPosition | None:
        if self.chapter is None:
            return None
        return ReadingPosition(chapter_order=self.chapter.order, page_number=self.current_page_index + 1)

    # --- chapter lifecycle ---

    async def open(self, chapter_order: int | None = None) -> bool:
        """Restore settings and saved position, then load the starting chapter."""
        if self.store:
            await self.store.init_db()
            if self._restore_settings:
                stored = await self.store.get_settings(self.book_id)
                if stored:
                    self.settings = ReaderSettings(
                        font_size=_clamp_font_size(stored["font_size"] or DEFAULT_FONT_SIZE),
                        theme=stored["theme"] if stored["theme"] in THEMES else "light",
                        translation_service=stored["translation_service"] or "deepl",
                    )

        self.saved_position = await self._resolve_saved_position()
        if chapter_order is None:
            chapter_order = self.saved_position.chapter_order if self.saved_position else 1
        logger.info("Book %s: opening at chapter %d (saved=%s)", self.book_id, chapter_order, self.saved_position)
        return await self.load_chapter(chapter_order)

    async def _resolve_saved_position(self) -> ReadingPosition | None:
        remote = None
        try:
            remote = await self.api.get_reading_progress(self.book_id)
        except Exception as e:
            logger.warning("Book %s: could not fetch saved progress: %s", self.book_id, e)

        local = await self.store.get_position(self.book_id) if self.store else None
        if local is None:
            return remote
        local_position = ReadingPosition(chapter_order=local["chapter_order"], page_number=local["page_number"])
        # An unsynced local save is newer than anything the backend has
        if remote is None or not local["synced"]:
            return local_position
        if remote.chapter_order == local_position.chapter_order and remote.page_number == 1:
            return local_position
        return remote

    async def load_chapter(self, order: int) -> bool:
        """Fetch, segment and paginate a chapter. Returns False if it failed or was superseded."""
        if order < 1:
            raise ValueError(f"Chapter order must be >= 1, got {order}")
        if self._closed:
            return False

        self._requested_order = order
        self.state = SessionState.LOADING
        logger.info("Book %s: loading chapter %d", self.book_id, order)

        try:
            content = await self.api.fetch_chapter_content(self.book_id, order)
        except Exception as e:
            if self._requested_order != order:
                return False
            self._requested_order = None
            self.last_error = f"Could not load chapter {order}: {e}"
            logger.warning("Book %s: %s", self.book_id, self.last_error)
            if self.chapter is not None:
                self.state = SessionState.PAGINATED
            return False

        if self._requested_order != order:
            logger.info("Book %s: discarding stale response for chapter %d", self.book_id, order)
            return False
        self._requested_order = None

        first_visit = content.order not in self._visited_chapters
        self._visited_chapters.add(content.order)

        self._chapter_generation += 1
        self.translations.clear()
        self.selected_word = None
        self.word_lookup = None
        self.chapter = content
        self.last_error = None

        self.state = SessionState.SEGMENTING
        self.chunks = segment_paragraphs(content.paragraphs)
        self.pages = []
        self.lines = []
        self.current_page_index = 0
        logger.info("Book %s: chapter %d segmented into %d chunks", self.book_id, content.order, len(self.chunks))

        self._pending_anchor = None
        self._pending_target_page = None
        saved = self.saved_position
        if first_visit and saved and saved.chapter_order == content.order:
            self._pending_target_page = saved.page_number

        await self._repaginate()
        return not self._closed and self.last_error is None

    def _superseded(self, generation: int, chapter_generation: int) -> bool:
        return (
            self._closed
            or generation != self._layout_generation
            or chapter_generation != self._chapter_generation
        )

    async def _repaginate(self) -> bool:
        """Invalidate layout, re-probe and re-paginate; older in-flight runs are discarded."""
        if self._closed:
            return False
        self._layout_generation += 1
        generation = self._layout_generation
        chapter_generation = self._chapter_generation
        self.lines = []
        self.pages = []
        self.state = SessionState.PROBING

        async with self._layout_lock:
            if self._superseded(generation, chapter_generation):
                return False
            chunks = self.chunks
            flat_text, _ = flatten_chunks(chunks)
            config = LayoutConfig(
                width=self.viewport.width,
                font_size=self.settings.font_size,
                line_height=self.settings.line_height,
            )
            try:
                lines = await asyncio.to_thread(self.prober.probe, flat_text, config)
                if self._superseded(generation, chapter_generation):
                    logger.debug("Book %s: dropping superseded layout %d", self.book_id, generation)
                    return False
                pages = paginate(chunks, lines, self.viewport.height, whole_chunks=self.whole_chunks)
            except Exception as e:
                if self._superseded(generation, chapter_generation):
                    return False
                # Nothing to show until the next settings change lays the chapter out again
                self.last_error = f"Could not lay out chapter {self.chapter.order}: {e}"
                logger.exception("Book %s: %s", self.book_id, self.last_error)
                if not self.is_loading:
                    self.state = SessionState.PAGINATED
                return False

        self.lines = lines
        self.pages = pages
        self.current_page_index = self._resolve_target_index()
        self._pending_anchor = None
        self._pending_target_page = None
        self.last_error = None
        if not self.is_loading:
            self.state = SessionState.PAGINATED
        logger.info("Book %s: chapter %d paginated into %d pages, showing page %d",
                    self.book_id, self.chapter.order, len(pages), self.current_page_index + 1)
        self._schedule_save()
        return True

    def _resolve_target_index(self) -> int:
        if not self.pages:
            return 0
        if self._pending_anchor is not None:
            found = find_page_for_chunk(self.pages, self._pending_anchor)
            return found if found is not None else 0
        if self._pending_target_page is not None:
            return min(max(self._pending_target_page, 1), len(self.pages)) - 1
        return 0

    # --- navigation ---

    def on_page_changed(self, index: int):
        if not self.pages:
            return
        if not 0 <= index < len(self.pages):
            raise ValueError(f"Page index {index} out of range (0..{len(self.pages) - 1})")
        if index == self.current_page_index:
            return
        self.current_page_index = index
        self._schedule_save()

    async def go_to_next_chapter(self) -> bool:
        if self.is_loading or self.chapter is None:
            return False
        if self.chapter.order >= self.chapter.total_chapters:
            return False
        return await self.load_chapter(self.chapter.order + 1)

    async def go_to_previous_chapter(self) -> bool:
        if self.is_loading or self.chapter is None:
            return False
        if self.chapter.order <= 1:
            return False
        return await self.load_chapter(self.chapter.order - 1)

    async def on_chapter_navigate(self, direction: str) -> bool:
        if direction == "next":
            return await self.go_to_next_chapter()
        if direction in ("previous", "prev"):
            return await self.go_to_previous_chapter()
        raise ValueError(f"Unknown direction: {direction}")

    # --- layout settings ---

    async def _relayout(self) -> bool:
        # A fetch in flight paginates with the new settings once it lands
        if self.chapter is None or self.is_loading:
            return False
        page = self.current_page
        if page is not None:
            self._pending_anchor = page.leading_sequence_index
            self._pending_target_page = None
        return await self._repaginate()

    async def on_font_size_changed(self, size: int) -> bool:
        size = _clamp_font_size(size)
        if size == self.settings.font_size:
            return False
        self.settings.font_size = size
        self._schedule_settings_save()
        return await self._relayout()

    async def on_theme_changed(self, theme: str) -> bool:
        if theme not in THEMES:
            raise ValueError(f"Unknown theme: {theme}. Use: {THEMES}")
        if theme == self.settings.theme:
            return False
        self.settings.theme = theme
        self._schedule_settings_save()
        return await self._relayout()

    async def on_viewport_changed(self, viewport: Viewport) -> bool:
        if viewport == self.viewport:
            return False
        self.viewport = viewport
        return await self._relayout()

    def set_translation_service(self, service: str):
        if service not in TRANSLATION_SERVICES:
            raise ValueError(f"Unknown translation service: {service}. Use: {TRANSLATION_SERVICES}")
        self.settings.translation_service = service
        self._schedule_settings_save()

    # --- translation ---

    def _sentence(self, sequence_index: int) -> Chunk:
        if 0 <= sequence_index < len(self.chunks) and self.chunks[sequence_index].is_sentence:
            return self.chunks[sequence_index]
        raise ValueError(f"No sentence with sequence index {sequence_index}")

    async def _run_translation(self, text: str, entry: TranslationEntry):
        try:
            result = await self.api.translate(text, self.book_id, self.settings.translation_service)
        except Exception as e:
            entry.error = str(e) or "Translation failed"
        else:
            entry.result = result
            entry.result_text = result.translated_text
            entry.error = result.error
        finally:
            entry.in_flight = False

    async def on_word_tapped(self, word: str, sequence_index: int, word_index: int) -> TranslationEntry | None:
        """Select a word and look it up; only the latest tap's result is shown."""
        self._sentence(sequence_index)
        self.selected_word = (sequence_index, word_index)
        self._lookup_token += 1
        token = self._lookup_token

        cleaned = clean_word(word)
        if not cleaned:
            self.clear_selection()
            return None

        cached = self.translations.words.get(cleaned)
        if cached and not cached.in_flight and cached.error is None:
            self.word_lookup = cached
            return cached

        entry = TranslationEntry()
        self.translations.words[cleaned] = entry
        self.word_lookup = entry
        await self._run_translation(cleaned, entry)

        if token != self._lookup_token:
            logger.debug("Book %s: lookup for %r superseded", self.book_id, cleaned)
            return None
        return entry

    def clear_selection(self):
        self.selected_word = None
        self.word_lookup = None

    async def on_chunk_translate_requested(self, sequence_index: int) -> TranslationEntry | None:
        """Translate a whole sentence; repeated requests reuse the cached entry."""
        chunk = self._sentence(sequence_index)
        entry = self.translations.chunks.get(sequence_index)
        if entry and (entry.in_flight or entry.error is None):
            return entry

        chapter_generation = self._chapter_generation
        entry = TranslationEntry()
        self.translations.chunks[sequence_index] = entry
        await self._run_translation(chunk.text, entry)

        if chapter_generation != self._chapter_generation:
            return None
        return entry

    # --- persistence ---

    def _schedule_save(self):
        position = self.position
        if self._closed or position is None or position == self._last_scheduled_position:
            return
        self._last_scheduled_position = position
        self._save_debouncer.schedule(position)

    def _schedule_settings_save(self):
        if not self._closed:
            self._settings_debouncer.schedule()

    async def _save_position(self, position: ReadingPosition):
        synced = True
        try:
            await self.api.save_reading_progress(self.book_id, position)
            self.last_saved_position = position
            logger.debug("Book %s: saved position %s", self.book_id, position)
        except Exception as e:
            synced = False
            logger.warning("Book %s: failed to save position %s: %s", self.book_id, position, e)

        if self.store:
            try:
                await self.store.save_position(self.book_id, position.chapter_order, position.page_number, synced)
            except Exception as e:
                logger.exception("Book %s: failed to store position locally: %s", self.book_id, e)

    async def _save_settings(self):
        if not self.store:
            return
        try:
            await self.store.save_settings(
                self.book_id, self.settings.font_size, self.settings.theme, self.settings.translation_service,
            )
        except Exception as e:
            logger.exception("Book %s: failed to store settings: %s", self.book_id, e)

    async def close(self):
        """Cancel timers and make a final save of the latest position."""
        if self._closed:
            return
        self._closed = True
        # Fetches and layouts still in flight land as stale
        self._requested_order = None
        self._chapter_generation += 1
        self._layout_generation += 1
        await self._settings_debouncer.flush()
        self._save_debouncer.cancel()
        position = self.position
        if position is not None and position != self.last_saved_position:
            await self._save_position(position)
        self.state = SessionState.IDLE
        logger.info("Book %s: session closed at %s", self.book_id, position)
