# ABOUTME: Async HTTP client for the reading backend (chapter content, progress, translation)
# ABOUTME: Bearer-token auth with retry on 5xx/timeouts; error bodies surface as APIError
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field

import httpx

logger = logging.getLogger("reader-core.api")

API_BASE_URL = os.environ.get("READER_API_URL", "http://127.0.0.1:8000/api")
API_TOKEN = os.environ.get("READER_API_TOKEN")
REQUEST_TIMEOUT = 30.0
MAX_RETRIES = 3
BACKOFF_SECS = [1, 2, 4]


class APIError(Exception):
    """Backend returned an error response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ReadingPosition:
    chapter_order: int
    page_number: int = 1

    def __post_init__(self):
        if self.chapter_order < 1 or self.page_number < 1:
            raise ValueError(f"Invalid reading position: {self.chapter_order}/{self.page_number}")


@dataclass
class ChapterContent:
    order: int
    title: str
    paragraphs: list[str]
    total_chapters: int
    metadata: dict = field(default_factory=dict)


@dataclass
class TranslationResult:
    original_text: str
    translated_text: str = ""
    alternatives: list[str] = field(default_factory=list)
    error: str | None = None
    source_language_name: str = ""
    service_name: str = ""


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or f"Server error: {resp.status_code}"
    if isinstance(data, dict):
        return str(data.get("error") or data.get("detail") or data)
    return str(data)


class ReaderAPIClient:
    """Async client for the reading backend."""

    def __init__(self, base_url: str = API_BASE_URL, token: str | None = API_TOKEN,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url
        self.token = token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(REQUEST_TIMEOUT, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request_with_retry(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make HTTP request with exponential backoff retry on 5xx/timeout."""
        last_exc: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                client = await self._get_client()
                resp = await client.request(method, path, **kwargs)
                if resp.status_code < 500:
                    if resp.is_error:
                        raise APIError(_error_message(resp), resp.status_code)
                    return resp
                last_exc = APIError(_error_message(resp), resp.status_code)
            except httpx.TransportError as e:
                last_exc = e

            if attempt < MAX_RETRIES - 1:
                wait = BACKOFF_SECS[attempt]
                logger.warning("API request %s %s failed (attempt %d/%d), retrying in %ds: %s",
                               method, path, attempt + 1, MAX_RETRIES, wait, last_exc)
                await asyncio.sleep(wait)

        if isinstance(last_exc, APIError):
            raise last_exc
        raise APIError(f"Network failure: {last_exc}") from last_exc

    async def fetch_chapter_content(self, book_id: int | str, chapter_order: int) -> ChapterContent:
        """Fetch one chapter's paragraphs and metadata."""
        resp = await self._request_with_retry(
            "GET", f"/books/{book_id}/chapter_content/", params={"chapter": chapter_order},
        )
        data = resp.json()
        chapter = data.get("chapter") or {}
        content = chapter.get("content") or []
        if isinstance(content, str):
            content = content.split("\n")
        return ChapterContent(
            order=chapter.get("order", chapter_order),
            title=chapter.get("title", ""),
            paragraphs=list(content),
            total_chapters=data.get("total_chapters", 0) or 0,
            metadata={k: v for k, v in chapter.items() if k != "content"},
        )

    async def save_reading_progress(self, book_id: int | str, position: ReadingPosition) -> None:
        """Persist the reader's chapter/page position."""
        await self._request_with_retry(
            "POST",
            f"/books/{book_id}/update_progress/",
            json={"chapter_order": position.chapter_order, "page_number": position.page_number},
        )

    async def get_reading_progress(self, book_id: int | str) -> ReadingPosition | None:
        """Last saved position from the book detail, if the user has one."""
        resp = await self._request_with_retry("GET", f"/books/{book_id}/")
        progress = resp.json().get("user_progress") or {}
        order = progress.get("last_read_chapter_order")
        if not order:
            return None
        return ReadingPosition(chapter_order=order, page_number=progress.get("last_read_page") or 1)

    async def translate(self, text: str, book_id: int | str, service: str) -> TranslationResult:
        """Translate a word or sentence in the context of a book."""
        resp = await self._request_with_retry(
            "POST", "/translate/", json={"text": text, "book": book_id, "service": service},
        )
        data = resp.json()
        return TranslationResult(
            original_text=data.get("original_text", text),
            translated_text=data.get("translated_text", ""),
            alternatives=list(data.get("alternatives") or []),
            error=data.get("error"),
            source_language_name=data.get("source_language_name", ""),
            service_name=data.get("service_name", service),
        )

    async def health_check(self) -> dict:
        """Check backend reachability."""
        client = await self._get_client()
        resp = await client.get("/health/", timeout=5.0)
        resp.raise_for_status()
        return resp.json()
