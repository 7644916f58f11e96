# ABOUTME: FastAPI facade exposing reading sessions to a presentation layer
# ABOUTME: Pages with word tokens, page/chapter navigation, font/theme changes, word and sentence translation
# ABOUTME: Restricted to localhost and Tailscale IPs (100.64.0.0/10)
from __future__ import annotations

import ipaddress
import logging
import uuid
from typing import Callable

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from layout_prober import LayoutProber
from reader_client import ReaderAPIClient
from session import (
    MAX_FONT_SIZE,
    MIN_FONT_SIZE,
    THEMES,
    ReaderSettings,
    ReadingSession,
    TranslationEntry,
    Viewport,
)
from store import ReaderStore
from tokenizer import tokenize_words

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("reader-core")

ALLOWED_NETWORKS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("100.64.0.0/10"),
]

app = FastAPI(title="Reader Core", version="0.1.0")

_sessions: dict[str, ReadingSession] = {}
_api_client: ReaderAPIClient | None = None
_store = ReaderStore()
# One prober per session: probes run in worker threads and fonts are not thread-safe
_prober_factory: Callable[[], LayoutProber] = LayoutProber


def get_api_client() -> ReaderAPIClient:
    global _api_client
    if _api_client is None:
        _api_client = ReaderAPIClient()
    return _api_client


@app.middleware("http")
async def restrict_ip(request: Request, call_next):
    """Reject requests not from localhost or Tailscale."""
    try:
        client_ip = ipaddress.ip_address(request.client.host)
    except (AttributeError, ValueError):
        client_ip = None
    if client_ip is None or not any(client_ip in network for network in ALLOWED_NETWORKS):
        logger.warning("Blocked request from %s", request.client.host if request.client else "unknown")
        return JSONResponse(status_code=403, content={"detail": "Forbidden"})
    return await call_next(request)


@app.on_event("shutdown")
async def shutdown():
    for session_id in list(_sessions):
        await _sessions.pop(session_id).close()
    if _api_client is not None:
        await _api_client.close()


@app.get("/health")
async def health():
    """Service health + backend dependency check."""
    backend_status = "ok"
    backend_detail = None
    try:
        await get_api_client().health_check()
    except Exception as e:
        backend_status = "unreachable"
        backend_detail = str(e)

    return {
        "status": "ok" if backend_status == "ok" else "degraded",
        "backend": {"status": backend_status, "error": backend_detail},
        "sessions": len(_sessions),
    }


def _get_session(session_id: str) -> ReadingSession:
    session = _sessions.get(session_id)
    if session is None:
        raise HTTPException(404, f"Session not found: {session_id}")
    return session


@app.post("/sessions")
async def create_session(
    book_id: int = Body(...),
    width: float = Body(...),
    height: float = Body(...),
    chapter_order: int | None = Body(None),
    font_size: int | None = Body(None),
    theme: str | None = Body(None),
):
    """Open a book and paginate its starting chapter."""
    if width <= 0 or height <= 0:
        raise HTTPException(400, f"Invalid viewport: {width}x{height}")
    if theme is not None and theme not in THEMES:
        raise HTTPException(400, f"Unknown theme: {theme}. Use: {THEMES}")

    settings = None
    if font_size is not None or theme is not None:
        settings = ReaderSettings()
        if font_size is not None:
            settings.font_size = max(MIN_FONT_SIZE, min(MAX_FONT_SIZE, font_size))
        if theme is not None:
            settings.theme = theme

    session = ReadingSession(
        book_id, get_api_client(), Viewport(width, height), settings,
        prober=_prober_factory(), store=_store,
    )
    try:
        await session.open(chapter_order)
    except ValueError as e:
        raise HTTPException(400, str(e))

    session_id = uuid.uuid4().hex[:12]
    _sessions[session_id] = session
    logger.info("Session %s opened for book %s", session_id, book_id)
    return _format_session(session_id, session)


@app.get("/sessions/{session_id}")
async def get_session(session_id: str):
    return _format_session(session_id, _get_session(session_id))


@app.get("/sessions/{session_id}/pages/{page_number}")
async def get_page(session_id: str, page_number: int):
    """Render data for one page: chunks with their word tokens and translations."""
    session = _get_session(session_id)
    if not 1 <= page_number <= len(session.pages):
        raise HTTPException(404, f"Page not found: {page_number}")
    return _format_page(session, page_number - 1)


@app.post("/sessions/{session_id}/page")
async def change_page(session_id: str, page_index: int = Body(..., embed=True)):
    session = _get_session(session_id)
    try:
        session.on_page_changed(page_index)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return _format_session(session_id, session)


@app.post("/sessions/{session_id}/chapter")
async def navigate_chapter(session_id: str, direction: str = Body(..., embed=True)):
    session = _get_session(session_id)
    try:
        moved = await session.on_chapter_navigate(direction)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {**_format_session(session_id, session), "moved": moved}


@app.post("/sessions/{session_id}/font")
async def change_font(session_id: str, font_size: int = Body(..., embed=True)):
    session = _get_session(session_id)
    await session.on_font_size_changed(font_size)
    return _format_session(session_id, session)


@app.post("/sessions/{session_id}/theme")
async def change_theme(session_id: str, theme: str = Body(..., embed=True)):
    session = _get_session(session_id)
    try:
        await session.on_theme_changed(theme)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return _format_session(session_id, session)


@app.post("/sessions/{session_id}/service")
async def change_service(session_id: str, service: str = Body(..., embed=True)):
    session = _get_session(session_id)
    try:
        session.set_translation_service(service)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return _format_session(session_id, session)


@app.post("/sessions/{session_id}/words")
async def tap_word(
    session_id: str,
    word: str = Body(...),
    sequence_index: int = Body(...),
    word_index: int = Body(...),
):
    """Select a word and translate it."""
    session = _get_session(session_id)
    try:
        entry = await session.on_word_tapped(word, sequence_index, word_index)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {
        "selected": list(session.selected_word) if session.selected_word else None,
        "translation": _format_entry(entry),
        "superseded": entry is None and session.selected_word is not None,
    }


@app.delete("/sessions/{session_id}/selection")
async def clear_selection(session_id: str):
    _get_session(session_id).clear_selection()
    return {"selected": None}


@app.post("/sessions/{session_id}/chunks/{sequence_index}/translate")
async def translate_chunk(session_id: str, sequence_index: int):
    session = _get_session(session_id)
    try:
        entry = await session.on_chunk_translate_requested(sequence_index)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"sequence_index": sequence_index, "translation": _format_entry(entry)}


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    """Flush the reading position and drop the session."""
    session = _get_session(session_id)
    await session.close()
    _sessions.pop(session_id, None)
    return {"closed": session_id}


def _format_entry(entry: TranslationEntry | None) -> dict | None:
    if entry is None:
        return None
    result = entry.result
    return {
        "in_flight": entry.in_flight,
        "translated_text": entry.result_text,
        "error": entry.error,
        "original_text": result.original_text if result else None,
        "alternatives": result.alternatives if result else [],
        "source_language_name": result.source_language_name if result else None,
        "service_name": result.service_name if result else None,
    }


def _format_page(session: ReadingSession, index: int) -> dict:
    page = session.pages[index]
    items = []
    for chunk in page.chunks:
        if not chunk.is_sentence:
            items.append({"kind": chunk.kind, "sequence_index": chunk.sequence_index})
            continue
        items.append({
            "kind": chunk.kind,
            "sequence_index": chunk.sequence_index,
            "text": chunk.text,
            "tokens": [
                {"kind": t.kind, "text": t.text, "word_index": t.word_index}
                for t in tokenize_words(chunk.text)
            ],
            "translation": _format_entry(session.translations.chunks.get(chunk.sequence_index)),
        })
    return {"page_number": page.number, "total_pages": len(session.pages), "items": items}


def _format_session(session_id: str, session: ReadingSession) -> dict:
    """Format a session's state for API response."""
    chapter = session.chapter
    total_pages = len(session.pages)
    position = session.position

    percent = 0.0
    if total_pages > 0:
        percent = (session.current_page_index + 1) / total_pages * 100

    return {
        "session_id": session_id,
        "book_id": session.book_id,
        "state": session.state.value,
        "chapter": {
            "order": chapter.order,
            "title": chapter.title,
            "total_chapters": chapter.total_chapters,
            "metadata": chapter.metadata,
        } if chapter else None,
        "current_page_index": session.current_page_index,
        "total_pages": total_pages,
        "progress_percent": round(percent, 1),
        "position": {
            "chapter_order": position.chapter_order,
            "page_number": position.page_number,
        } if position else None,
        "settings": {
            "font_size": session.settings.font_size,
            "line_height": session.settings.line_height,
            "theme": session.settings.theme,
            "translation_service": session.settings.translation_service,
        },
        "error": session.last_error,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8768)
