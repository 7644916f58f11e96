# ABOUTME: SQLite-backed local store for per-book reader settings and last-known positions
# ABOUTME: Fills in page numbers the backend does not keep and persists font/theme choices
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

DB_PATH = "data/reader.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS reader_settings (
    book_id TEXT PRIMARY KEY,
    font_size INTEGER,
    theme TEXT,
    translation_service TEXT,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS reading_positions (
    book_id TEXT PRIMARY KEY,
    chapter_order INTEGER NOT NULL,
    page_number INTEGER NOT NULL DEFAULT 1,
    synced INTEGER DEFAULT 0,
    updated_at TEXT
);
"""


class ReaderStore:
    """Async access to the local reader database."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    async def init_db(self):
        """Create the database directory and tables if they don't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA)
            await db.commit()

    async def get_settings(self, book_id: int | str) -> dict | None:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT font_size, theme, translation_service FROM reader_settings WHERE book_id = ?",
                (str(book_id),),
            ) as cursor:
                row = await cursor.fetchone()
                return dict(row) if row else None

    async def save_settings(self, book_id: int | str, font_size: int, theme: str, translation_service: str):
        """Insert or replace the settings row for a book."""
        now = datetime.now(timezone.utc).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """INSERT INTO reader_settings (book_id, font_size, theme, translation_service, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(book_id) DO UPDATE SET
                       font_size=excluded.font_size, theme=excluded.theme,
                       translation_service=excluded.translation_service, updated_at=excluded.updated_at""",
                (str(book_id), font_size, theme, translation_service, now),
            )
            await db.commit()

    async def get_position(self, book_id: int | str) -> dict | None:
        """Last position recorded locally, with its backend sync flag."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT chapter_order, page_number, synced FROM reading_positions WHERE book_id = ?",
                (str(book_id),),
            ) as cursor:
                row = await cursor.fetchone()
                return dict(row) if row else None

    async def save_position(self, book_id: int | str, chapter_order: int, page_number: int, synced: bool):
        now = datetime.now(timezone.utc).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """INSERT INTO reading_positions (book_id, chapter_order, page_number, synced, updated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(book_id) DO UPDATE SET
                       chapter_order=excluded.chapter_order, page_number=excluded.page_number,
                       synced=excluded.synced, updated_at=excluded.updated_at""",
                (str(book_id), chapter_order, page_number, int(synced), now),
            )
            await db.commit()

    async def delete_book(self, book_id: int | str):
        """Forget settings and position for a book."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DELETE FROM reader_settings WHERE book_id = ?", (str(book_id),))
            await db.execute("DELETE FROM reading_positions WHERE book_id = ?", (str(book_id),))
            await db.commit()
