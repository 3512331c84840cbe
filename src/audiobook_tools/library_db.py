"""SQLite-backed audiobook library -- the record of converted books.

After a successful conversion the collector swaps the source MP3 entry for
the new M4B entry in one transaction (``replace_file``). Thread-safe via
per-thread connections; the database uses WAL mode so conversions finishing
on different worker threads can write concurrently with readers.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from .errors import LibraryUpdateError
from .models import BookMetadata

log = logger.bind(stage="library")

_SCHEMA = """\
PRAGMA journal_mode=WAL;
PRAGMA busy_timeout=5000;

CREATE TABLE IF NOT EXISTS audiobooks (
    path        TEXT PRIMARY KEY,
    title       TEXT NOT NULL DEFAULT '',
    authors     TEXT NOT NULL DEFAULT '',
    narrator    TEXT NOT NULL DEFAULT '',
    duration    REAL,
    format      TEXT NOT NULL,
    size        INTEGER,
    added_at    TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audiobooks_format ON audiobooks(format);
"""

# Multiple authors are stored in one column
_AUTHOR_SEP = "; "


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _file_format(path: Path) -> str:
    return path.suffix.lower().lstrip(".") or "unknown"


def _file_size(path: Path) -> int | None:
    try:
        return path.stat().st_size
    except OSError:
        return None


class LibraryDB:
    """SQLite-backed library of audiobook files.

    Thread-safe: each thread gets its own connection via threading.local().
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._local = threading.local()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create a per-thread SQLite connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=10.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
        return conn

    def _init_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def close(self) -> None:
        """Close the current thread's connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def add(
        self,
        path: Path,
        metadata: BookMetadata | None = None,
        duration: float | None = None,
    ) -> dict:
        """Insert or refresh a library entry for ``path``."""
        now = _utcnow()
        meta = metadata or BookMetadata(title=path.stem)
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO audiobooks
               (path, title, authors, narrator, duration, format, size, added_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(path) DO UPDATE SET
                 title=excluded.title, authors=excluded.authors,
                 narrator=excluded.narrator, duration=excluded.duration,
                 format=excluded.format, size=excluded.size,
                 updated_at=excluded.updated_at""",
            (
                str(path), meta.title or path.stem, _AUTHOR_SEP.join(meta.authors),
                meta.narrator, duration, _file_format(path), _file_size(path),
                now, now,
            ),
        )
        conn.commit()
        log.debug(f"Added {path.name} to library")
        return self.read(path)  # type: ignore[return-value]

    def read(self, path: Path) -> dict | None:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM audiobooks WHERE path = ?", (str(path),)
        ).fetchone()
        return self._row_to_dict(row) if row is not None else None

    def _row_to_dict(self, row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        data["authors"] = [a for a in data["authors"].split(_AUTHOR_SEP) if a]
        return data

    def replace_file(
        self,
        old_path: Path,
        new_path: Path,
        metadata: BookMetadata | None = None,
    ) -> dict:
        """Swap the entry for ``old_path`` with one for ``new_path``.

        Metadata not supplied is carried over from the old entry. The old
        entry keeps its ``added_at`` timestamp.

        Raises:
            LibraryUpdateError: ``old_path`` is not in the library, or the
                write failed.
        """
        conn = self._get_conn()
        old = self.read(old_path)
        if old is None:
            raise LibraryUpdateError(f"Not in library: {old_path}")

        if metadata is None:
            metadata = BookMetadata(
                title=old["title"], authors=old["authors"], narrator=old["narrator"],
            )

        now = _utcnow()
        try:
            with conn:
                conn.execute("DELETE FROM audiobooks WHERE path = ?", (str(old_path),))
                conn.execute(
                    """INSERT OR REPLACE INTO audiobooks
                       (path, title, authors, narrator, duration, format, size,
                        added_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        str(new_path), metadata.title or new_path.stem,
                        _AUTHOR_SEP.join(metadata.authors), metadata.narrator,
                        old["duration"], _file_format(new_path), _file_size(new_path),
                        old["added_at"], now,
                    ),
                )
        except sqlite3.Error as e:
            raise LibraryUpdateError(f"Failed to update library for {new_path}: {e}") from e

        log.info(f"Library: {old_path.name} -> {new_path.name}")
        return self.read(new_path)  # type: ignore[return-value]

    def remove(self, path: Path) -> bool:
        conn = self._get_conn()
        cur = conn.execute("DELETE FROM audiobooks WHERE path = ?", (str(path),))
        conn.commit()
        return cur.rowcount > 0

    def list_books(self, file_format: str | None = None) -> list[dict]:
        """All entries ordered by path, optionally filtered by format."""
        conn = self._get_conn()
        if file_format:
            rows = conn.execute(
                "SELECT * FROM audiobooks WHERE format = ? ORDER BY path",
                (file_format.lower().lstrip("."),),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM audiobooks ORDER BY path").fetchall()
        return [self._row_to_dict(r) for r in rows]
