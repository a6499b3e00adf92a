from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from smart_upload.logging import get_logger
from smart_upload.storage.db import connection
from smart_upload.utils.error_taxonomy import CatalogError

logger = get_logger("catalog")

CATALOG_SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS people (
    person_id TEXT PRIMARY KEY,
    full_name TEXT NOT NULL UNIQUE COLLATE NOCASE
);

CREATE TABLE IF NOT EXISTS publishers (
    publisher_id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE
);

CREATE TABLE IF NOT EXISTS instruments (
    instrument_id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE COLLATE NOCASE,
    family TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pieces (
    piece_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    composer_id TEXT,
    arranger_id TEXT,
    publisher_id TEXT,
    genre TEXT,
    difficulty TEXT,
    duration INTEGER,
    notes TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (composer_id) REFERENCES people (person_id),
    FOREIGN KEY (arranger_id) REFERENCES people (person_id),
    FOREIGN KEY (publisher_id) REFERENCES publishers (publisher_id)
);

CREATE TABLE IF NOT EXISTS files (
    file_id TEXT PRIMARY KEY,
    piece_id TEXT NOT NULL,
    file_name TEXT NOT NULL,
    file_type TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    storage_key TEXT NOT NULL,
    source TEXT NOT NULL,
    original_upload_id TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (piece_id) REFERENCES pieces (piece_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS parts (
    part_id TEXT PRIMARY KEY,
    piece_id TEXT NOT NULL,
    instrument_id TEXT NOT NULL,
    part_name TEXT NOT NULL,
    file_id TEXT,
    page_start INTEGER,
    page_end INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (piece_id) REFERENCES pieces (piece_id) ON DELETE CASCADE,
    FOREIGN KEY (instrument_id) REFERENCES instruments (instrument_id),
    FOREIGN KEY (file_id) REFERENCES files (file_id)
);

CREATE TABLE IF NOT EXISTS smart_upload_commits (
    source_item_id TEXT PRIMARY KEY,
    piece_id TEXT NOT NULL,
    file_ids_json TEXT NOT NULL,
    part_ids_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (piece_id) REFERENCES pieces (piece_id)
);

CREATE INDEX IF NOT EXISTS idx_files_piece_id ON files (piece_id);
CREATE INDEX IF NOT EXISTS idx_parts_piece_id ON parts (piece_id);
"""

_FAMILY_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(flute|piccolo|oboe|clarinet|bassoon|saxophone|sax)"), "Woodwinds"),
    (re.compile(r"(trumpet|trombone|horn|tuba|euphonium|cornet|flugelhorn)"), "Brass"),
    (re.compile(r"(violin|viola|cello|bass|harp|guitar)"), "Strings"),
    (re.compile(r"(drum|timpani|percussion|marimba|xylophone|cymbal|triangle)"), "Percussion"),
    (re.compile(r"(piano|keyboard|organ|celeste)"), "Keyboard"),
    (re.compile(r"(voice|vocal|soprano|alto|tenor|baritone|chorus)"), "Vocals"),
)


@dataclass(frozen=True, slots=True)
class CatalogFile:
    file_name: str
    file_type: str
    file_size: int
    mime_type: str
    storage_key: str


@dataclass(frozen=True, slots=True)
class CatalogPart:
    instrument: str
    part_name: str
    storage_key: str | None = None
    page_start: int | None = None
    page_end: int | None = None


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    source_item_id: str
    title: str
    composer: str | None = None
    arranger: str | None = None
    publisher: str | None = None
    genre: str | None = None
    difficulty: str | None = None
    duration: int | None = None
    notes: str | None = None
    matched_piece_id: str | None = None
    files: list[CatalogFile] = field(default_factory=list)
    parts: list[CatalogPart] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CatalogCommit:
    piece_id: str
    file_ids: list[str]
    part_ids: list[str]
    created: bool


class CatalogWriter(Protocol):
    def commit(self, entry: CatalogEntry) -> CatalogCommit: ...


class SqliteCatalogWriter:
    """Writes a piece with its files and parts in one transaction.

    Commits are keyed by the source item, so a redelivered ingestion returns
    the identifiers from the first commit instead of duplicating records.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with connection(self.db_path) as conn:
            conn.executescript(CATALOG_SCHEMA_SQL)

    def commit(self, entry: CatalogEntry) -> CatalogCommit:
        try:
            with connection(self.db_path, immediate=True) as conn:
                existing = _existing_commit(conn, entry.source_item_id)
                if existing is not None:
                    logger.info(
                        "catalog commit already exists for item",
                        extra={"item_id": entry.source_item_id},
                    )
                    return existing
                return _write_entry(conn, entry)
        except CatalogError:
            raise
        except sqlite3.Error as error:
            raise CatalogError(f"Catalog write failed: {error}") from error

    def get_piece(self, piece_id: str) -> dict[str, object] | None:
        with connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM pieces WHERE piece_id = ?", (piece_id,)
            ).fetchone()
        return dict(row) if row is not None else None

    def list_piece_parts(self, piece_id: str) -> list[dict[str, object]]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT parts.*, instruments.name AS instrument_name, instruments.family
                FROM parts
                JOIN instruments ON instruments.instrument_id = parts.instrument_id
                WHERE parts.piece_id = ?
                ORDER BY parts.page_start ASC, parts.part_name ASC
                """,
                (piece_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_piece_files(self, piece_id: str) -> list[dict[str, object]]:
        with connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM files WHERE piece_id = ? ORDER BY created_at, file_name",
                (piece_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def count_pieces(self) -> int:
        with connection(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM pieces").fetchone()
        return int(row["total"])


def guess_instrument_family(instrument_name: str) -> str:
    name = instrument_name.lower()
    for pattern, family in _FAMILY_PATTERNS:
        if pattern.search(name):
            return family
    return "Other"


def _existing_commit(conn: sqlite3.Connection, source_item_id: str) -> CatalogCommit | None:
    row = conn.execute(
        "SELECT * FROM smart_upload_commits WHERE source_item_id = ?",
        (source_item_id,),
    ).fetchone()
    if row is None:
        return None
    return CatalogCommit(
        piece_id=str(row["piece_id"]),
        file_ids=list(json.loads(row["file_ids_json"])),
        part_ids=list(json.loads(row["part_ids_json"])),
        created=False,
    )


def _write_entry(conn: sqlite3.Connection, entry: CatalogEntry) -> CatalogCommit:
    now = _utc_now()

    if entry.matched_piece_id:
        row = conn.execute(
            "SELECT piece_id FROM pieces WHERE piece_id = ?", (entry.matched_piece_id,)
        ).fetchone()
        if row is None:
            raise CatalogError(f"Matched piece not found: {entry.matched_piece_id}")
        piece_id = entry.matched_piece_id
    else:
        piece_id = str(uuid4())
        conn.execute(
            """
            INSERT INTO pieces (
                piece_id,
                title,
                composer_id,
                arranger_id,
                publisher_id,
                genre,
                difficulty,
                duration,
                notes,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                piece_id,
                entry.title or "Untitled",
                _person_id(conn, entry.composer),
                _person_id(conn, entry.arranger),
                _publisher_id(conn, entry.publisher),
                entry.genre,
                entry.difficulty,
                entry.duration,
                entry.notes,
                now,
            ),
        )

    file_ids: list[str] = []
    file_ids_by_key: dict[str, str] = {}
    for catalog_file in entry.files:
        file_id = str(uuid4())
        conn.execute(
            """
            INSERT INTO files (
                file_id,
                piece_id,
                file_name,
                file_type,
                file_size,
                mime_type,
                storage_key,
                source,
                original_upload_id,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, 'smart_upload', ?, ?)
            """,
            (
                file_id,
                piece_id,
                catalog_file.file_name,
                catalog_file.file_type,
                catalog_file.file_size,
                catalog_file.mime_type,
                catalog_file.storage_key,
                entry.source_item_id,
                now,
            ),
        )
        file_ids.append(file_id)
        file_ids_by_key[catalog_file.storage_key] = file_id

    part_ids: list[str] = []
    for part in entry.parts:
        part_id = str(uuid4())
        conn.execute(
            """
            INSERT INTO parts (
                part_id,
                piece_id,
                instrument_id,
                part_name,
                file_id,
                page_start,
                page_end,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                part_id,
                piece_id,
                _instrument_id(conn, part.instrument),
                part.part_name,
                file_ids_by_key.get(part.storage_key or ""),
                part.page_start,
                part.page_end,
                now,
            ),
        )
        part_ids.append(part_id)

    conn.execute(
        """
        INSERT INTO smart_upload_commits (
            source_item_id, piece_id, file_ids_json, part_ids_json, created_at
        )
        VALUES (?, ?, ?, ?, ?)
        """,
        (entry.source_item_id, piece_id, json.dumps(file_ids), json.dumps(part_ids), now),
    )
    return CatalogCommit(piece_id=piece_id, file_ids=file_ids, part_ids=part_ids, created=True)


def _person_id(conn: sqlite3.Connection, full_name: str | None) -> str | None:
    name = (full_name or "").strip()
    if not name:
        return None
    conn.execute(
        "INSERT OR IGNORE INTO people (person_id, full_name) VALUES (?, ?)",
        (str(uuid4()), name),
    )
    row = conn.execute(
        "SELECT person_id FROM people WHERE full_name = ?", (name,)
    ).fetchone()
    return str(row["person_id"])


def _publisher_id(conn: sqlite3.Connection, name: str | None) -> str | None:
    publisher = (name or "").strip()
    if not publisher:
        return None
    conn.execute(
        "INSERT OR IGNORE INTO publishers (publisher_id, name) VALUES (?, ?)",
        (str(uuid4()), publisher),
    )
    row = conn.execute(
        "SELECT publisher_id FROM publishers WHERE name = ?", (publisher,)
    ).fetchone()
    return str(row["publisher_id"])


def _instrument_id(conn: sqlite3.Connection, name: str) -> str:
    instrument = name.strip() or "Unknown"
    conn.execute(
        "INSERT OR IGNORE INTO instruments (instrument_id, name, family) VALUES (?, ?, ?)",
        (str(uuid4()), instrument, guess_instrument_family(instrument)),
    )
    row = conn.execute(
        "SELECT instrument_id FROM instruments WHERE name = ?", (instrument,)
    ).fetchone()
    return str(row["instrument_id"])


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
