from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS batches (
    batch_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN (
        'CREATED', 'UPLOADING', 'PROCESSING', 'NEEDS_REVIEW', 'APPROVED',
        'INGESTING', 'COMPLETE', 'FAILED', 'CANCELLED'
    )),
    total_files INTEGER NOT NULL DEFAULT 0,
    processed_files INTEGER NOT NULL DEFAULT 0,
    success_files INTEGER NOT NULL DEFAULT 0,
    failed_files INTEGER NOT NULL DEFAULT 0,
    error_summary TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    CHECK (processed_files = success_files + failed_files),
    CHECK (processed_files <= total_files)
);

CREATE TABLE IF NOT EXISTS items (
    item_id TEXT PRIMARY KEY,
    batch_id TEXT NOT NULL,
    file_name TEXT NOT NULL,
    file_size INTEGER NOT NULL,
    mime_type TEXT NOT NULL,
    storage_key TEXT,
    status TEXT NOT NULL CHECK (status IN (
        'CREATED', 'UPLOADING', 'PROCESSING', 'NEEDS_REVIEW', 'APPROVED',
        'INGESTING', 'COMPLETE', 'FAILED', 'CANCELLED'
    )),
    current_step TEXT CHECK (current_step IS NULL OR current_step IN (
        'VALIDATED', 'TEXT_EXTRACTED', 'METADATA_EXTRACTED', 'SPLIT_PLANNED',
        'SPLIT_COMPLETE', 'INGESTED'
    )),
    error_message TEXT,
    error_details_json TEXT,
    ocr_text TEXT,
    extracted_metadata_json TEXT,
    is_packet INTEGER NOT NULL DEFAULT 0 CHECK (is_packet IN (0, 1)),
    page_count INTEGER,
    split_files_json TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY (batch_id) REFERENCES batches (batch_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS proposals (
    proposal_id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL UNIQUE,
    batch_id TEXT NOT NULL,
    title TEXT,
    composer TEXT,
    arranger TEXT,
    publisher TEXT,
    genre TEXT,
    difficulty TEXT,
    duration INTEGER,
    notes TEXT,
    instrumentation_json TEXT NOT NULL DEFAULT '[]',
    title_confidence REAL,
    composer_confidence REAL,
    difficulty_confidence REAL,
    overall_confidence REAL,
    cutting_instructions_json TEXT NOT NULL DEFAULT '[]',
    routing_decision TEXT,
    review_notes_json TEXT NOT NULL DEFAULT '[]',
    corrections_json TEXT NOT NULL DEFAULT '{}',
    matched_piece_id TEXT,
    is_new_piece INTEGER NOT NULL DEFAULT 1 CHECK (is_new_piece IN (0, 1)),
    is_approved INTEGER NOT NULL DEFAULT 0 CHECK (is_approved IN (0, 1)),
    approved_by TEXT,
    approved_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (item_id) REFERENCES items (item_id) ON DELETE CASCADE,
    FOREIGN KEY (batch_id) REFERENCES batches (batch_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS pass_responses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    item_id TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    pass_name TEXT NOT NULL CHECK (pass_name IN ('vision', 'verification', 'adjudication')),
    model TEXT,
    raw_text TEXT NOT NULL,
    parse_status TEXT NOT NULL CHECK (parse_status IN ('ok', 'invalid', 'error')),
    error_message TEXT,
    usage_json TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (item_id) REFERENCES items (item_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_batches_user_id ON batches (user_id);
CREATE INDEX IF NOT EXISTS idx_batches_status ON batches (status);
CREATE INDEX IF NOT EXISTS idx_items_batch_id ON items (batch_id);
CREATE INDEX IF NOT EXISTS idx_items_status ON items (status);
CREATE INDEX IF NOT EXISTS idx_proposals_batch_id ON proposals (batch_id);
CREATE INDEX IF NOT EXISTS idx_pass_responses_item_id ON pass_responses (item_id);
"""


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)


@contextmanager
def connection(db_path: Path, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Yield a connection that commits on success and rolls back on error.

    ``immediate`` takes the write lock up front, so a read-then-write
    sequence cannot interleave with another writer.
    """
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys = ON;")
        if immediate:
            conn.execute("BEGIN IMMEDIATE;")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
