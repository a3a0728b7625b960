"""SQLite connection management for the local store."""

import sqlite3
from pathlib import Path
from typing import Union


DOCUMENT_TABLES = ("questions", "sessions", "users")

LOCAL_SCHEMA = """
CREATE TABLE IF NOT EXISTS questions (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    sort_key INTEGER NOT NULL DEFAULT 0,
    json_data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    sort_key INTEGER NOT NULL DEFAULT 0,
    json_data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    sort_key INTEGER NOT NULL DEFAULT 0,
    json_data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_questions_owner ON questions(owner_id);
CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(owner_id);

CREATE TABLE IF NOT EXISTS images (
    key TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS migrations (
    name TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (name, owner_id)
);
"""

DbPath = Union[str, Path]


def get_connection(db_path: DbPath) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: DbPath) -> None:
    """Create the local tables if they don't exist. Safe to call repeatedly."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    try:
        conn.executescript(LOCAL_SCHEMA)
        conn.commit()
    finally:
        conn.close()
