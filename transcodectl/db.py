import sqlite3
from typing import Optional

from .config import DEFAULT_CONFIG

DB_FILE = DEFAULT_CONFIG["TRANSCODECTL_DB"]

SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;
CREATE TABLE IF NOT EXISTS media_assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    status TEXT NOT NULL,
    original_url TEXT NOT NULL,
    duration REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_assets_owner ON media_assets(owner_id);
CREATE INDEX IF NOT EXISTS idx_assets_status ON media_assets(status);
CREATE TABLE IF NOT EXISTS media_variants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    media_id INTEGER NOT NULL REFERENCES media_assets(id) ON DELETE CASCADE,
    quality TEXT NOT NULL,
    format TEXT NOT NULL,
    cdn_url TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_variants_media ON media_variants(media_id);
"""


def connect_db(path: Optional[str] = None):
    # WAL lets the worker write while CLI commands read
    conn = sqlite3.connect(path or DB_FILE, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    return conn


def init_db(path: Optional[str] = None):
    conn = connect_db(path)
    conn.close()
