from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 2


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Initialize the SQLite database with a small migration system.

    Idempotent; safe to call on every startup.
    """
    _configure_connection(conn)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 5000")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version INTEGER PRIMARY KEY,
  applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS passes (
  pass_id TEXT PRIMARY KEY,
  term TEXT NOT NULL,
  options_json TEXT NOT NULL,
  config_hash TEXT NOT NULL,
  versions_json TEXT NOT NULL,
  started_at TEXT NOT NULL,
  ended_at TEXT,
  status TEXT NOT NULL DEFAULT 'running',
  fetched INTEGER NOT NULL DEFAULT 0,
  duplicate INTEGER NOT NULL DEFAULT 0,
  filtered INTEGER NOT NULL DEFAULT 0,
  persisted INTEGER NOT NULL DEFAULT 0,
  failed INTEGER NOT NULL DEFAULT 0,
  abandoned INTEGER NOT NULL DEFAULT 0,
  error TEXT
);

CREATE INDEX IF NOT EXISTS idx_passes_started_at
  ON passes(started_at);

CREATE TABLE IF NOT EXISTS records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  token TEXT NOT NULL UNIQUE,
  post_id TEXT NOT NULL,
  owner TEXT NOT NULL,
  full_text TEXT NOT NULL,
  clean_text TEXT NOT NULL,
  is_verified INTEGER NOT NULL,
  has_attachment INTEGER NOT NULL,
  attachment_labels TEXT,
  media_url TEXT,
  followers INTEGER NOT NULL,
  following INTEGER NOT NULL,
  post_count INTEGER NOT NULL,
  last_ten_interaction INTEGER,
  total_interaction INTEGER NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  deleted_at TEXT
);

-- The duplicate guard: one live record per post id.
CREATE UNIQUE INDEX IF NOT EXISTS uq_records_live_post_id
  ON records(post_id) WHERE deleted_at IS NULL;

CREATE INDEX IF NOT EXISTS idx_records_post_id
  ON records(post_id);

CREATE INDEX IF NOT EXISTS idx_records_owner
  ON records(owner);

CREATE INDEX IF NOT EXISTS idx_records_created_at
  ON records(created_at);
""".strip(),
    2: """
ALTER TABLE records ADD COLUMN label_status TEXT;
""".strip(),
}


def _apply_migrations(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        with conn:
            conn.executescript(script)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, _utc_now_iso()),
            )
