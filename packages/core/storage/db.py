from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS apps (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    full_path   TEXT NOT NULL,
    path_key    TEXT NOT NULL UNIQUE,
    created_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_runs (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id      INTEGER NOT NULL,
    start_utc   TEXT NOT NULL,
    end_utc     TEXT NOT NULL,
    status      INTEGER NOT NULL DEFAULT (0),
    FOREIGN KEY (app_id) REFERENCES apps(id)
);
CREATE INDEX IF NOT EXISTS ix_app_runs_app_id_status ON app_runs(app_id, status);

CREATE TABLE IF NOT EXISTS block_types (
    id          INTEGER PRIMARY KEY,
    name        TEXT NOT NULL
);

INSERT OR IGNORE INTO block_types (id, name) VALUES (0, 'Unknown');
INSERT OR IGNORE INTO block_types (id, name) VALUES (1, 'FullPath');
INSERT OR IGNORE INTO block_types (id, name) VALUES (2, 'ProcessName');
INSERT OR IGNORE INTO block_types (id, name) VALUES (3, 'WindowTitle');
INSERT OR IGNORE INTO block_types (id, name) VALUES (4, 'AppId');

CREATE TABLE IF NOT EXISTS block_rules (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    block_type  INTEGER NOT NULL DEFAULT (0),
    block_value TEXT NOT NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""


@contextmanager
def get_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """
    Open a fresh connection for one logical operation.

    Commits on clean exit, rolls back on error, always closes.
    """
    conn = sqlite3.connect(str(db_path), timeout=10.0)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA foreign_keys=ON;")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str | Path) -> None:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    with get_connection(db_path) as conn:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript(_SCHEMA_SQL)
