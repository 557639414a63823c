"""
SQLite-backed persistence for apps, app runs and block rules.

Every public method opens its own connection (see db.get_connection), so
multi-step operations such as "close stale run, then open a new one" are
never part of a longer-lived transaction shared with other calls.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .db import get_connection, init_db
from .models import (
    App,
    AppRun,
    BlockRule,
    BlockRuleInput,
    BlockTypeInfo,
    RunStatus,
    path_key,
)

log = logging.getLogger(__name__)

DEFAULT_RECENT_RUNS_LIMIT = 100

_BLOCK_RULE_SELECT = """
SELECT br.id,
       br.block_type,
       COALESCE(bt.name, 'Unknown') AS block_type_name,
       br.block_value,
       br.created_at,
       br.updated_at
FROM block_rules AS br
LEFT JOIN block_types AS bt ON br.block_type = bt.id
"""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _from_text(raw: str) -> datetime:
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _row_to_app(row: sqlite3.Row) -> App:
    return App(
        id=int(row["id"]),
        name=row["name"],
        full_path=row["full_path"],
        created_at=_from_text(row["created_at"]),
    )


def _row_to_run(row: sqlite3.Row) -> AppRun:
    return AppRun(
        id=int(row["id"]),
        app_id=int(row["app_id"]),
        start_utc=_from_text(row["start_utc"]),
        end_utc=_from_text(row["end_utc"]),
        status=RunStatus(int(row["status"])),
    )


def _row_to_rule(row: sqlite3.Row) -> BlockRule:
    return BlockRule(
        id=int(row["id"]),
        block_type=int(row["block_type"]),
        block_type_name=row["block_type_name"],
        block_value=row["block_value"],
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
    )


class Repository:
    """Durable store for App, AppRun and BlockRule rows."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        init_db(self._db_path)

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Apps
    # ------------------------------------------------------------------

    @staticmethod
    def _find_app_id(conn: sqlite3.Connection, full_path: str) -> Optional[int]:
        row = conn.execute(
            "SELECT id FROM apps WHERE path_key = ?",
            (path_key(full_path),),
        ).fetchone()
        return int(row["id"]) if row else None

    def upsert_app(self, name: str, full_path: str) -> int:
        """
        Return the id of the App for full_path, creating it on first sight.

        Path comparison is case-insensitive. The first name recorded for a
        path is kept. If another writer inserts the same path between our
        lookup and our insert, the unique constraint rejects ours and the
        existing row is returned instead.
        """
        if not full_path:
            raise ValueError("full_path must not be empty")

        with get_connection(self._db_path) as conn:
            app_id = self._find_app_id(conn, full_path)
            if app_id is not None:
                return app_id

            try:
                cur = conn.execute(
                    "INSERT INTO apps (name, full_path, path_key, created_at) VALUES (?, ?, ?, ?)",
                    (name, full_path, path_key(full_path), _to_text(_utc_now())),
                )
            except sqlite3.IntegrityError:
                log.debug("App %s was inserted concurrently, looking it up", full_path)
                app_id = self._find_app_id(conn, full_path)
                if app_id is None:
                    raise
                return app_id

            log.info("Registered app %s (%s) as id=%s", name, full_path, cur.lastrowid)
            return int(cur.lastrowid)

    def get_app_by_path(self, full_path: str) -> Optional[App]:
        with get_connection(self._db_path) as conn:
            row = conn.execute(
                "SELECT id, name, full_path, created_at FROM apps WHERE path_key = ?",
                (path_key(full_path),),
            ).fetchone()
        return _row_to_app(row) if row else None

    def list_apps(self) -> List[App]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute(
                """SELECT id, name, full_path, created_at
                   FROM apps
                   ORDER BY name COLLATE NOCASE, id"""
            ).fetchall()
        return [_row_to_app(r) for r in rows]

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def open_run(self, app_id: int, now: datetime) -> int:
        """Close any run still open for app_id, then insert a new open run."""
        ts = _to_text(now)
        with get_connection(self._db_path) as conn:
            stale = conn.execute(
                "UPDATE app_runs SET status = ? WHERE app_id = ? AND status = ?",
                (int(RunStatus.CLOSED), app_id, int(RunStatus.OPENED)),
            ).rowcount
            if stale:
                log.warning("Closed %d stale open run(s) for app id=%s", stale, app_id)

            cur = conn.execute(
                "INSERT INTO app_runs (app_id, start_utc, end_utc, status) VALUES (?, ?, ?, ?)",
                (app_id, ts, ts, int(RunStatus.OPENED)),
            )
            return int(cur.lastrowid)

    def extend_run(self, app_id: int, now: datetime) -> int:
        with get_connection(self._db_path) as conn:
            return conn.execute(
                "UPDATE app_runs SET end_utc = ? WHERE app_id = ? AND status = ?",
                (_to_text(now), app_id, int(RunStatus.OPENED)),
            ).rowcount

    def close_run(self, app_id: int, now: datetime) -> int:
        with get_connection(self._db_path) as conn:
            return conn.execute(
                "UPDATE app_runs SET status = ?, end_utc = ? WHERE app_id = ? AND status = ?",
                (int(RunStatus.CLOSED), _to_text(now), app_id, int(RunStatus.OPENED)),
            ).rowcount

    def close_stale_runs(self) -> int:
        """
        Mark every open run as closed, keeping its last-seen end_utc.

        Used once at startup: runs left open by a previous monitor instance
        cannot be continued because nothing watched them in between.
        """
        with get_connection(self._db_path) as conn:
            return conn.execute(
                "UPDATE app_runs SET status = ? WHERE status = ?",
                (int(RunStatus.CLOSED), int(RunStatus.OPENED)),
            ).rowcount

    def list_recent_runs(self, limit: int = DEFAULT_RECENT_RUNS_LIMIT) -> List[AppRun]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute(
                """SELECT id, app_id, start_utc, end_utc, status
                   FROM app_runs
                   ORDER BY id DESC
                   LIMIT ?""",
                (limit,),
            ).fetchall()
        return [_row_to_run(r) for r in rows]

    def list_open_runs(self, app_id: Optional[int] = None) -> List[AppRun]:
        sql = "SELECT id, app_id, start_utc, end_utc, status FROM app_runs WHERE status = ?"
        params: tuple = (int(RunStatus.OPENED),)
        if app_id is not None:
            sql += " AND app_id = ?"
            params += (app_id,)
        with get_connection(self._db_path) as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [_row_to_run(r) for r in rows]

    # ------------------------------------------------------------------
    # Block rules
    # ------------------------------------------------------------------

    def list_block_rules(self) -> List[BlockRule]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute(
                _BLOCK_RULE_SELECT + " ORDER BY br.block_value COLLATE NOCASE, br.id"
            ).fetchall()
        return [_row_to_rule(r) for r in rows]

    def get_block_rule(self, rule_id: int) -> Optional[BlockRule]:
        with get_connection(self._db_path) as conn:
            row = conn.execute(_BLOCK_RULE_SELECT + " WHERE br.id = ?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None

    def list_block_types(self) -> List[BlockTypeInfo]:
        with get_connection(self._db_path) as conn:
            rows = conn.execute("SELECT id, name FROM block_types ORDER BY id").fetchall()
        return [BlockTypeInfo(id=int(r["id"]), name=r["name"]) for r in rows]

    def upsert_block_rule(
        self,
        block_type: int,
        block_value: str,
        rule_id: Optional[int] = None,
    ) -> Optional[BlockRule]:
        """
        Create a rule (rule_id is None) or update an existing one.

        Raises pydantic.ValidationError for an unknown type or a blank value.
        Returns None when rule_id does not exist.
        """
        data = BlockRuleInput(block_type=block_type, block_value=block_value)
        ts = _to_text(_utc_now())

        with get_connection(self._db_path) as conn:
            if rule_id is None:
                cur = conn.execute(
                    """INSERT INTO block_rules (block_type, block_value, created_at, updated_at)
                       VALUES (?, ?, ?, ?)""",
                    (int(data.block_type), data.block_value, ts, ts),
                )
                rule_id = int(cur.lastrowid)
            else:
                affected = conn.execute(
                    """UPDATE block_rules
                       SET block_type = ?, block_value = ?, updated_at = ?
                       WHERE id = ?""",
                    (int(data.block_type), data.block_value, ts, rule_id),
                ).rowcount
                if affected == 0:
                    return None

            row = conn.execute(_BLOCK_RULE_SELECT + " WHERE br.id = ?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None

    def delete_block_rule(self, rule_id: int) -> bool:
        with get_connection(self._db_path) as conn:
            affected = conn.execute("DELETE FROM block_rules WHERE id = ?", (rule_id,)).rowcount
        return affected > 0
