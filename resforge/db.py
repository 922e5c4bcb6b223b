# resforge/db.py
"""
DB module for resforge.

Main features:
- Thread-safe sqlite3 wrapper (check_same_thread=False guarded by an RLock)
- Row factory (sqlite3.Row) for column access by name
- Configurable pragmas (WAL, foreign_keys, busy_timeout, synchronous)
- Context manager for transactions (automatic commit/rollback)
- Simple migrations (resforge_migrations table + apply_migrations)
- Schema for the content store: fetch_cache, results, build_history
"""

from __future__ import annotations

import contextlib
import json
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generator, Iterable, List, Optional, Sequence, Tuple, Union

from resforge.logging import get_logger

_logger = get_logger("db")


class DBError(Exception):
    """Generic DB module error."""


@dataclass
class DBConfig:
    """DB configuration (reasonable defaults)."""
    path: str
    timeout: float = 5.0  # seconds for sqlite connect busy timeout
    journal_mode: str = "WAL"
    foreign_keys: bool = True
    busy_timeout_ms: int = 5000
    synchronous: str = "NORMAL"  # OFF, NORMAL, FULL


# ------------------------
# Schema
# ------------------------
MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "content store", """
        CREATE TABLE IF NOT EXISTS fetch_cache (
            key TEXT PRIMARY KEY,
            server TEXT NOT NULL,
            location TEXT NOT NULL,
            checksum TEXT,
            trust TEXT NOT NULL,
            cached_path TEXT NOT NULL,
            size_bytes INTEGER,
            fetched_at INTEGER
        );
        CREATE TABLE IF NOT EXISTS results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            version TEXT NOT NULL,
            buildid TEXT NOT NULL,
            checksum TEXT NOT NULL,
            path TEXT NOT NULL,
            empty INTEGER DEFAULT 0,
            created_at INTEGER,
            UNIQUE(name, buildid)
        );
        CREATE INDEX IF NOT EXISTS idx_results_name_version ON results(name, version);
    """),
    (2, "build history", """
        CREATE TABLE IF NOT EXISTS build_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL,
            result TEXT NOT NULL,
            state TEXT NOT NULL,
            stage TEXT,
            error TEXT,
            started_at REAL,
            finished_at REAL
        );
        CREATE INDEX IF NOT EXISTS idx_build_history_run ON build_history(run_id);
    """),
]


class DB:
    """
    Wrapper around sqlite3.

    Usage:
        db = DB("/path/to/resforge.sqlite3")
        with db.transaction() as cur:
            cur.execute(...)
        rows = db.fetchall("SELECT * FROM results")
    """

    def __init__(self, path: Union[str, Path], cfg: Optional[DBConfig] = None) -> None:
        self._cfg = cfg or DBConfig(path=str(path))
        self._path = Path(self._cfg.path).expanduser().resolve()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------
    # Connection and pragmas
    # ------------------------
    def connect(self) -> sqlite3.Connection:
        """Make sure a connection is open and pragmas are applied."""
        with self._lock:
            if self._conn is not None:
                return self._conn
            self._path.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(str(self._path), timeout=self._cfg.timeout, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                cur = conn.cursor()
                try:
                    if self._cfg.journal_mode:
                        cur.execute(f"PRAGMA journal_mode = {self._cfg.journal_mode};")
                    if self._cfg.foreign_keys:
                        cur.execute("PRAGMA foreign_keys = ON;")
                    if self._cfg.busy_timeout_ms:
                        cur.execute(f"PRAGMA busy_timeout = {int(self._cfg.busy_timeout_ms)};")
                    if self._cfg.synchronous:
                        cur.execute(f"PRAGMA synchronous = {self._cfg.synchronous};")
                finally:
                    cur.close()
                self._conn = conn
                _logger.debug("Connected to DB: %s", self._path)
                return self._conn
            except sqlite3.Error as e:
                _logger.exception("Error connecting to DB %s", self._path)
                raise DBError(f"Error connecting to DB: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.close()
            finally:
                self._conn = None

    # ------------------------
    # Command execution
    # ------------------------
    def execute(self, sql: str, params: Optional[Sequence[Any]] = None, commit: bool = False) -> sqlite3.Cursor:
        """Execute SQL and return the cursor. commit=True commits right after."""
        with self._lock:
            conn = self.connect()
            try:
                cur = conn.cursor()
                if params is not None:
                    cur.execute(sql, params)
                else:
                    cur.execute(sql)
                if commit:
                    conn.commit()
                return cur
            except sqlite3.Error as e:
                _logger.error("Error executing SQL: %s | params=%s", sql, params)
                conn.rollback()
                raise DBError(f"Error executing SQL: {e}") from e

    def executescript(self, script: str, commit: bool = True) -> None:
        """Run several statements at once (DDL and migrations)."""
        with self._lock:
            conn = self.connect()
            cur = conn.cursor()
            try:
                cur.executescript(script)
                if commit:
                    conn.commit()
            except sqlite3.Error as e:
                _logger.error("Error executing SQL script")
                conn.rollback()
                raise DBError(f"Error executing SQL script: {e}") from e
            finally:
                cur.close()

    # ------------------------
    # Fetch helpers
    # ------------------------
    def fetchone(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            row = cur.fetchone()
            cur.close()
            return row

    def fetchall(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[sqlite3.Row]:
        with self._lock:
            cur = self.execute(sql, params)
            rows = cur.fetchall()
            cur.close()
            return rows

    # ------------------------
    # Transactions
    # ------------------------
    @contextlib.contextmanager
    def transaction(self) -> Generator[sqlite3.Cursor, None, None]:
        """Commit on success, rollback on exception."""
        with self._lock:
            conn = self.connect()
            cur = conn.cursor()
            try:
                yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cur.close()

    # ------------------------
    # Migrations
    # ------------------------
    def _ensure_migrations_table(self) -> None:
        self.execute(
            """
            CREATE TABLE IF NOT EXISTS resforge_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT,
                applied_at TEXT
            );
            """,
            commit=True,
        )

    def get_current_version(self) -> int:
        row = self.fetchone("SELECT MAX(version) AS v FROM resforge_migrations;")
        if row is None or row["v"] is None:
            return 0
        return int(row["v"])

    def apply_migrations(self, migrations: Iterable[Tuple[int, str, str]] = MIGRATIONS) -> List[int]:
        """Apply (version, name, sql) migrations newer than the current version."""
        applied: List[int] = []
        with self._lock:
            self._ensure_migrations_table()
            current = self.get_current_version()
            for version, name, sql in sorted(migrations, key=lambda x: int(x[0])):
                if int(version) <= current:
                    continue
                _logger.debug("Applying migration %s: %s", version, name)
                self.executescript(sql, commit=True)
                now = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
                self.execute("INSERT INTO resforge_migrations (version, name, applied_at) VALUES (?, ?, ?);",
                             (int(version), name, now), commit=True)
                applied.append(int(version))
        return applied

    @property
    def path(self) -> Path:
        return self._path


# ------------------------
# History helper
# ------------------------
def add_history(db: Optional[DB], run_id: str, result: str, state: str, stage: Optional[str] = None,
                error: Optional[dict] = None, started_at: Optional[float] = None,
                finished_at: Optional[float] = None) -> None:
    if db is None:
        return
    db.execute(
        "INSERT INTO build_history (run_id, result, state, stage, error, started_at, finished_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (run_id, result, state, stage, json.dumps(error) if error else None, started_at, finished_at),
        commit=True,
    )


def open_db(path: Union[str, Path]) -> DB:
    """Open (and migrate) the resforge database at path."""
    db = DB(path)
    db.apply_migrations()
    return db
