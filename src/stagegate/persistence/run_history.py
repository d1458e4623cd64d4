"""
stagegate — run history store

File: src/stagegate/persistence/run_history.py

Purpose
- Persist terminal run snapshots so ``stagegate status`` can read runs recorded by
  earlier processes.
- SQLite in WAL mode, short-lived connections, checksummed idempotent migrations.

Contract
- Only terminal runs are recorded; each run id is written once and replaced on re-record.
- Snapshots are stored as canonical JSON produced by ``Run.to_json``; they never contain
  resolved credential values.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from stagegate.constants import RUN_HISTORY_SCHEMA_VERSION
from stagegate.domain.models import Run, RunStatus

SQLValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_RUN_STATUS_SQL: Final[str] = ",".join(f"'{status.value}'" for status in sorted(RunStatus))

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        pipeline_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ({_RUN_STATUS_SQL})),
        created_at TEXT NOT NULL,
        finished_at TEXT,
        failed_stage TEXT,
        payload_json TEXT NOT NULL,
        recorded_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_runs_pipeline_created
    ON runs(pipeline_id, created_at DESC)
    """,
)


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="run_history",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "run_history", _MIGRATION_0001_STATEMENTS),
    ),
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
)


class RunHistoryError(RuntimeError):
    """Base class for run history failures."""


class RunHistoryMigrationError(RunHistoryError):
    """Raised when the on-disk schema cannot be reconciled with this version."""


class RunHistoryDB:
    """SQLite-backed store of terminal run snapshots."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0 or busy_retry_limit < 0 or busy_retry_backoff_ms < 0:
            raise ValueError("busy settings must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self._path, timeout=self._busy_timeout_ms / 1000.0)
        except sqlite3.Error as exc:
            raise RunHistoryError(f"cannot open run history at {self._path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    def migrate(self) -> int:
        """Apply migrations idempotently and return the schema version."""

        with self.connection() as conn:
            self._execute(conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions")
            applied = {
                int(row["version"]): str(row["checksum"])
                for row in self._execute(
                    conn,
                    "SELECT version, checksum FROM schema_versions",
                    (),
                    operation="load migrations",
                ).fetchall()
            }
            current = max(applied, default=0)
            if current > RUN_HISTORY_SCHEMA_VERSION:
                raise RunHistoryMigrationError(
                    "run history schema is newer than supported "
                    f"(db={current}, code={RUN_HISTORY_SCHEMA_VERSION})"
                )
            for migration in _MIGRATIONS:
                recorded = applied.get(migration.version)
                if recorded is not None:
                    if recorded != migration.checksum:
                        raise RunHistoryMigrationError(
                            f"migration checksum mismatch for version {migration.version}"
                        )
                    continue
                with conn:
                    for statement in migration.statements:
                        self._execute(
                            conn, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute(
                        conn,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )
                applied[migration.version] = migration.checksum
        self._migrated = True
        return max(applied, default=0)

    def record(self, run: Run) -> None:
        if not run.is_terminal:
            raise ValueError(f"only terminal runs are recorded; {run.run_id} is {run.status.value}")
        self._ensure_schema()
        culprit = run.first_unsuccessful()
        params: tuple[SQLValue, ...] = (
            run.run_id,
            run.pipeline_id,
            run.status.value,
            run.created_at.isoformat(),
            None if run.finished_at is None else run.finished_at.isoformat(),
            None if culprit is None else culprit.name,
            run.to_json(),
            _utc_now_iso(),
        )
        with self.connection() as conn, conn:
            self._execute(
                conn,
                """
                INSERT OR REPLACE INTO runs
                    (run_id, pipeline_id, status, created_at, finished_at, failed_stage,
                     payload_json, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                params,
                operation="record run",
            )

    def get(self, run_id: str) -> Run | None:
        self._ensure_schema()
        with self.connection() as conn:
            row = self._execute(
                conn,
                "SELECT payload_json FROM runs WHERE run_id = ?",
                (run_id,),
                operation="load run",
            ).fetchone()
        if row is None:
            return None
        return Run.from_json(str(row["payload_json"]))

    def list_runs(self, *, pipeline_id: str | None = None, limit: int = 20) -> tuple[Run, ...]:
        """Most recent runs first."""

        if limit <= 0:
            return ()
        self._ensure_schema()
        sql = "SELECT payload_json FROM runs"
        params: tuple[SQLValue, ...] = ()
        if pipeline_id is not None:
            sql += " WHERE pipeline_id = ?"
            params = (pipeline_id,)
        sql += " ORDER BY created_at DESC, run_id DESC LIMIT ?"
        with self.connection() as conn:
            rows = self._execute(conn, sql, (*params, limit), operation="list runs").fetchall()
        return tuple(Run.from_json(str(row["payload_json"])) for row in rows)

    def _ensure_schema(self) -> None:
        if not self._migrated:
            self.migrate()

    def _execute(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: Sequence[SQLValue],
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.Error as exc:
                busy = any(fragment in str(exc).lower() for fragment in _BUSY_SUBSTRINGS)
                if busy and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                raise RunHistoryError(f"{operation} failed for {self._path}: {exc}") from exc
        raise RunHistoryError(f"{operation} exhausted retries")


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "RunHistoryDB",
    "RunHistoryError",
    "RunHistoryMigrationError",
]
