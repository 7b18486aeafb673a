"""SQLite-backed history of template renders."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from .models import RenderRecord

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = "id, template_path, pure_render, template_hash, rendered_at, platform_os, platform_host"
_TIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%SZ", "%Y-%m-%dT%H:%M:%S%z")


class StoreError(RuntimeError):
    """Raised when the render history database cannot be used."""


def _migrate_v1(connection: sqlite3.Connection) -> None:
    connection.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS template_renders (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            template_path   TEXT NOT NULL,
            pure_render     BLOB NOT NULL,
            template_hash   TEXT NOT NULL,
            rendered_at     DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
            platform_os     TEXT NOT NULL,
            platform_host   TEXT NOT NULL
        )
        """
    )
    connection.execute(
        "CREATE INDEX IF NOT EXISTS idx_template_renders_path ON template_renders(template_path, id DESC)"
    )


Migration = Callable[[sqlite3.Connection], None]

MIGRATIONS: tuple[Migration, ...] = (_migrate_v1,)


def _parse_time(raw: str) -> datetime:
    for fmt in _TIME_FORMATS:
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise StoreError(f"Cannot parse render timestamp {raw!r}")


def _to_record(row: sqlite3.Row | tuple) -> RenderRecord:
    return RenderRecord(
        id=row[0],
        template_path=row[1],
        pure_render=bytes(row[2]),
        template_hash=row[3],
        rendered_at=_parse_time(row[4]),
        platform_os=row[5],
        platform_host=row[6],
    )


class RenderStore:
    """Append-only render history keyed by template path.

    A single connection is shared between the owning session and its check
    workers; every statement runs under an internal lock. The database uses
    write-ahead logging so readers are not blocked by an open write.
    """

    def __init__(self, connection: sqlite3.Connection, path: Path | None = None) -> None:
        self._connection: sqlite3.Connection | None = connection
        self._lock = threading.RLock()
        self.path = path

    @classmethod
    def open(cls, path: Path, *, migrations: Sequence[Migration] = MIGRATIONS) -> "RenderStore":
        """Open (creating if needed) the database at ``path`` and migrate it."""

        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(f"Cannot create database directory '{path.parent}': {exc}") from exc

        try:
            connection = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StoreError(f"Cannot open render database '{path}': {exc}") from exc
        try:
            connection.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as exc:
            connection.close()
            raise StoreError(f"Cannot open render database '{path}': {exc}") from exc

        store = cls(connection, path)
        try:
            store._migrate(migrations)
        except StoreError:
            connection.close()
            raise
        logger.debug("opened render store %s at schema version %d", path, store.schema_version())
        return store

    def __enter__(self) -> "RenderStore":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Migrations

    def schema_version(self) -> int:
        """Return the recorded schema version, or 0 for a fresh database."""

        with self._lock:
            connection = self._conn()
            try:
                exists = connection.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
                ).fetchone()
                if exists is None:
                    return 0
                row = connection.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            except sqlite3.Error as exc:
                raise StoreError(f"Cannot read schema version: {exc}") from exc
            return int(row[0]) if row else 0

    def _migrate(self, migrations: Sequence[Migration]) -> None:
        current = self.schema_version()
        with self._lock:
            connection = self._conn()
            for index in range(current, len(migrations)):
                version = index + 1
                try:
                    connection.execute("BEGIN")
                    migrations[index](connection)
                    connection.execute("DELETE FROM schema_version")
                    connection.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
                    connection.execute("COMMIT")
                except sqlite3.Error as exc:
                    if connection.in_transaction:
                        connection.execute("ROLLBACK")
                    raise StoreError(f"Migration {version} failed: {exc}") from exc
                logger.info("render store migrated to schema version %d", version)

    # ------------------------------------------------------------------
    # Queries

    def save_render(
        self,
        template_path: str,
        content: bytes,
        template_hash: str,
        platform_os: str,
        hostname: str,
    ) -> int:
        """Append a render record and return its id."""

        with self._lock:
            try:
                cursor = self._conn().execute(
                    """
                    INSERT INTO template_renders (template_path, pure_render, template_hash, platform_os, platform_host)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (template_path, sqlite3.Binary(content), template_hash, platform_os, hostname),
                )
            except sqlite3.Error as exc:
                raise StoreError(f"Saving render for '{template_path}' failed: {exc}") from exc
            return int(cursor.lastrowid)

    def get_latest_render(self, template_path: str) -> RenderRecord | None:
        """Return the newest record for ``template_path`` or ``None``."""

        row = self._fetch_one(
            f"SELECT {_RECORD_COLUMNS} FROM template_renders WHERE template_path = ? ORDER BY id DESC LIMIT 1",
            (template_path,),
            "querying latest render",
        )
        return _to_record(row) if row is not None else None

    def get_render_history(self, template_path: str, limit: int) -> list[RenderRecord]:
        """Return up to ``limit`` records for ``template_path``, newest first."""

        with self._lock:
            try:
                rows = self._conn().execute(
                    f"SELECT {_RECORD_COLUMNS} FROM template_renders WHERE template_path = ? ORDER BY id DESC LIMIT ?",
                    (template_path, limit),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"Querying render history failed: {exc}") from exc
        return [_to_record(row) for row in rows]

    def get_render_by_id(self, record_id: int) -> RenderRecord | None:
        row = self._fetch_one(
            f"SELECT {_RECORD_COLUMNS} FROM template_renders WHERE id = ?",
            (record_id,),
            "querying render by id",
        )
        return _to_record(row) if row is not None else None

    def template_paths(self) -> list[tuple[str, int]]:
        """Return every stored template path with its record count."""

        with self._lock:
            try:
                rows = self._conn().execute(
                    "SELECT template_path, COUNT(*) FROM template_renders GROUP BY template_path ORDER BY template_path"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"Listing templates failed: {exc}") from exc
        return [(row[0], int(row[1])) for row in rows]

    def prune_history(self, template_path: str, keep: int) -> int:
        """Delete all but the ``keep`` newest records for ``template_path``."""

        return self._execute(
            """
            DELETE FROM template_renders
            WHERE template_path = ?
            AND id NOT IN (
                SELECT id FROM template_renders
                WHERE template_path = ?
                ORDER BY id DESC
                LIMIT ?
            )
            """,
            (template_path, template_path, max(keep, 0)),
            "pruning history",
        )

    def remove_template(self, template_path: str) -> int:
        """Delete every record for ``template_path``."""

        return self._execute(
            "DELETE FROM template_renders WHERE template_path = ?",
            (template_path,),
            "removing template",
        )

    # ------------------------------------------------------------------
    # Internal helpers

    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            raise StoreError("Render store is closed")
        return self._connection

    def _fetch_one(self, sql: str, params: tuple, context: str) -> tuple | None:
        with self._lock:
            try:
                return self._conn().execute(sql, params).fetchone()
            except sqlite3.Error as exc:
                raise StoreError(f"{context} failed: {exc}") from exc

    def _execute(self, sql: str, params: tuple, context: str) -> int:
        with self._lock:
            try:
                cursor = self._conn().execute(sql, params)
            except sqlite3.Error as exc:
                raise StoreError(f"{context} failed: {exc}") from exc
            return cursor.rowcount
