"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from ..config import AppConfig
from .events import emit_db_event


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class SessionRecord:
    session_id: str
    created_at: str
    last_activity: Optional[str] = None

    @property
    def active_since(self) -> str:
        """Timestamp of the newest file in the session, or its creation time."""

        return self.last_activity or self.created_at


@dataclass
class FileRecord:
    session_id: str
    display_name: str
    storage_name: str
    format: str
    thumbnail_name: str
    original_file_name: str
    original_size: int
    converted_size: int
    created_at: str = field(default_factory=utc_timestamp)
    id: Optional[int] = None


@dataclass
class NameSnapshot:
    """Names already claimed inside a session when a batch starts."""

    output_names: Set[str] = field(default_factory=set)
    original_names: Set[str] = field(default_factory=set)
    display_names: Dict[str, Set[str]] = field(default_factory=dict)

    def claim_output(self, *names: str) -> None:
        self.output_names.update(names)

    def claim_display(self, fmt: str, name: str) -> None:
        self.display_names.setdefault(fmt, set()).add(name)

    def displays_for(self, fmt: str) -> Set[str]:
        return self.display_names.setdefault(fmt, set())


_FILE_COLUMNS = (
    "id",
    "session_id",
    "display_name",
    "storage_name",
    "format",
    "thumbnail_name",
    "original_file_name",
    "original_size",
    "converted_size",
    "created_at",
)
_FILE_SELECT = f"SELECT {', '.join(_FILE_COLUMNS)} FROM files"
_NEWEST_FIRST = "ORDER BY created_at DESC, id DESC"


LOGGER = logging.getLogger(__name__)


EventEmitter = Callable[..., None]


class SessionRepository:
    """Owns the SQLite handle and exposes the session/file index operations.

    Unknown sessions are a valid state: lookups return ``None``/empty results
    and deletions are no-ops.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[EventEmitter] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: EventEmitter = event_emitter or emit_db_event
        self._lock = threading.RLock()
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        self._connection: Optional[sqlite3.Connection] = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")
        LOGGER.debug("SQLite connection ready with foreign_keys pragma enabled")

    def configure_event_emitter(self, emitter: Optional[EventEmitter]) -> None:
        """Register the callable responsible for emitting DB events."""

        self._event_emitter = emitter or emit_db_event

    @property
    def closed(self) -> bool:
        return self._connection is None

    def close(self) -> None:
        """Release the database handle. Safe to call more than once."""

        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None
        LOGGER.debug("Closed SQLite connection to %s", self._db_path)

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a DB event capturing execution time and outcome for *action*."""

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            self._event_emitter(
                action,
                session_id=event_payload.pop("session_id", None),
                payload=event_payload,
                duration_ms=(time.perf_counter() - start) * 1000.0,
            )

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._connection is None:
                raise sqlite3.ProgrammingError("Session repository has been closed")
            with self._connection:
                yield self._connection

    @staticmethod
    def _execute(
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] = (),
    ) -> sqlite3.Cursor:
        return connection.execute(statement, tuple(parameters))

    @staticmethod
    def _to_record(row: sqlite3.Row) -> FileRecord:
        return FileRecord(**{key: row[key] for key in row.keys()})

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def create_if_absent(self, session_id: str) -> None:
        with self._track_db_event("create_session", session_id=session_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "INSERT OR IGNORE INTO sessions(session_id, created_at) VALUES (?, ?)",
                    (session_id, utc_timestamp()),
                )
                event["created"] = cursor.rowcount > 0

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT session_id, created_at FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return SessionRecord(**row) if row else None

    def session_exists(self, session_id: str) -> bool:
        return self.get_session(session_id) is not None

    def list_sessions(self) -> List[SessionRecord]:
        with self._track_db_event("list_sessions") as event:
            with self._connect() as connection:
                rows = self._execute(
                    connection,
                    """
                    SELECT s.session_id, s.created_at, MAX(f.created_at) AS last_activity
                    FROM sessions AS s
                    LEFT JOIN files AS f ON f.session_id = s.session_id
                    GROUP BY s.session_id, s.created_at
                    ORDER BY s.created_at, s.session_id
                    """,
                ).fetchall()
            event["rowcount"] = len(rows)
        return [SessionRecord(**row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        """Remove the session row; file rows cascade."""

        with self._track_db_event("delete_session", session_id=session_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM sessions WHERE session_id = ?",
                    (session_id,),
                )
                event["rowcount"] = cursor.rowcount
                return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def insert_or_replace(self, record: FileRecord) -> None:
        LOGGER.debug(
            "Upserting file '%s' (display='%s', format=%s) for session %s",
            record.storage_name,
            record.display_name,
            record.format,
            record.session_id,
        )
        with self._track_db_event(
            "upsert_file",
            session_id=record.session_id,
            storage_name=record.storage_name,
            format=record.format,
        ):
            with self._connect() as connection:
                self._execute(
                    connection,
                    "INSERT OR IGNORE INTO sessions(session_id, created_at) VALUES (?, ?)",
                    (record.session_id, utc_timestamp()),
                )
                self._execute(
                    connection,
                    """
                    INSERT INTO files(
                        session_id,
                        display_name,
                        storage_name,
                        format,
                        thumbnail_name,
                        original_file_name,
                        original_size,
                        converted_size,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(session_id, storage_name) DO UPDATE SET
                        display_name = excluded.display_name,
                        format = excluded.format,
                        thumbnail_name = excluded.thumbnail_name,
                        original_file_name = excluded.original_file_name,
                        original_size = excluded.original_size,
                        converted_size = excluded.converted_size,
                        created_at = excluded.created_at
                    """,
                    (
                        record.session_id,
                        record.display_name,
                        record.storage_name,
                        record.format,
                        record.thumbnail_name,
                        record.original_file_name,
                        int(record.original_size),
                        int(record.converted_size),
                        record.created_at,
                    ),
                )

    def list_files(self, session_id: str) -> List[FileRecord]:
        with self._track_db_event("list_files", session_id=session_id) as event:
            with self._connect() as connection:
                rows = self._execute(
                    connection,
                    f"{_FILE_SELECT} WHERE session_id = ? ORDER BY created_at, id",
                    (session_id,),
                ).fetchall()
            event["rowcount"] = len(rows)
        return [self._to_record(row) for row in rows]

    def _find_one(self, action: str, session_id: str, column: str, value: str) -> Optional[FileRecord]:
        with self._track_db_event(action, session_id=session_id, name=value) as event:
            with self._connect() as connection:
                row = self._execute(
                    connection,
                    f"{_FILE_SELECT} WHERE session_id = ? AND {column} = ? {_NEWEST_FIRST} LIMIT 1",
                    (session_id, value),
                ).fetchone()
            event["found"] = row is not None
        return self._to_record(row) if row else None

    def find_by_display_name(self, session_id: str, display_name: str) -> Optional[FileRecord]:
        return self._find_one("find_by_display_name", session_id, "display_name", display_name)

    def find_by_storage_name(self, session_id: str, storage_name: str) -> Optional[FileRecord]:
        return self._find_one("find_by_storage_name", session_id, "storage_name", storage_name)

    def find_by_thumbnail_name(self, session_id: str, thumbnail_name: str) -> Optional[FileRecord]:
        return self._find_one("find_by_thumbnail_name", session_id, "thumbnail_name", thumbnail_name)

    def delete_record(self, session_id: str, name: str) -> int:
        """Delete one record matched by storage name, else by most recent display name."""

        with self._track_db_event("delete_file", session_id=session_id, name=name) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM files WHERE session_id = ? AND storage_name = ?",
                    (session_id, name),
                )
                if cursor.rowcount == 0:
                    cursor = self._execute(
                        connection,
                        f"""
                        DELETE FROM files WHERE id = (
                            SELECT id FROM files
                            WHERE session_id = ? AND display_name = ?
                            {_NEWEST_FIRST} LIMIT 1
                        )
                        """,
                        (session_id, name),
                    )
                event["rowcount"] = cursor.rowcount
                return cursor.rowcount

    def delete_all_for_session(self, session_id: str) -> int:
        with self._track_db_event("delete_all_files", session_id=session_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM files WHERE session_id = ?",
                    (session_id,),
                )
                removed = cursor.rowcount
                self._execute(
                    connection,
                    "DELETE FROM sessions WHERE session_id = ?",
                    (session_id,),
                )
            event["rowcount"] = removed
        return removed

    def count_remaining(self, session_id: str) -> int:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT COUNT(*) FROM files WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return int(row[0]) if row else 0

    def count_original_references(self, session_id: str, original_file_name: str) -> int:
        with self._connect() as connection:
            row = self._execute(
                connection,
                "SELECT COUNT(*) FROM files WHERE session_id = ? AND original_file_name = ?",
                (session_id, original_file_name),
            ).fetchone()
        return int(row[0]) if row else 0

    def used_names(self, session_id: str) -> NameSnapshot:
        """Return every name currently claimed by records of *session_id*."""

        snapshot = NameSnapshot()
        for record in self.list_files(session_id):
            snapshot.claim_output(record.storage_name, record.thumbnail_name)
            snapshot.original_names.add(record.original_file_name)
            snapshot.claim_display(record.format, record.display_name)
        return snapshot


__all__ = [
    "FileRecord",
    "NameSnapshot",
    "SessionRecord",
    "SessionRepository",
    "utc_timestamp",
]
