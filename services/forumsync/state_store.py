"""
SQLite persistence for per-course sync state.

Table:
  - course_sync_states: course_id → status, sync type, timestamps, counts,
    last error and workflow id

Timestamps are stored as ISO-8601 UTC strings. Writes go through a single
lock so the "claim for sync" check-and-set is atomic within the process.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .utils import StateStoreError

STUCK_SYNC_MESSAGE = "Sync timed out - reset by cleanup"


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncType(str, Enum):
    FULL = "full"
    DELTA = "delta"


@dataclass
class SyncState:
    """Sync progress for one course."""
    course_id: int
    course_name: str
    course_code: str
    status: SyncStatus = SyncStatus.IDLE
    sync_type: SyncType = SyncType.DELTA
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    next_scheduled_sync: Optional[datetime] = None
    total_threads: Optional[int] = None
    synced_threads: Optional[int] = None
    error_message: Optional[str] = None
    workflow_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "course_id": self.course_id,
            "course_name": self.course_name,
            "course_code": self.course_code,
            "status": self.status.value,
            "sync_type": self.sync_type.value,
            "last_sync_at": _to_text(self.last_sync_at),
            "last_successful_sync_at": _to_text(self.last_successful_sync_at),
            "next_scheduled_sync": _to_text(self.next_scheduled_sync),
            "total_threads": self.total_threads,
            "synced_threads": self.synced_threads,
            "error_message": self.error_message,
            "workflow_id": self.workflow_id,
        }


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Marks a field the caller did not pass, as opposed to an explicit None.
UNSET: Any = _Unset()

_COLUMNS = (
    "course_id", "course_name", "course_code", "status", "sync_type",
    "last_sync_at", "last_successful_sync_at", "next_scheduled_sync",
    "total_threads", "synced_threads", "error_message", "workflow_id",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SyncStateStore:
    """
    SQLite-backed store of SyncState records, one per course.

    Opens a connection per operation, so it is safe to share across the
    workflow runner's threads.
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize state database.

        Args:
            db_path: Path to SQLite database file.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()

        logger.info(f"Initializing sync state store at {self.db_path}")
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with row factory."""
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise StateStoreError(f"Cannot open state database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StateStoreError(f"State database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS course_sync_states (
                    course_id INTEGER PRIMARY KEY,
                    course_name TEXT NOT NULL,
                    course_code TEXT NOT NULL,
                    status TEXT NOT NULL,
                    sync_type TEXT NOT NULL,
                    last_sync_at TEXT,
                    last_successful_sync_at TEXT,
                    next_scheduled_sync TEXT,
                    total_threads INTEGER,
                    synced_threads INTEGER,
                    error_message TEXT,
                    workflow_id TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_course_sync_states_status
                ON course_sync_states(status)
            """)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, course_id: int) -> SyncState | None:
        """Get the sync state for a course."""
        with self._get_connection() as conn:
            return self._get(conn, course_id)

    def get_all(self) -> list[SyncState]:
        """Get every course's sync state."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"SELECT {', '.join(_COLUMNS)} FROM course_sync_states ORDER BY course_id"
            )
            return [self._row_to_state(row) for row in cursor.fetchall()]

    # =========================================================================
    # Writes
    # =========================================================================

    def update_sync_state(
        self,
        course_id: int,
        status: SyncStatus,
        sync_type: SyncType = UNSET,
        *,
        course_name: Optional[str] = UNSET,
        course_code: Optional[str] = UNSET,
        last_sync_at: Optional[datetime] = UNSET,
        last_successful_sync_at: Optional[datetime] = UNSET,
        next_scheduled_sync: Optional[datetime] = UNSET,
        total_threads: Optional[int] = UNSET,
        synced_threads: Optional[int] = UNSET,
        error_message: Optional[str] = UNSET,
        workflow_id: Optional[str] = UNSET,
    ) -> SyncState:
        """
        Create or merge-update a course's sync state.

        For an existing record, fields not passed keep their stored values,
        and in particular:
        - a 'syncing' write clears error_message unless one is passed
        - a 'failed' write without last_sync_at keeps the stored one
        - last_successful_sync_at only changes when passed

        Returns:
            The state as written.
        """
        updates = {
            "sync_type": sync_type,
            "course_name": course_name,
            "course_code": course_code,
            "last_sync_at": last_sync_at,
            "last_successful_sync_at": last_successful_sync_at,
            "next_scheduled_sync": next_scheduled_sync,
            "total_threads": total_threads,
            "synced_threads": synced_threads,
            "error_message": error_message,
            "workflow_id": workflow_id,
        }
        status = SyncStatus(status)

        with self._write_lock, self._get_connection() as conn:
            existing = self._get(conn, course_id)
            state = self._merge(course_id, status, existing, updates)
            self._write(conn, state)

        logger.debug(f"Sync state for course {course_id} -> {state.status.value}")
        return state

    def claim_for_sync(
        self,
        course_id: int,
        sync_type: SyncType,
        workflow_id: str,
        course_name: Optional[str] = None,
        course_code: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> bool:
        """
        Atomically mark a course as syncing unless it already is.

        Returns:
            True if the claim succeeded, False if a sync is already running.
        """
        with self._write_lock, self._get_connection() as conn:
            existing = self._get(conn, course_id)
            if existing is not None and existing.status is SyncStatus.SYNCING:
                return False

            updates = {
                "sync_type": sync_type,
                "workflow_id": workflow_id,
                "last_sync_at": started_at or utc_now(),
            }
            if course_name is not None:
                updates["course_name"] = course_name
            if course_code is not None:
                updates["course_code"] = course_code

            state = self._merge(course_id, SyncStatus.SYNCING, existing, updates)
            self._write(conn, state)

        logger.debug(f"Claimed course {course_id} for {SyncType(sync_type).value} sync ({workflow_id})")
        return True

    def delete(self, course_id: int) -> bool:
        """Delete a course's sync state. Returns True if deleted."""
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM course_sync_states WHERE course_id = ?",
                (course_id,),
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_completed(self, older_than_days: float = 7) -> int:
        """
        Delete completed and failed records whose last sync is older than
        the cutoff. Records that never synced are kept.

        Returns:
            Number of deleted records.
        """
        cutoff = utc_now() - timedelta(days=older_than_days)

        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT course_id, last_sync_at FROM course_sync_states WHERE status IN (?, ?)",
                (SyncStatus.COMPLETED.value, SyncStatus.FAILED.value),
            )
            expired = [
                row["course_id"]
                for row in cursor.fetchall()
                if row["last_sync_at"] and _from_text(row["last_sync_at"]) < cutoff
            ]
            conn.executemany(
                "DELETE FROM course_sync_states WHERE course_id = ?",
                [(course_id,) for course_id in expired],
            )

        if expired:
            logger.info(f"Cleaned up {len(expired)} sync states older than {older_than_days} days")
        return len(expired)

    def reset_stuck(self, max_hours: float = 2) -> int:
        """
        Mark syncs that started before the cutoff and never finished as failed.

        Returns:
            Number of reset records.
        """
        cutoff = utc_now() - timedelta(hours=max_hours)

        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT course_id, last_sync_at FROM course_sync_states WHERE status = ?",
                (SyncStatus.SYNCING.value,),
            )
            stuck = [
                row["course_id"]
                for row in cursor.fetchall()
                if not row["last_sync_at"] or _from_text(row["last_sync_at"]) < cutoff
            ]
            conn.executemany(
                "UPDATE course_sync_states SET status = ?, error_message = ? WHERE course_id = ?",
                [(SyncStatus.FAILED.value, STUCK_SYNC_MESSAGE, course_id) for course_id in stuck],
            )

        if stuck:
            logger.warning(f"Reset {len(stuck)} syncs stuck for more than {max_hours}h: {stuck}")
        return len(stuck)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _get(self, conn: sqlite3.Connection, course_id: int) -> SyncState | None:
        cursor = conn.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM course_sync_states WHERE course_id = ?",
            (course_id,),
        )
        row = cursor.fetchone()
        return self._row_to_state(row) if row else None

    @staticmethod
    def _merge(
        course_id: int,
        status: SyncStatus,
        existing: SyncState | None,
        updates: dict[str, Any],
    ) -> SyncState:
        given = {k: v for k, v in updates.items() if v is not UNSET}

        if existing is None:
            return SyncState(
                course_id=course_id,
                course_name=given.get("course_name") or f"Course {course_id}",
                course_code=given.get("course_code") or "",
                status=status,
                sync_type=SyncType(given.get("sync_type", SyncType.DELTA)),
                last_sync_at=given.get("last_sync_at"),
                last_successful_sync_at=given.get("last_successful_sync_at"),
                next_scheduled_sync=given.get("next_scheduled_sync"),
                total_threads=given.get("total_threads"),
                synced_threads=given.get("synced_threads"),
                error_message=given.get("error_message"),
                workflow_id=given.get("workflow_id"),
            )

        if status is SyncStatus.SYNCING and "error_message" not in given:
            given["error_message"] = None
        # Name and code are never blanked by a partial write
        for key in ("course_name", "course_code"):
            if given.get(key) is None:
                given.pop(key, None)
        if "sync_type" in given:
            given["sync_type"] = SyncType(given["sync_type"])

        merged = existing.__dict__ | given
        merged["status"] = status
        return SyncState(**merged)

    @staticmethod
    def _write(conn: sqlite3.Connection, state: SyncState) -> None:
        row = state.to_dict()
        placeholders = ", ".join("?" for _ in _COLUMNS)
        assignments = ", ".join(f"{c} = excluded.{c}" for c in _COLUMNS if c != "course_id")
        conn.execute(
            f"""
            INSERT INTO course_sync_states ({', '.join(_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(course_id) DO UPDATE SET {assignments}
            """,
            tuple(row[c] for c in _COLUMNS),
        )

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> SyncState:
        return SyncState(
            course_id=row["course_id"],
            course_name=row["course_name"],
            course_code=row["course_code"],
            status=SyncStatus(row["status"]),
            sync_type=SyncType(row["sync_type"]),
            last_sync_at=_from_text(row["last_sync_at"]),
            last_successful_sync_at=_from_text(row["last_successful_sync_at"]),
            next_scheduled_sync=_from_text(row["next_scheduled_sync"]),
            total_threads=row["total_threads"],
            synced_threads=row["synced_threads"],
            error_message=row["error_message"],
            workflow_id=row["workflow_id"],
        )
