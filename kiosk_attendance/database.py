import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Iterator, List, Optional

from .exceptions import DatabaseError, EnrollmentError
from .types import AttendanceEvent, AttendanceStatus, CheckType, EventResult, Identity


@dataclass
class EventRecord:
    """Attendance event joined with the identity it belongs to (if still enrolled)."""

    event: AttendanceEvent
    external_user_id: Optional[str]
    display_name: Optional[str]


def _time_to_text(value: Optional[time]) -> Optional[str]:
    return value.strftime("%H:%M") if value is not None else None


def _text_to_time(value: Optional[str]) -> Optional[time]:
    return time.fromisoformat(value) if value else None


def _dt_to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="milliseconds") if value is not None else None


def _text_to_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class AttendanceDatabase:
    """sqlite-backed record store for identities and append-only attendance events."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
            with conn:
                yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS identities (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        external_user_id TEXT NOT NULL UNIQUE,
                        display_name TEXT NOT NULL,
                        reference_image BLOB NOT NULL,
                        shift_start TEXT,
                        shift_end TEXT,
                        grace_minutes INTEGER NOT NULL DEFAULT 0 CHECK (grace_minutes >= 0),
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    -- Append-only; rows outlive the identity they reference.
                    CREATE TABLE IF NOT EXISTS attendance_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        identity_id INTEGER,
                        result TEXT NOT NULL
                            CHECK (result IN ('SUCCESS', 'NO_MATCH', 'NO_FACE', 'MULTIPLE_FACES')),
                        similarity REAL,
                        check_type TEXT CHECK (check_type IN ('IN', 'OUT')),
                        status TEXT CHECK (status IN ('ON_TIME', 'LATE', 'EARLY')),
                        late_minutes INTEGER,
                        scheduled_start TEXT,
                        scheduled_end TEXT,
                        event_time TEXT NOT NULL,
                        event_date TEXT NOT NULL,
                        kiosk_device_id TEXT,
                        capture BLOB
                    );

                    CREATE INDEX IF NOT EXISTS idx_events_identity_date
                        ON attendance_events (identity_id, event_date);
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}", "initialize", exc) from exc

    @staticmethod
    def _row_to_identity(row: sqlite3.Row) -> Identity:
        return Identity(
            id=int(row["id"]),
            external_user_id=row["external_user_id"],
            display_name=row["display_name"],
            shift_start=_text_to_time(row["shift_start"]),
            shift_end=_text_to_time(row["shift_end"]),
            grace_minutes=int(row["grace_minutes"]),
        )

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> AttendanceEvent:
        return AttendanceEvent(
            id=int(row["id"]),
            identity_id=row["identity_id"],
            result=EventResult(row["result"]),
            similarity=row["similarity"],
            check_type=CheckType(row["check_type"]) if row["check_type"] else None,
            status=AttendanceStatus(row["status"]) if row["status"] else None,
            late_minutes=row["late_minutes"],
            scheduled_start=_text_to_dt(row["scheduled_start"]),
            scheduled_end=_text_to_dt(row["scheduled_end"]),
            event_time=datetime.fromisoformat(row["event_time"]),
            kiosk_device_id=row["kiosk_device_id"],
        )

    # Identities

    def create_identity(
        self,
        external_user_id: str,
        display_name: str,
        reference_image: bytes,
        shift_start: Optional[time] = None,
        shift_end: Optional[time] = None,
        grace_minutes: int = 0,
    ) -> Identity:
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO identities (
                        external_user_id, display_name, reference_image,
                        shift_start, shift_end, grace_minutes, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        external_user_id,
                        display_name,
                        sqlite3.Binary(reference_image),
                        _time_to_text(shift_start),
                        _time_to_text(shift_end),
                        int(grace_minutes),
                        now,
                        now,
                    ),
                )
                identity_id = int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise EnrollmentError(f"User with ID {external_user_id} already exists.") from exc
        except sqlite3.Error as exc:
            raise DatabaseError(
                f"Failed to save identity {external_user_id}: {exc}", "create_identity", exc
            ) from exc

        return Identity(
            id=identity_id,
            external_user_id=external_user_id,
            display_name=display_name,
            shift_start=shift_start,
            shift_end=shift_end,
            grace_minutes=int(grace_minutes),
        )

    def update_shift(
        self,
        identity_id: int,
        shift_start: Optional[time],
        shift_end: Optional[time],
        grace_minutes: int,
    ) -> Optional[Identity]:
        now = datetime.now().isoformat(timespec="seconds")
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE identities
                    SET shift_start = ?, shift_end = ?, grace_minutes = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (_time_to_text(shift_start), _time_to_text(shift_end), int(grace_minutes), now, identity_id),
                )
                row = conn.execute("SELECT * FROM identities WHERE id = ?", (identity_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update shift for identity {identity_id}: {exc}", "update_shift", exc) from exc

        return self._row_to_identity(row) if row is not None else None

    def delete_identity(self, external_user_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM identities WHERE external_user_id = ?", (external_user_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete identity {external_user_id}: {exc}", "delete_identity", exc) from exc

    def list_identities(self) -> List[Identity]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, external_user_id, display_name, shift_start, shift_end, grace_minutes
                    FROM identities
                    ORDER BY external_user_id ASC
                    """
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load identities: {exc}", "list_identities", exc) from exc

        return [self._row_to_identity(row) for row in rows]

    def find_identity_by_user_id(self, external_user_id: str) -> Optional[Identity]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT id, external_user_id, display_name, shift_start, shift_end, grace_minutes
                    FROM identities
                    WHERE external_user_id = ?
                    """,
                    (external_user_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(
                f"Failed to look up identity {external_user_id}: {exc}", "find_identity_by_user_id", exc
            ) from exc

        return self._row_to_identity(row) if row is not None else None

    def get_reference_image(self, identity: Identity) -> bytes:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT reference_image FROM identities WHERE id = ?",
                    (identity.id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(
                f"Failed to load reference image for {identity.external_user_id}: {exc}",
                "get_reference_image",
                exc,
            ) from exc

        # Identity removed since it was listed.
        if row is None:
            return b""
        return bytes(row["reference_image"])

    # Attendance events

    def create_attendance_event(self, event: AttendanceEvent) -> int:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO attendance_events (
                        identity_id, result, similarity, check_type, status, late_minutes,
                        scheduled_start, scheduled_end, event_time, event_date, kiosk_device_id, capture
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.identity_id,
                        event.result.value,
                        event.similarity,
                        event.check_type.value if event.check_type else None,
                        event.status.value if event.status else None,
                        event.late_minutes,
                        _dt_to_text(event.scheduled_start),
                        _dt_to_text(event.scheduled_end),
                        _dt_to_text(event.event_time),
                        event.event_time.date().isoformat(),
                        event.kiosk_device_id,
                        sqlite3.Binary(event.capture) if event.capture else None,
                    ),
                )
                return int(cursor.lastrowid)
        except sqlite3.Error as exc:
            raise DatabaseError(
                f"Failed to record {event.result.value} attendance event: {exc}", "create_attendance_event", exc
            ) from exc

    def list_success_events_for_identity_on_date(self, identity_id: int, day: date) -> List[AttendanceEvent]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM attendance_events
                    WHERE identity_id = ? AND event_date = ? AND result = 'SUCCESS'
                    ORDER BY event_time ASC, id ASC
                    """,
                    (identity_id, day.isoformat()),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(
                f"Failed to load today's events for identity {identity_id}: {exc}",
                "list_success_events_for_identity_on_date",
                exc,
            ) from exc

        return [self._row_to_event(row) for row in rows]

    def search_events(
        self,
        date_from: str = "",
        date_to: str = "",
        result: Optional[EventResult] = None,
        limit: int = 10_000,
    ) -> List[EventRecord]:
        sql = """
            SELECT a.*, i.external_user_id, i.display_name
            FROM attendance_events a
            LEFT JOIN identities i ON i.id = a.identity_id
            WHERE 1=1
        """
        params: List[Any] = []

        if date_from.strip():
            sql += " AND a.event_date >= ?"
            params.append(date_from.strip())
        if date_to.strip():
            sql += " AND a.event_date <= ?"
            params.append(date_to.strip())
        if result is not None:
            sql += " AND a.result = ?"
            params.append(result.value)

        safe_limit = max(1, min(100_000, int(limit)))
        sql += " ORDER BY a.event_time ASC, a.id ASC LIMIT ?"
        params.append(safe_limit)

        try:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to search attendance events: {exc}", "search_events", exc) from exc

        return [
            EventRecord(
                event=self._row_to_event(row),
                external_user_id=row["external_user_id"],
                display_name=row["display_name"],
            )
            for row in rows
        ]
