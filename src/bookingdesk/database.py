"""SQLite store for availability settings and reservations."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import PersistenceError
from .models import (
    BLOCKING_STATUSES,
    AvailabilitySetting,
    MeetingPreference,
    Reservation,
    ReservationStatus,
)

DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS availability_settings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    day_of_week INTEGER NOT NULL,
    specific_date TEXT NOT NULL DEFAULT '',
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    slot_duration_minutes INTEGER NOT NULL DEFAULT 30,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL,
    UNIQUE (day_of_week, specific_date)
);

CREATE TABLE IF NOT EXISTS reservations (
    id TEXT PRIMARY KEY,
    guest_name TEXT NOT NULL,
    guest_email TEXT NOT NULL,
    topic TEXT NOT NULL,
    notes TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    booker_timezone TEXT NOT NULL,
    meeting_preference TEXT NOT NULL DEFAULT 'google_meet',
    custom_meeting_link TEXT,
    phone_number TEXT,
    status TEXT NOT NULL,
    verification_token TEXT,
    verification_expires_at TEXT,
    approval_token TEXT NOT NULL,
    external_event_id TEXT,
    created_at TEXT NOT NULL,
    verified_at TEXT,
    approved_at TEXT,
    rejected_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_reservations_verification_token
    ON reservations(verification_token) WHERE verification_token IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_reservations_approval_token
    ON reservations(approval_token);
CREATE INDEX IF NOT EXISTS idx_reservations_window
    ON reservations(start_time, end_time, status);
"""

# Columns a state transition is allowed to write
_TRANSITION_COLUMNS = {
    "status",
    "verification_token",
    "verification_expires_at",
    "verified_at",
    "approved_at",
    "rejected_at",
    "external_event_id",
}

_TOKEN_COLUMNS = {"verification_token", "approval_token"}


def _ts(dt: datetime | None) -> str | None:
    """Fixed-width UTC ISO timestamp so string comparison matches time order."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, Enum):
        return value.value
    return value


class Database:
    def __init__(self, db_path: str | Path = "bookingdesk.db"):
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        # Request handlers may run on worker threads; the lock serializes writes
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(DB_SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._conn:
            self.connect()
        return self._conn

    # --- Availability settings ---

    def _row_to_setting(self, row: sqlite3.Row) -> AvailabilitySetting:
        return AvailabilitySetting(
            id=row["id"],
            day_of_week=row["day_of_week"],
            specific_date=row["specific_date"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            slot_duration_minutes=row["slot_duration_minutes"],
            is_active=bool(row["is_active"]),
        )

    def get_availability_settings(self) -> list[AvailabilitySetting]:
        rows = self.conn.execute(
            "SELECT * FROM availability_settings ORDER BY specific_date, day_of_week"
        ).fetchall()
        return [self._row_to_setting(row) for row in rows]

    def get_setting(self, day_of_week: int, specific_date: str = "") -> AvailabilitySetting | None:
        """Stored row for a weekday, or for one date when ``specific_date`` is given."""
        row = self.conn.execute(
            "SELECT * FROM availability_settings WHERE day_of_week = ? AND specific_date = ?",
            (day_of_week, specific_date),
        ).fetchone()
        return self._row_to_setting(row) if row else None

    def upsert_setting(self, setting: AvailabilitySetting) -> int:
        with self._lock:
            try:
                cursor = self.conn.execute(
                    """INSERT INTO availability_settings
                    (day_of_week, specific_date, start_time, end_time,
                     slot_duration_minutes, is_active, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (day_of_week, specific_date) DO UPDATE SET
                        start_time = excluded.start_time,
                        end_time = excluded.end_time,
                        slot_duration_minutes = excluded.slot_duration_minutes,
                        is_active = excluded.is_active,
                        updated_at = excluded.updated_at""",
                    (
                        setting.day_of_week,
                        setting.specific_date,
                        setting.start_time,
                        setting.end_time,
                        setting.slot_duration_minutes,
                        int(setting.is_active),
                        _ts(datetime.now(timezone.utc)),
                    ),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"Could not save availability setting: {e}") from e
            row = self.conn.execute(
                "SELECT id FROM availability_settings WHERE day_of_week = ? AND specific_date = ?",
                (setting.day_of_week, setting.specific_date),
            ).fetchone()
            return row["id"] if row else cursor.lastrowid

    def delete_setting(self, setting_id: int) -> bool:
        with self._lock:
            cursor = self.conn.execute(
                "DELETE FROM availability_settings WHERE id = ?", (setting_id,)
            )
            self.conn.commit()
            return cursor.rowcount > 0

    # --- Reservations ---

    _INSERT_RESERVATION = """INSERT INTO reservations
        (id, guest_name, guest_email, topic, notes, start_time, end_time, booker_timezone,
         meeting_preference, custom_meeting_link, phone_number, status,
         verification_token, verification_expires_at, approval_token, external_event_id,
         created_at, verified_at, approved_at, rejected_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""

    def _reservation_params(self, r: Reservation) -> tuple:
        return (
            r.id,
            r.guest_name,
            r.guest_email,
            r.topic,
            r.notes,
            _ts(r.start_time),
            _ts(r.end_time),
            r.booker_timezone,
            r.meeting_preference.value,
            r.custom_meeting_link,
            r.phone_number,
            r.status.value,
            r.verification_token,
            _ts(r.verification_expires_at),
            r.approval_token,
            r.external_event_id,
            _ts(r.created_at),
            _ts(r.verified_at),
            _ts(r.approved_at),
            _ts(r.rejected_at),
        )

    def insert_reservation(self, reservation: Reservation) -> None:
        with self._lock:
            try:
                self.conn.execute(self._INSERT_RESERVATION, self._reservation_params(reservation))
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Could not save reservation: {e}") from e

    def insert_reservation_if_free(self, reservation: Reservation) -> bool:
        """Atomically check for an overlapping live reservation, then insert.

        Returns False (and writes nothing) when the range is already taken.
        """
        statuses = [s.value for s in BLOCKING_STATUSES]
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                row = self.conn.execute(
                    f"""SELECT COUNT(*) AS cnt FROM reservations
                    WHERE start_time < ? AND end_time > ?
                    AND status IN ({','.join('?' * len(statuses))})""",
                    (_ts(reservation.end_time), _ts(reservation.start_time), *statuses),
                ).fetchone()
                if row["cnt"] > 0:
                    self.conn.execute("ROLLBACK")
                    return False
                self.conn.execute(self._INSERT_RESERVATION, self._reservation_params(reservation))
                self.conn.execute("COMMIT")
                return True
            except sqlite3.Error as e:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise PersistenceError(f"Could not save reservation: {e}") from e

    def _row_to_reservation(self, row: sqlite3.Row) -> Reservation:
        return Reservation(
            id=row["id"],
            guest_name=row["guest_name"],
            guest_email=row["guest_email"],
            topic=row["topic"],
            notes=row["notes"],
            start_time=_parse_ts(row["start_time"]),
            end_time=_parse_ts(row["end_time"]),
            booker_timezone=row["booker_timezone"],
            meeting_preference=MeetingPreference(row["meeting_preference"]),
            custom_meeting_link=row["custom_meeting_link"],
            phone_number=row["phone_number"],
            status=ReservationStatus(row["status"]),
            verification_token=row["verification_token"],
            verification_expires_at=_parse_ts(row["verification_expires_at"]),
            approval_token=row["approval_token"],
            external_event_id=row["external_event_id"],
            created_at=_parse_ts(row["created_at"]),
            verified_at=_parse_ts(row["verified_at"]),
            approved_at=_parse_ts(row["approved_at"]),
            rejected_at=_parse_ts(row["rejected_at"]),
        )

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        row = self.conn.execute(
            "SELECT * FROM reservations WHERE id = ?", (reservation_id,)
        ).fetchone()
        return self._row_to_reservation(row) if row else None

    def find_by_token(
        self, token_column: str, token: str, status: ReservationStatus
    ) -> Reservation | None:
        """Reservation holding ``token`` while in ``status``, else None."""
        if token_column not in _TOKEN_COLUMNS:
            raise ValueError(f"Not a token column: {token_column}")
        if not token:
            return None
        row = self.conn.execute(
            f"SELECT * FROM reservations WHERE {token_column} = ? AND status = ?",
            (token, status.value),
        ).fetchone()
        return self._row_to_reservation(row) if row else None

    def transition(
        self,
        token_column: str,
        token: str,
        expected: ReservationStatus,
        updates: dict[str, Any],
    ) -> Reservation | None:
        """Compare-and-swap a reservation out of ``expected`` status.

        The lookup by token + status and the update run in one immediate
        transaction, so of two concurrent clicks on the same link exactly one
        wins. Returns the updated reservation, or None when nothing matched.
        """
        if token_column not in _TOKEN_COLUMNS:
            raise ValueError(f"Not a token column: {token_column}")
        unknown = set(updates) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not token:
            return None

        assignments = ", ".join(f"{col} = ?" for col in updates)
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
                row = self.conn.execute(
                    f"SELECT id FROM reservations WHERE {token_column} = ? AND status = ?",
                    (token, expected.value),
                ).fetchone()
                if not row:
                    self.conn.execute("ROLLBACK")
                    return None
                cursor = self.conn.execute(
                    f"UPDATE reservations SET {assignments} WHERE id = ? AND status = ?",
                    (*[_to_db(v) for v in updates.values()], row["id"], expected.value),
                )
                if cursor.rowcount != 1:
                    self.conn.execute("ROLLBACK")
                    return None
                self.conn.execute("COMMIT")
            except sqlite3.Error as e:
                if self.conn.in_transaction:
                    self.conn.execute("ROLLBACK")
                raise PersistenceError(f"Could not update reservation: {e}") from e
            return self.get_reservation(row["id"])

    def set_external_event_id(self, reservation_id: str, event_id: str) -> None:
        with self._lock:
            try:
                self.conn.execute(
                    "UPDATE reservations SET external_event_id = ? WHERE id = ?",
                    (event_id, reservation_id),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(f"Could not store calendar event id: {e}") from e

    def get_reservations_between(
        self,
        start: datetime,
        end: datetime,
        statuses: tuple[ReservationStatus, ...] = BLOCKING_STATUSES,
    ) -> list[Reservation]:
        """Reservations in ``statuses`` whose range overlaps [start, end)."""
        values = [s.value for s in statuses]
        rows = self.conn.execute(
            f"""SELECT * FROM reservations
            WHERE start_time < ? AND end_time > ?
            AND status IN ({','.join('?' * len(values))})
            ORDER BY start_time""",
            (_ts(end), _ts(start), *values),
        ).fetchall()
        return [self._row_to_reservation(row) for row in rows]

    def get_reservations(self, limit: int = 50) -> list[Reservation]:
        rows = self.conn.execute(
            "SELECT * FROM reservations ORDER BY start_time DESC LIMIT ?", (limit,)
        ).fetchall()
        return [self._row_to_reservation(row) for row in rows]
