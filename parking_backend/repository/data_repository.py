"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from contextlib import AbstractContextManager, contextmanager, nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from parking_backend.domain.models import (
    AuditEntry,
    NewSlot,
    ParkingSlot,
    PendingRequestContext,
    RequestStatus,
    Role,
    SlotRequest,
    SlotStatus,
    Vehicle,
)
from parking_backend.utils.config import Settings, get_settings
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)

ConnectionProvider = Callable[[], AbstractContextManager[sqlite3.Connection]]


class PersistenceError(Exception):
    """Raised when a transaction cannot commit; nothing from it is kept."""


class DuplicateSlotError(Exception):
    """Raised when a bulk insert collides with an existing slot number."""


class DuplicateVehicleError(Exception):
    """Raised when a plate number is already registered."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _row_to_slot(row: sqlite3.Row) -> ParkingSlot:
    return ParkingSlot(
        slot_id=int(row["id"]),
        slot_number=str(row["slot_number"]),
        size=str(row["size"]),
        vehicle_type=str(row["vehicle_type"]),
        location=str(row["location"]),
        status=SlotStatus(row["status"]),
    )


def _row_to_request(row: sqlite3.Row) -> SlotRequest:
    return SlotRequest(
        request_id=int(row["id"]),
        user_id=int(row["user_id"]),
        vehicle_id=int(row["vehicle_id"]),
        status=RequestStatus(row["request_status"]),
        slot_id=int(row["slot_id"]) if row["slot_id"] is not None else None,
        slot_number=str(row["slot_number"]) if row["slot_number"] is not None else None,
        requested_at=_parse_timestamp(row["requested_at"]),
        approved_at=_parse_timestamp(row["approved_at"]),
    )


def _row_to_audit_entry(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        entry_id=int(row["id"]),
        actor_id=int(row["user_id"]),
        action=str(row["action"]),
        timestamp=_parse_timestamp(row["created_at"]),
    )


_SLOT_COLUMNS = "id, slot_number, size, vehicle_type, location, status"
_REQUEST_COLUMNS = (
    "id, user_id, vehicle_id, request_status, slot_id, slot_number, "
    "requested_at, approved_at"
)


class SqliteSlotStore:
    """Slot reads and conditional status writes over one connection source."""

    def __init__(self, connection: ConnectionProvider) -> None:
        self._connection = connection

    def get(self, slot_id: int) -> Optional[ParkingSlot]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_SLOT_COLUMNS} FROM parking_slots WHERE id = ?;",
                (slot_id,),
            ).fetchone()
        return _row_to_slot(row) if row is not None else None

    def find_first_available(self, vehicle_type: str, size: str) -> Optional[ParkingSlot]:
        with self._connection() as conn:
            row = conn.execute(
                f"""
                SELECT {_SLOT_COLUMNS}
                FROM parking_slots
                WHERE vehicle_type = ? AND size = ? AND status = ?
                ORDER BY id ASC
                LIMIT 1;
                """,
                (vehicle_type, size, SlotStatus.AVAILABLE.value),
            ).fetchone()
        return _row_to_slot(row) if row is not None else None

    def find_location(self, vehicle_type: str, size: str) -> Optional[str]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT location
                FROM parking_slots
                WHERE vehicle_type = ? AND size = ?
                ORDER BY id ASC
                LIMIT 1;
                """,
                (vehicle_type, size),
            ).fetchone()
        return str(row["location"]) if row is not None else None

    def claim(self, slot_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE parking_slots SET status = ? WHERE id = ? AND status = ?;",
                (SlotStatus.UNAVAILABLE.value, slot_id, SlotStatus.AVAILABLE.value),
            )
            return cursor.rowcount == 1

    def release(self, slot_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE parking_slots
                SET status = ?
                WHERE id = ?
                  AND status = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM slot_requests
                      WHERE slot_id = parking_slots.id AND request_status = ?
                  );
                """,
                (
                    SlotStatus.AVAILABLE.value,
                    slot_id,
                    SlotStatus.UNAVAILABLE.value,
                    RequestStatus.APPROVED.value,
                ),
            )
            return cursor.rowcount == 1


class SqliteRequestStore:
    """Request reads and status transitions guarded by the current status."""

    def __init__(self, connection: ConnectionProvider) -> None:
        self._connection = connection

    def get(self, request_id: int) -> Optional[SlotRequest]:
        with self._connection() as conn:
            row = conn.execute(
                f"SELECT {_REQUEST_COLUMNS} FROM slot_requests WHERE id = ?;",
                (request_id,),
            ).fetchone()
        return _row_to_request(row) if row is not None else None

    def get_pending_context(self, request_id: int) -> Optional[PendingRequestContext]:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT
                    sr.id,
                    sr.user_id,
                    sr.vehicle_id,
                    sr.request_status,
                    sr.slot_id,
                    sr.slot_number,
                    sr.requested_at,
                    sr.approved_at,
                    v.vehicle_type,
                    v.size,
                    v.plate_number,
                    v.user_id AS vehicle_owner_id,
                    u.email
                FROM slot_requests AS sr
                INNER JOIN vehicles AS v ON v.id = sr.vehicle_id
                INNER JOIN users AS u ON u.id = sr.user_id
                WHERE sr.id = ? AND sr.request_status = ?;
                """,
                (request_id, RequestStatus.PENDING.value),
            ).fetchone()
        if row is None:
            return None
        return PendingRequestContext(
            request=_row_to_request(row),
            vehicle=Vehicle(
                vehicle_id=int(row["vehicle_id"]),
                user_id=int(row["vehicle_owner_id"]),
                vehicle_type=str(row["vehicle_type"]),
                size=str(row["size"]),
                plate_number=str(row["plate_number"]),
            ),
            requester_email=str(row["email"]),
        )

    def mark_approved(
        self,
        request_id: int,
        slot: ParkingSlot,
        approved_at: datetime,
    ) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE slot_requests
                SET request_status = ?, slot_id = ?, slot_number = ?, approved_at = ?
                WHERE id = ? AND request_status = ?;
                """,
                (
                    RequestStatus.APPROVED.value,
                    slot.slot_id,
                    slot.slot_number,
                    approved_at.isoformat(),
                    request_id,
                    RequestStatus.PENDING.value,
                ),
            )
            return cursor.rowcount == 1

    def mark_rejected(self, request_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE slot_requests SET request_status = ? WHERE id = ? AND request_status = ?;",
                (
                    RequestStatus.REJECTED.value,
                    request_id,
                    RequestStatus.PENDING.value,
                ),
            )
            return cursor.rowcount == 1


@dataclass(frozen=True)
class SqliteTransactionScope:
    """Stores bound to one open transaction."""

    slots: SqliteSlotStore
    requests: SqliteRequestStore


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic.

    Every call opens its own connection, so concurrent handlers never share
    connection state; `transaction()` serializes writers with BEGIN IMMEDIATE.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self.slots = SqliteSlotStore(self._session)
        self.requests = SqliteRequestStore(self._session)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_busy_timeout_seconds,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection; each statement is its own transaction."""
        connection = self._connect()
        try:
            yield connection
        finally:
            connection.close()

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE;")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK;")
                raise
            connection.execute("COMMIT;")
        finally:
            connection.close()

    @contextmanager
    def transaction(self) -> Iterator[SqliteTransactionScope]:
        """Yield slot/request stores that commit together or not at all."""
        try:
            with self._write_transaction() as conn:
                provider: ConnectionProvider = lambda: nullcontext(conn)
                yield SqliteTransactionScope(
                    slots=SqliteSlotStore(provider),
                    requests=SqliteRequestStore(provider),
                )
        except sqlite3.Error as exc:
            logger.exception("Transaction rolled back | database=%s", self._db_path)
            raise PersistenceError(f"Transaction failed: {exc}") from exc

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._session() as conn:
                # readers keep going while an approval holds the write lock
                conn.execute("PRAGMA journal_mode = WAL;")
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        email TEXT NOT NULL UNIQUE,
                        role TEXT NOT NULL DEFAULT 'user'
                            CHECK (role IN ('user', 'admin')),
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS vehicles (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id INTEGER NOT NULL,
                        vehicle_type TEXT NOT NULL,
                        size TEXT NOT NULL,
                        plate_number TEXT NOT NULL UNIQUE,
                        FOREIGN KEY (user_id) REFERENCES users(id)
                    );

                    CREATE TABLE IF NOT EXISTS parking_slots (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        slot_number TEXT NOT NULL UNIQUE,
                        size TEXT NOT NULL,
                        vehicle_type TEXT NOT NULL,
                        location TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'available'
                            CHECK (status IN ('available', 'unavailable'))
                    );

                    CREATE TABLE IF NOT EXISTS slot_requests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id INTEGER NOT NULL,
                        vehicle_id INTEGER NOT NULL,
                        request_status TEXT NOT NULL DEFAULT 'pending'
                            CHECK (request_status IN ('pending', 'approved', 'rejected')),
                        slot_id INTEGER,
                        slot_number TEXT,
                        requested_at TEXT NOT NULL,
                        approved_at TEXT,
                        CHECK ((slot_id IS NOT NULL) = (request_status = 'approved')),
                        FOREIGN KEY (user_id) REFERENCES users(id),
                        FOREIGN KEY (vehicle_id) REFERENCES vehicles(id),
                        FOREIGN KEY (slot_id) REFERENCES parking_slots(id)
                    );

                    CREATE TABLE IF NOT EXISTS logs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id INTEGER NOT NULL,
                        action TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_slots_match
                    ON parking_slots(vehicle_type, size, status, id);

                    CREATE INDEX IF NOT EXISTS idx_requests_status
                    ON slot_requests(request_status);

                    CREATE UNIQUE INDEX IF NOT EXISTS ux_requests_approved_slot
                    ON slot_requests(slot_id)
                    WHERE request_status = 'approved';
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_data(self) -> int:
        """Seed a small demo fleet only when no users exist; returns requests created."""
        try:
            with self._write_transaction() as conn:
                count = int(conn.execute("SELECT COUNT(*) AS count FROM users;").fetchone()["count"])
                if count > 0:
                    logger.info("Demo data already present; skipping seed")
                    return 0

                now = utc_now().isoformat()
                conn.execute(
                    "INSERT INTO users (id, name, email, role, created_at) VALUES (?, ?, ?, ?, ?);",
                    (
                        self._settings.admin_user_id,
                        "Parking Admin",
                        "admin@parking.local",
                        Role.ADMIN.value,
                        now,
                    ),
                )
                drivers = [
                    ("Alice Driver", "alice@example.com"),
                    ("Bob Rider", "bob@example.com"),
                    ("Carol Hauler", "carol@example.com"),
                ]
                driver_ids = []
                for name, email in drivers:
                    cursor = conn.execute(
                        "INSERT INTO users (name, email, role, created_at) VALUES (?, ?, ?, ?);",
                        (name, email, Role.USER.value, now),
                    )
                    driver_ids.append(int(cursor.lastrowid))

                vehicles = [
                    (driver_ids[0], "car", "medium", "RAB123A"),
                    (driver_ids[1], "motorcycle", "small", "RAC456B"),
                    (driver_ids[2], "truck", "large", "RAD789C"),
                ]
                vehicle_ids = []
                for vehicle in vehicles:
                    cursor = conn.execute(
                        """
                        INSERT INTO vehicles (user_id, vehicle_type, size, plate_number)
                        VALUES (?, ?, ?, ?);
                        """,
                        vehicle,
                    )
                    vehicle_ids.append(int(cursor.lastrowid))

                conn.executemany(
                    """
                    INSERT INTO parking_slots (slot_number, size, vehicle_type, location)
                    VALUES (?, ?, ?, ?);
                    """,
                    [
                        ("A1", "medium", "car", "north"),
                        ("A2", "medium", "car", "north"),
                        ("B1", "small", "motorcycle", "east"),
                        ("C1", "large", "car", "south"),
                    ],
                )

                for (user_id, *_), vehicle_id in zip(vehicles, vehicle_ids):
                    conn.execute(
                        """
                        INSERT INTO slot_requests (user_id, vehicle_id, request_status, requested_at)
                        VALUES (?, ?, ?, ?);
                        """,
                        (user_id, vehicle_id, RequestStatus.PENDING.value, now),
                    )
            logger.info("Demo seed completed with %s pending requests", len(vehicle_ids))
            return len(vehicle_ids)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc

    def create_vehicle(
        self,
        user_id: int,
        vehicle_type: str,
        size: str,
        plate_number: str,
    ) -> int:
        try:
            with self._session() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO vehicles (user_id, vehicle_type, size, plate_number)
                    VALUES (?, ?, ?, ?);
                    """,
                    (user_id, vehicle_type, size, plate_number),
                )
                return int(cursor.lastrowid)
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc):
                raise DuplicateVehicleError("Plate number already exists") from exc
            raise PersistenceError(f"Vehicle insert failed: {exc}") from exc

    def create_slots(self, slots: Sequence[NewSlot]) -> list[ParkingSlot]:
        """Insert all slots as available, or none when any slot number is taken."""
        if not slots:
            return []
        try:
            with self._write_transaction() as conn:
                created: list[ParkingSlot] = []
                for slot in slots:
                    cursor = conn.execute(
                        """
                        INSERT INTO parking_slots (slot_number, size, vehicle_type, location, status)
                        VALUES (?, ?, ?, ?, ?);
                        """,
                        (
                            slot.slot_number,
                            slot.size,
                            slot.vehicle_type,
                            slot.location,
                            SlotStatus.AVAILABLE.value,
                        ),
                    )
                    created.append(
                        ParkingSlot(
                            slot_id=int(cursor.lastrowid),
                            slot_number=slot.slot_number,
                            size=slot.size,
                            vehicle_type=slot.vehicle_type,
                            location=slot.location,
                            status=SlotStatus.AVAILABLE,
                        )
                    )
                return created
        except sqlite3.IntegrityError as exc:
            raise DuplicateSlotError("Slot number already exists") from exc

    def list_slots(self, status: Optional[SlotStatus] = None) -> list[ParkingSlot]:
        query = f"SELECT {_SLOT_COLUMNS} FROM parking_slots"
        params: tuple[str, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with self._session() as conn:
            rows = conn.execute(f"{query} ORDER BY id ASC;", params).fetchall()
        return [_row_to_slot(row) for row in rows]

    def list_requests(self, user_id: Optional[int] = None) -> list[SlotRequest]:
        """All requests, or only those owned by `user_id`."""
        query = f"SELECT {_REQUEST_COLUMNS} FROM slot_requests"
        params: tuple[int, ...] = ()
        if user_id is not None:
            query += " WHERE user_id = ?"
            params = (user_id,)
        with self._session() as conn:
            rows = conn.execute(f"{query} ORDER BY id ASC;", params).fetchall()
        return [_row_to_request(row) for row in rows]

    def create_request(self, user_id: int, vehicle_id: int) -> Optional[SlotRequest]:
        """Insert a pending request when the vehicle belongs to the user."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO slot_requests (user_id, vehicle_id, request_status, requested_at)
                SELECT ?, v.id, ?, ?
                FROM vehicles AS v
                WHERE v.id = ? AND v.user_id = ?;
                """,
                (
                    user_id,
                    RequestStatus.PENDING.value,
                    utc_now().isoformat(),
                    vehicle_id,
                    user_id,
                ),
            )
            if cursor.rowcount == 0:
                return None
            request_id = int(cursor.lastrowid)
        return self.requests.get(request_id)

    def update_pending_request_vehicle(
        self,
        request_id: int,
        user_id: int,
        vehicle_id: int,
    ) -> Optional[SlotRequest]:
        """Swap the vehicle on an owned pending request; None when not editable."""
        with self._session() as conn:
            cursor = conn.execute(
                """
                UPDATE slot_requests
                SET vehicle_id = ?
                WHERE id = ?
                  AND user_id = ?
                  AND request_status = ?
                  AND EXISTS (
                      SELECT 1 FROM vehicles WHERE id = ? AND user_id = ?
                  );
                """,
                (
                    vehicle_id,
                    request_id,
                    user_id,
                    RequestStatus.PENDING.value,
                    vehicle_id,
                    user_id,
                ),
            )
            if cursor.rowcount == 0:
                return None
        return self.requests.get(request_id)

    def delete_pending_request(self, request_id: int, user_id: int) -> bool:
        with self._session() as conn:
            cursor = conn.execute(
                "DELETE FROM slot_requests WHERE id = ? AND user_id = ? AND request_status = ?;",
                (request_id, user_id, RequestStatus.PENDING.value),
            )
            return cursor.rowcount == 1

    def vehicle_belongs_to(self, vehicle_id: int, user_id: int) -> bool:
        with self._session() as conn:
            row = conn.execute(
                "SELECT 1 FROM vehicles WHERE id = ? AND user_id = ?;",
                (vehicle_id, user_id),
            ).fetchone()
        return row is not None

    def append_audit_entry(self, actor_id: int, action: str, timestamp: datetime) -> AuditEntry:
        with self._session() as conn:
            cursor = conn.execute(
                "INSERT INTO logs (user_id, action, created_at) VALUES (?, ?, ?);",
                (actor_id, action, timestamp.isoformat()),
            )
            entry_id = int(cursor.lastrowid)
        return AuditEntry(
            entry_id=entry_id,
            actor_id=actor_id,
            action=action,
            timestamp=timestamp,
        )

    def list_audit_entries(self, limit: int) -> list[AuditEntry]:
        """Newest first."""
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, action, created_at
                FROM logs
                ORDER BY created_at DESC, id DESC
                LIMIT ?;
                """,
                (limit,),
            ).fetchall()
        return [_row_to_audit_entry(row) for row in rows]

    def count_audit_entries(self) -> int:
        with self._session() as conn:
            return int(conn.execute("SELECT COUNT(*) AS count FROM logs;").fetchone()["count"])
