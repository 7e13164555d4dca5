import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID
import asyncpg
from datetime import date, datetime

from ..models.db_models import (
    Student, StudentSummary, DailyAttendanceRecord, EnrichedAttendanceRecord,
    Device, DeviceTelemetry, DeviceStatus,
)
from .errors import UniqueConstraintError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

STUDENT_SCHOOL_NUMBER_KEY = "students_school_number_key"
STUDENT_RFID_TAG_KEY = "students_rfid_tag_key"
RECORD_STUDENT_DAY_KEY = "attendance_records_student_day_key"

# Columns that administrative partial updates may touch.
STUDENT_UPDATABLE = ("school_number", "rfid_tag", "full_name", "class_name", "grade", "gender", "parent_contact", "active")
RECORD_UPDATABLE = ("status", "notes", "entry_time", "exit_time")
DEVICE_UPDATABLE = ("location", "description")


def _db_value(value: Any) -> Any:
    # Enums are stored as their plain string value.
    return getattr(value, "value", value)


def _set_clause(fields: Dict[str, Any], allowed: Sequence[str], start: int) -> Tuple[str, List[Any]]:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Columns not updatable: {sorted(unknown)}")
    parts, params = [], []
    for offset, (column, value) in enumerate(fields.items()):
        parts.append(f"{column} = ${start + offset}")
        params.append(_db_value(value))
    return ", ".join(parts), params


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class AsyncPostgresClient:
    """
    PostgreSQL client that owns every SQL statement of the attendance engine.
    Unique violations are surfaced as UniqueConstraintError; everything else propagates.
    """
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def apply_schema(self, schema_path: Path = SCHEMA_PATH):
        """Creates tables and constraints if they do not exist yet."""
        sql = Path(schema_path).read_text(encoding="utf-8")
        async with self._pool.acquire() as connection:
            await connection.execute(sql)
        logger.info("Database schema applied.")

    # ===== Students =====

    async def add_student(self, student: Student) -> Student:
        query = """
            INSERT INTO students (student_id, school_number, rfid_tag, full_name, class_name, grade, gender, parent_contact, active)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            try:
                record = await connection.fetchrow(
                    query, student.student_id, student.school_number, student.rfid_tag, student.full_name,
                    student.class_name, student.grade, student.gender, student.parent_contact, student.active
                )
            except asyncpg.UniqueViolationError as e:
                raise UniqueConstraintError(e.constraint_name, str(e)) from e
            return Student(**record)

    async def get_student(self, student_id: UUID) -> Optional[Student]:
        query = "SELECT * FROM students WHERE student_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, student_id)
            return Student(**record) if record else None

    async def get_student_by_tag(self, rfid_tag: str) -> Optional[Student]:
        query = "SELECT * FROM students WHERE rfid_tag = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, rfid_tag)
            return Student(**record) if record else None

    async def get_student_by_school_number(self, school_number: str) -> Optional[Student]:
        query = "SELECT * FROM students WHERE school_number = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, school_number)
            return Student(**record) if record else None

    async def update_student(self, student_id: UUID, fields: Dict[str, Any]) -> Optional[Student]:
        if not fields:
            return await self.get_student(student_id)
        set_clause, params = _set_clause(fields, STUDENT_UPDATABLE, start=2)
        query = f"UPDATE students SET {set_clause} WHERE student_id = $1 RETURNING *;"
        async with self._pool.acquire() as connection:
            try:
                record = await connection.fetchrow(query, student_id, *params)
            except asyncpg.UniqueViolationError as e:
                raise UniqueConstraintError(e.constraint_name, str(e)) from e
            return Student(**record) if record else None

    async def delete_student(self, student_id: UUID) -> bool:
        query = "DELETE FROM students WHERE student_id = $1;"
        async with self._pool.acquire() as connection:
            result = await connection.execute(query, student_id)
            return result.endswith(" 1")

    async def search_students(
        self,
        class_name: Optional[str] = None,
        grade: Optional[str] = None,
        active: Optional[bool] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[Student], int]:
        """Filtered, name-ordered page of students plus the total number of matches."""
        clauses, params = [], []
        if class_name:
            params.append(class_name)
            clauses.append(f"class_name = ${len(params)}")
        if grade:
            params.append(grade)
            clauses.append(f"grade = ${len(params)}")
        if active is not None:
            params.append(active)
            clauses.append(f"active = ${len(params)}")
        if search:
            params.append(_like_pattern(search))
            n = len(params)
            clauses.append(f"(full_name ILIKE ${n} OR school_number ILIKE ${n} OR rfid_tag ILIKE ${n})")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        count_query = f"SELECT count(*) FROM students {where};"
        page_query = f"""
            SELECT * FROM students {where}
            ORDER BY full_name ASC, student_id ASC
            OFFSET ${len(params) + 1} LIMIT ${len(params) + 2};
        """
        async with self._pool.acquire() as connection:
            total = await connection.fetchval(count_query, *params)
            records = await connection.fetch(page_query, *params, offset, limit)
            return [Student(**record) for record in records], int(total)

    async def list_students(self, class_name: Optional[str] = None, grade: Optional[str] = None) -> List[Student]:
        """Every student matching the classification filters, ordered by name."""
        clauses, params = [], []
        if class_name:
            params.append(class_name)
            clauses.append(f"class_name = ${len(params)}")
        if grade:
            params.append(grade)
            clauses.append(f"grade = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"SELECT * FROM students {where} ORDER BY full_name ASC, student_id ASC;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, *params)
            return [Student(**record) for record in records]

    # ===== Daily attendance records =====

    async def get_record(self, record_id: UUID) -> Optional[DailyAttendanceRecord]:
        query = "SELECT * FROM attendance_records WHERE record_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, record_id)
            return DailyAttendanceRecord(**record) if record else None

    async def get_record_for_day(self, student_id: UUID, day: date) -> Optional[DailyAttendanceRecord]:
        query = "SELECT * FROM attendance_records WHERE student_id = $1 AND day = $2;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, student_id, day)
            return DailyAttendanceRecord(**record) if record else None

    async def create_record(self, record: DailyAttendanceRecord) -> DailyAttendanceRecord:
        """
        Inserts a new daily record. A second record for the same (student, day)
        is rejected by the unique constraint and reported as UniqueConstraintError.
        """
        query = """
            INSERT INTO attendance_records
                (record_id, student_id, day, entry_time, exit_time, status, device_id, security_status, location, notes, created_by)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            try:
                row = await connection.fetchrow(
                    query, record.record_id, record.student_id, record.day, record.entry_time, record.exit_time,
                    record.status.value, record.device_id, record.security_status.value, record.location,
                    record.notes, record.created_by
                )
            except asyncpg.UniqueViolationError as e:
                raise UniqueConstraintError(e.constraint_name, str(e)) from e
            return DailyAttendanceRecord(**row)

    async def set_entry_if_missing(self, record_id: UUID, entry_time: datetime, device_id: str, security_status: str) -> Optional[DailyAttendanceRecord]:
        """Sets the entry time only while the record has neither entry nor exit. Returns None otherwise."""
        query = """
            UPDATE attendance_records
            SET entry_time = $2, device_id = $3, security_status = $4
            WHERE record_id = $1 AND entry_time IS NULL AND exit_time IS NULL
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(query, record_id, entry_time, device_id, _db_value(security_status))
            return DailyAttendanceRecord(**row) if row else None

    async def set_exit_if_open(self, record_id: UUID, exit_time: datetime, device_id: str, security_status: str) -> Optional[DailyAttendanceRecord]:
        """Sets the exit time only while the record is open. Returns None if it was closed meanwhile."""
        query = """
            UPDATE attendance_records
            SET exit_time = $2, device_id = $3, security_status = $4
            WHERE record_id = $1 AND entry_time IS NOT NULL AND exit_time IS NULL
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(query, record_id, exit_time, device_id, _db_value(security_status))
            return DailyAttendanceRecord(**row) if row else None

    async def update_record(self, record_id: UUID, fields: Dict[str, Any]) -> Optional[DailyAttendanceRecord]:
        if not fields:
            return await self.get_record(record_id)
        set_clause, params = _set_clause(fields, RECORD_UPDATABLE, start=2)
        query = f"UPDATE attendance_records SET {set_clause} WHERE record_id = $1 RETURNING *;"
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(query, record_id, *params)
            return DailyAttendanceRecord(**row) if row else None

    async def list_records(
        self,
        day: Optional[date] = None,
        start_day: Optional[date] = None,
        end_day: Optional[date] = None,
        student_id: Optional[UUID] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> Tuple[List[EnrichedAttendanceRecord], int]:
        """Filtered page of records joined with their student, newest day first."""
        clauses, params = [], []
        if day is not None:
            params.append(day)
            clauses.append(f"r.day = ${len(params)}")
        if start_day is not None:
            params.append(start_day)
            clauses.append(f"r.day >= ${len(params)}")
        if end_day is not None:
            params.append(end_day)
            clauses.append(f"r.day <= ${len(params)}")
        if student_id is not None:
            params.append(student_id)
            clauses.append(f"r.student_id = ${len(params)}")
        if status is not None:
            params.append(_db_value(status))
            clauses.append(f"r.status = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        count_query = f"SELECT count(*) FROM attendance_records r {where};"
        page_query = f"""
            SELECT r.*, s.school_number, s.full_name, s.class_name, s.grade
            FROM attendance_records r
            JOIN students s ON s.student_id = r.student_id
            {where}
            ORDER BY r.day DESC, r.entry_time DESC NULLS LAST, r.record_id ASC
            OFFSET ${len(params) + 1} LIMIT ${len(params) + 2};
        """
        async with self._pool.acquire() as connection:
            total = await connection.fetchval(count_query, *params)
            rows = await connection.fetch(page_query, *params, offset, limit)

        items = []
        for row in rows:
            data = dict(row)
            student = StudentSummary(
                student_id=data["student_id"],
                school_number=data.pop("school_number"),
                full_name=data.pop("full_name"),
                class_name=data.pop("class_name"),
                grade=data.pop("grade"),
            )
            items.append(EnrichedAttendanceRecord(**data, student=student))
        return items, int(total)

    async def get_records_between(self, start_day: date, end_day: date, student_ids: List[UUID]) -> List[DailyAttendanceRecord]:
        """All records of the given students with start_day <= day <= end_day."""
        if not student_ids:
            return []
        query = """
            SELECT * FROM attendance_records
            WHERE day BETWEEN $1 AND $2 AND student_id = ANY($3)
            ORDER BY day ASC;
        """
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(query, start_day, end_day, student_ids)
            return [DailyAttendanceRecord(**row) for row in rows]

    # ===== Devices =====

    async def get_device(self, device_id: str) -> Optional[Device]:
        query = "SELECT * FROM devices WHERE device_id = $1;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, device_id)
            return Device(**record) if record else None

    async def list_devices(self) -> List[Device]:
        query = "SELECT * FROM devices ORDER BY last_heartbeat DESC NULLS LAST, device_id ASC;"
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query)
            return [Device(**record) for record in records]

    async def register_device(self, device_id: str, location: str, description: str) -> Device:
        """Creates the device as offline, or only refreshes location/description if it exists."""
        query = """
            INSERT INTO devices (device_id, status, location, description)
            VALUES ($1, 'offline', $2, $3)
            ON CONFLICT (device_id) DO UPDATE SET
                location = EXCLUDED.location,
                description = EXCLUDED.description,
                updated_at = now()
            RETURNING *;
        """
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, device_id, location, description)
            return Device(**record)

    async def record_heartbeat(self, device_id: str, telemetry: DeviceTelemetry, heartbeat_at: datetime) -> Device:
        """
        Upserts the device with fresh telemetry.
        Status: the explicit report if present, otherwise 'tampered' stays 'tampered'
        and anything else becomes 'normal'. Decided inside the statement.
        """
        query = """
            INSERT INTO devices (device_id, status, last_heartbeat, ip_address, wifi_signal, uptime, cache_size, firmware, mac_address)
            VALUES ($1, COALESCE($2::text, 'normal'), $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (device_id) DO UPDATE SET
                status = CASE
                    WHEN $2::text IS NOT NULL THEN $2::text
                    WHEN devices.status = 'tampered' THEN 'tampered'
                    ELSE 'normal'
                END,
                last_heartbeat = EXCLUDED.last_heartbeat,
                ip_address = EXCLUDED.ip_address,
                wifi_signal = EXCLUDED.wifi_signal,
                uptime = EXCLUDED.uptime,
                cache_size = EXCLUDED.cache_size,
                firmware = EXCLUDED.firmware,
                mac_address = EXCLUDED.mac_address,
                updated_at = now()
            RETURNING *;
        """
        reported = telemetry.status.value if telemetry.status else None
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(
                query, device_id, reported, heartbeat_at, telemetry.ip_address, telemetry.wifi_signal,
                telemetry.uptime, telemetry.cache_size, telemetry.firmware, telemetry.mac_address
            )
            return Device(**record)

    async def set_device_status(self, device_id: str, status: DeviceStatus) -> Optional[Device]:
        query = "UPDATE devices SET status = $2, updated_at = now() WHERE device_id = $1 RETURNING *;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, device_id, _db_value(status))
            return Device(**record) if record else None

    async def update_device(self, device_id: str, fields: Dict[str, Any]) -> Optional[Device]:
        if not fields:
            return await self.get_device(device_id)
        set_clause, params = _set_clause(fields, DEVICE_UPDATABLE, start=2)
        query = f"UPDATE devices SET {set_clause}, updated_at = now() WHERE device_id = $1 RETURNING *;"
        async with self._pool.acquire() as connection:
            record = await connection.fetchrow(query, device_id, *params)
            return Device(**record) if record else None

    async def delete_device(self, device_id: str) -> bool:
        query = "DELETE FROM devices WHERE device_id = $1;"
        async with self._pool.acquire() as connection:
            result = await connection.execute(query, device_id)
            return result.endswith(" 1")

    async def find_stale_devices(self, cutoff: datetime) -> List[str]:
        """Ids of non-offline devices whose last heartbeat is older than `cutoff` (or missing)."""
        query = """
            SELECT device_id FROM devices
            WHERE status <> 'offline' AND (last_heartbeat IS NULL OR last_heartbeat < $1)
            ORDER BY device_id;
        """
        async with self._pool.acquire() as connection:
            records = await connection.fetch(query, cutoff)
            return [record["device_id"] for record in records]

    async def mark_offline_if_stale(self, device_id: str, cutoff: datetime) -> bool:
        """Flips one device to offline, re-checking staleness in the same statement."""
        query = """
            UPDATE devices SET status = 'offline', updated_at = now()
            WHERE device_id = $1 AND status <> 'offline'
              AND (last_heartbeat IS NULL OR last_heartbeat < $2);
        """
        async with self._pool.acquire() as connection:
            result = await connection.execute(query, device_id, cutoff)
            return result.endswith(" 1")
