import logging
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Optional, Tuple, Union
from uuid import UUID, uuid4

from pydantic import BaseModel

from ..db.db_client import AsyncPostgresClient
from ..db.errors import UniqueConstraintError
from ..models.db_models import (
    AttendanceStatus, DailyAttendanceRecord, EnrichedAttendanceRecord,
    SecurityStatus, Student, StudentSummary,
)
from ..models.pagination import Page
from ..modules.clock import ClockService
from ..tools.keyed_lock import KeyedLock
from ..tools.storage_guard import StorageGuard
from .device_service import DeviceService
from .errors import (
    AlreadyCompleteError, ConflictError, DuplicateScanError, InvalidArgumentError,
    InvalidTimestampError, NotFoundError, ServiceError,
)
from .student_service import StudentService, normalize_paging

logger = logging.getLogger(__name__)

MANUAL_DEVICE_ID = "manual-entry"


class ScanOutcome(str, Enum):
    ENTRY = "Entry time recorded"
    EXIT = "Exit time recorded"


class ScanResult(BaseModel):
    """What a reader (and the operator screen) gets back for one scan."""
    student: StudentSummary
    record: DailyAttendanceRecord
    outcome: ScanOutcome


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidArgumentError(f"Invalid {field_name} '{value}'. Allowed: {allowed}") from e


class AttendanceService:
    """
    The attendance ledger. Turns gate scans into one record per student per civil day.

    Per (student, day) a record goes NoRecord -> Open (entry set) -> Closed (exit set).
    The first scan of the day is the entry, the second the exit, a third is refused.
    Administrators can create records directly (manual entries) and edit any field.

    The read-decide-write sequence for a (student, day) runs under a per-key lock,
    and the storage layer enforces one row per key; when another process wins a race
    the ledger re-reads the row and decides again instead of overwriting it.
    """
    def __init__(
        self,
        db_client: AsyncPostgresClient,
        students: StudentService,
        clock: ClockService,
        locks: KeyedLock,
        devices: Optional[DeviceService] = None,
        storage: Optional[StorageGuard] = None,
        duplicate_window_seconds: int = 0,
    ):
        self.db_client = db_client
        self.students = students
        self.clock = clock
        self.locks = locks
        self.devices = devices
        self.storage = storage or StorageGuard()
        self.duplicate_window = timedelta(seconds=duplicate_window_seconds)

    def _localize(self, record: DailyAttendanceRecord) -> DailyAttendanceRecord:
        updates = {
            name: self.clock.to_local(getattr(record, name))
            for name in ("entry_time", "exit_time", "created_at")
            if getattr(record, name) is not None
        }
        return record.model_copy(update=updates) if updates else record

    def _observed_time(self, raw: Any) -> datetime:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return self.clock.now()
        try:
            return self.clock.parse_device_timestamp(raw)
        except InvalidTimestampError:
            logger.warning(f"Unparseable device timestamp {raw!r}; using server time instead.")
            return self.clock.now()

    # ===== Scan ingestion =====

    async def record_scan(
        self,
        rfid_tag: str,
        device_id: str,
        observed_time: Any = None,
        security_status: Optional[Union[str, SecurityStatus]] = None,
    ) -> ScanResult:
        if not rfid_tag or not rfid_tag.strip() or not device_id or not device_id.strip():
            raise InvalidArgumentError("Please provide both RFID tag and device ID.")
        rfid_tag, device_id = rfid_tag.strip(), device_id.strip()
        security = _parse_enum(SecurityStatus, security_status, "security status") if security_status else SecurityStatus.SECURE

        try:
            student = await self.students.resolve_by_tag(rfid_tag)
        except NotFoundError:
            await self._remember_unknown_tag(rfid_tag, device_id)
            raise

        observed = self._observed_time(observed_time)
        day = self.clock.civil_day(observed)

        if security == SecurityStatus.TAMPERED and self.devices is not None:
            await self.devices.report_tamper(device_id)

        async with self.locks.hold((student.student_id, day)):
            record, outcome = await self._apply_scan(student, day, observed, device_id, security)

        logger.info(f"{outcome.value}: student '{student.school_number}' on {day.isoformat()} via '{device_id}'.")
        return ScanResult(student=StudentSummary.from_student(student), record=self._localize(record), outcome=outcome)

    async def _remember_unknown_tag(self, rfid_tag: str, device_id: str):
        logger.warning(f"Scan of unknown tag '{rfid_tag}' at '{device_id}'.")
        if self.devices is None:
            return
        try:
            await self.devices.remember_tag(rfid_tag, device_id)
        except ServiceError as e:
            # The caller still gets NotFound for the scan itself.
            logger.error(f"Could not store unknown tag '{rfid_tag}': {e}")

    async def _read_day(self, student_id: UUID, day: date) -> Optional[DailyAttendanceRecord]:
        return await self.storage.read(lambda: self.db_client.get_record_for_day(student_id, day), "daily record lookup")

    async def _apply_scan(
        self,
        student: Student,
        day: date,
        observed: datetime,
        device_id: str,
        security: SecurityStatus,
    ) -> Tuple[DailyAttendanceRecord, ScanOutcome]:
        existing = await self._read_day(student.student_id, day)

        # Two rounds: a lost race with another process is followed by one re-read.
        for _ in range(2):
            if existing is None:
                new_record = DailyAttendanceRecord(
                    record_id=uuid4(),
                    student_id=student.student_id,
                    day=day,
                    entry_time=observed,
                    status=AttendanceStatus.PRESENT,
                    device_id=device_id,
                    security_status=security,
                )
                try:
                    created = await self.storage.write(lambda: self.db_client.create_record(new_record), "daily record insert")
                    return created, ScanOutcome.ENTRY
                except UniqueConstraintError:
                    logger.info(f"Record for '{student.school_number}' on {day} was created concurrently; re-reading.")
                    existing = await self._read_day(student.student_id, day)
                    continue

            if existing.is_closed:
                logger.warning(f"Scan refused: '{student.school_number}' already has entry and exit on {day}.")
                raise AlreadyCompleteError("Student already has complete attendance record for today.")

            if existing.entry_time is None:
                # Manual record without an entry: the scan supplies it.
                updated = await self.storage.write(
                    lambda: self.db_client.set_entry_if_missing(existing.record_id, observed, device_id, security),
                    "daily record entry",
                )
                outcome = ScanOutcome.ENTRY
            else:
                self._check_duplicate(existing, observed, student)
                updated = await self.storage.write(
                    lambda: self.db_client.set_exit_if_open(existing.record_id, observed, device_id, security),
                    "daily record exit",
                )
                outcome = ScanOutcome.EXIT

            if updated is not None:
                return updated, outcome
            existing = await self._read_day(student.student_id, day)

        raise ConflictError("Attendance record changed concurrently; please scan again.")

    def _check_duplicate(self, record: DailyAttendanceRecord, observed: datetime, student: Student):
        if not self.duplicate_window:
            return
        if abs(observed - record.entry_time) < self.duplicate_window:
            logger.warning(f"Duplicate scan for '{student.school_number}' ignored (within {self.duplicate_window}).")
            raise DuplicateScanError("Scan ignored: too soon after the entry scan.")

    # ===== Manual records =====

    async def add_manual_record(
        self,
        student_id: UUID,
        day: Union[str, date, datetime],
        status: Union[str, AttendanceStatus],
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
        reference_time: Optional[datetime] = None,
    ) -> DailyAttendanceRecord:
        """
        Creates a record outside the scan state machine. Refused if the day already has one.
        A 'present' record gets its entry time from `reference_time`, else from `day` when that is a
        full timestamp, else the start of the day.
        """
        if not status:
            raise InvalidArgumentError("Please provide student ID, date, and status.")
        status = _parse_enum(AttendanceStatus, status, "status")
        civil_day = self.clock.parse_day(day)
        student = await self.students.resolve_by_id(student_id)

        entry_time = None
        if status == AttendanceStatus.PRESENT:
            if reference_time:
                entry_time = self.clock.to_local(reference_time)
            else:
                entry_time = self.clock.parse_instant(day) or self.clock.start_of_day(civil_day)

        record = DailyAttendanceRecord(
            record_id=uuid4(),
            student_id=student.student_id,
            day=civil_day,
            entry_time=entry_time,
            status=status,
            device_id=MANUAL_DEVICE_ID,
            notes=notes,
            created_by=created_by,
        )
        conflict = "Attendance record already exists for this student on this date."
        async with self.locks.hold((student.student_id, civil_day)):
            if await self._read_day(student.student_id, civil_day):
                raise ConflictError(conflict)
            try:
                created = await self.storage.write(lambda: self.db_client.create_record(record), "manual record insert")
            except UniqueConstraintError as e:
                raise ConflictError(conflict) from e

        logger.info(f"Manual '{status.value}' record for '{student.school_number}' on {civil_day} by '{created_by}'.")
        return self._localize(created)

    async def update_record(
        self,
        record_id: UUID,
        status: Optional[Union[str, AttendanceStatus]] = None,
        notes: Optional[str] = None,
        entry_time: Optional[datetime] = None,
        exit_time: Optional[datetime] = None,
    ) -> DailyAttendanceRecord:
        """Administrative correction. Only the given fields change; no state-machine rules apply."""
        existing = await self.get_record(record_id)

        changes = {}
        if status:
            changes["status"] = _parse_enum(AttendanceStatus, status, "status")
        if notes:
            changes["notes"] = notes
        if entry_time:
            changes["entry_time"] = self.clock.to_local(entry_time)
        if exit_time:
            changes["exit_time"] = self.clock.to_local(exit_time)
        if not changes:
            return existing

        async with self.locks.hold((existing.student_id, existing.day)):
            updated = await self.storage.write(lambda: self.db_client.update_record(record_id, changes), "daily record update")
        if not updated:
            raise NotFoundError("Attendance record not found.")
        logger.info(f"Record {record_id} updated by administrator: {', '.join(changes)}.")
        return self._localize(updated)

    # ===== Queries =====

    async def get_record(self, record_id: UUID) -> DailyAttendanceRecord:
        record = await self.storage.read(lambda: self.db_client.get_record(record_id), "daily record lookup")
        if not record:
            raise NotFoundError("Attendance record not found.")
        return self._localize(record)

    async def list_records(
        self,
        day: Any = None,
        start_day: Any = None,
        end_day: Any = None,
        student_id: Optional[UUID] = None,
        status: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Page[EnrichedAttendanceRecord]:
        page, limit = normalize_paging(page, limit)
        day = self.clock.parse_day(day) if day else None
        start_day = self.clock.parse_day(start_day) if start_day else None
        end_day = self.clock.parse_day(end_day) if end_day else None
        status = _parse_enum(AttendanceStatus, status, "status") if status else None

        items, total = await self.storage.read(
            lambda: self.db_client.list_records(
                day=day, start_day=start_day, end_day=end_day, student_id=student_id, status=status,
                offset=(page - 1) * limit, limit=limit,
            ),
            "daily record listing",
        )
        return Page[EnrichedAttendanceRecord].build([self._localize(item) for item in items], total, page, limit)
