# tests/conftest.py
import asyncio
import sys
from uuid import uuid4

import pytest

from gate_attendance.backend.models.db_models import Student
from gate_attendance.backend.modules.clock import ClockService
from gate_attendance.backend.services.attendance_service import AttendanceService
from gate_attendance.backend.services.device_service import DeviceService
from gate_attendance.backend.services.report_service import ReportService
from gate_attendance.backend.services.student_service import StudentService
from gate_attendance.backend.tools.keyed_lock import KeyedLock
from gate_attendance.backend.tools.storage_guard import StorageGuard
from tests.fakes import InMemoryDbClient, InMemoryRedisClient

# This is the crucial fix for Windows asyncio issues with pytest.
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest.fixture
def clock() -> ClockService:
    return ClockService("Asia/Jakarta", device_offset_hours=7)

@pytest.fixture
def db() -> InMemoryDbClient:
    return InMemoryDbClient()

@pytest.fixture
def redis_store() -> InMemoryRedisClient:
    return InMemoryRedisClient()

@pytest.fixture
def storage() -> StorageGuard:
    return StorageGuard(timeout=1.0, backoff=0)

@pytest.fixture
def student_service(db, storage) -> StudentService:
    return StudentService(db_client=db, storage=storage)

@pytest.fixture
def device_service(db, clock, redis_store, storage) -> DeviceService:
    return DeviceService(
        db_client=db, clock=clock, locks=KeyedLock(timeout=1.0), redis_client=redis_store,
        storage=storage, liveness_timeout_seconds=120, last_tag_ttl_seconds=300,
    )

@pytest.fixture
def attendance_service(db, student_service, clock, device_service, storage) -> AttendanceService:
    return AttendanceService(
        db_client=db, students=student_service, clock=clock, locks=KeyedLock(timeout=1.0),
        devices=device_service, storage=storage,
    )

@pytest.fixture
def report_service(db, student_service, clock, storage) -> ReportService:
    return ReportService(db_client=db, students=student_service, clock=clock, storage=storage)

@pytest.fixture
def make_student(db):
    """Puts a student straight into the fake database and returns it."""
    counter = {"n": 0}

    def _make(full_name: str = None, rfid_tag: str = None, school_number: str = None,
              class_name: str = "7A", grade: str = "7", active: bool = True) -> Student:
        counter["n"] += 1
        n = counter["n"]
        student = Student(
            student_id=uuid4(),
            school_number=school_number or f"S{n:03d}",
            rfid_tag=rfid_tag or f"TAG{n:03d}",
            full_name=full_name or f"Student {n:03d}",
            class_name=class_name,
            grade=grade,
            active=active,
        )
        db.students[student.student_id] = student
        return student
    return _make
