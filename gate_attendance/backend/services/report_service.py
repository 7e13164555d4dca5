import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..db.db_client import AsyncPostgresClient
from ..models.db_models import AttendanceStatus, DailyAttendanceRecord, StudentSummary
from ..modules.clock import ClockService
from ..tools.storage_guard import StorageGuard
from .errors import InvalidArgumentError
from .student_service import StudentService

logger = logging.getLogger(__name__)

# Weight of each status in the attendance percentage. 'absent' counts for nothing.
STATUS_WEIGHTS = {
    AttendanceStatus.PRESENT: Decimal("1"),
    AttendanceStatus.LATE: Decimal("0.75"),
    AttendanceStatus.HALF_DAY: Decimal("0.5"),
}


class StudentAttendanceSummary(BaseModel):
    student: StudentSummary
    present: int = 0
    absent: int = 0
    late: int = 0
    half_day: int = 0
    attendance_percentage: float = 0.0
    records: List[DailyAttendanceRecord] = Field(default_factory=list)


class AttendanceReport(BaseModel):
    start_day: date
    end_day: date
    total_days: int
    rows: List[StudentAttendanceSummary]


def attendance_percentage(present: int, late: int, half_day: int, total_days: int) -> float:
    """(present + 0.75*late + 0.5*half_day) / total_days * 100, rounded half-up to two decimals."""
    if total_days <= 0:
        return 0.0
    weighted = (
        present * STATUS_WEIGHTS[AttendanceStatus.PRESENT]
        + late * STATUS_WEIGHTS[AttendanceStatus.LATE]
        + half_day * STATUS_WEIGHTS[AttendanceStatus.HALF_DAY]
    )
    value = weighted / Decimal(total_days) * 100
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class ReportService:
    """Per-student attendance counts and percentages over an inclusive range of civil days."""

    def __init__(
        self,
        db_client: AsyncPostgresClient,
        students: StudentService,
        clock: ClockService,
        storage: Optional[StorageGuard] = None,
    ):
        self.db_client = db_client
        self.students = students
        self.clock = clock
        self.storage = storage or StorageGuard()

    async def generate_report(
        self,
        start_day: Any,
        end_day: Any,
        class_name: Optional[str] = None,
        grade: Optional[str] = None,
    ) -> AttendanceReport:
        if not start_day or not end_day:
            raise InvalidArgumentError("Start date and end date are required.")
        start_day = self.clock.parse_day(start_day)
        end_day = self.clock.parse_day(end_day)
        if start_day > end_day:
            raise InvalidArgumentError("Start date must not be after end date.")

        students = await self.students.list_for_report(class_name=class_name, grade=grade)
        records = await self.storage.read(
            lambda: self.db_client.get_records_between(start_day, end_day, [s.student_id for s in students]),
            "report record fetch",
        )

        by_student: Dict[Any, List[DailyAttendanceRecord]] = defaultdict(list)
        for record in records:
            by_student[record.student_id].append(record)

        total_days = self.clock.days_inclusive(start_day, end_day)
        rows = []
        # Directory order is kept; students without records still get a row.
        for student in students:
            student_records = by_student.get(student.student_id, [])
            counts = {status: 0 for status in AttendanceStatus}
            for record in student_records:
                counts[record.status] += 1
            rows.append(StudentAttendanceSummary(
                student=StudentSummary.from_student(student),
                present=counts[AttendanceStatus.PRESENT],
                absent=counts[AttendanceStatus.ABSENT],
                late=counts[AttendanceStatus.LATE],
                half_day=counts[AttendanceStatus.HALF_DAY],
                attendance_percentage=attendance_percentage(
                    counts[AttendanceStatus.PRESENT], counts[AttendanceStatus.LATE],
                    counts[AttendanceStatus.HALF_DAY], total_days,
                ),
                records=[self._localize(record) for record in student_records],
            ))

        logger.info(f"Report {start_day}..{end_day}: {len(rows)} students, {len(records)} records, {total_days} days.")
        return AttendanceReport(start_day=start_day, end_day=end_day, total_days=total_days, rows=rows)

    def _localize(self, record: DailyAttendanceRecord) -> DailyAttendanceRecord:
        updates = {
            name: self.clock.to_local(getattr(record, name))
            for name in ("entry_time", "exit_time")
            if getattr(record, name) is not None
        }
        return record.model_copy(update=updates) if updates else record
