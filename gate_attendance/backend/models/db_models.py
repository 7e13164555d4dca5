# gate_attendance/backend/models/db_models.py

from pydantic import BaseModel, Field, field_validator
from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID


class _CaseInsensitiveEnum(str, Enum):
    """Device firmware reports upper-case values ("SECURE"); storage keeps lower-case."""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class AttendanceStatus(_CaseInsensitiveEnum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    HALF_DAY = "half-day"


class SecurityStatus(_CaseInsensitiveEnum):
    SECURE = "secure"
    TAMPERED = "tampered"


class DeviceStatus(_CaseInsensitiveEnum):
    NORMAL = "normal"
    TAMPERED = "tampered"
    OFFLINE = "offline"


class Student(BaseModel):
    """
    A person tracked at the gate, mapping to the 'students' table.
    """
    student_id: UUID = Field(..., description="Internal, stable identifier (Primary Key)")
    school_number: str = Field(..., description="External student id, unique across students")
    rfid_tag: str = Field(..., description="Presence tag UID, unique across students")
    full_name: str
    class_name: str
    grade: str
    gender: Optional[str] = None
    parent_contact: Optional[str] = None
    active: bool = True
    created_at: Optional[datetime] = None


class StudentSummary(BaseModel):
    """Public attributes returned alongside scans, listings and reports."""
    student_id: UUID
    school_number: str
    full_name: str
    class_name: str
    grade: str

    @classmethod
    def from_student(cls, student: Student) -> "StudentSummary":
        return cls(**student.model_dump(include={"student_id", "school_number", "full_name", "class_name", "grade"}))


class DailyAttendanceRecord(BaseModel):
    """
    One student's attendance for one civil day, mapping to the 'attendance_records' table.
    (student_id, day) is unique.
    """
    record_id: UUID = Field(..., description="Unique identifier for the daily record")
    student_id: UUID = Field(..., description="FK linking to the student")
    day: date = Field(..., description="Civil day in the canonical timezone")
    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    status: AttendanceStatus = AttendanceStatus.PRESENT
    device_id: str = Field(..., description="Device that produced the last scan, or 'manual-entry'")
    security_status: SecurityStatus = SecurityStatus.SECURE
    location: str = "main-gate"
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.entry_time is not None and self.exit_time is None

    @property
    def is_closed(self) -> bool:
        return self.exit_time is not None


class EnrichedAttendanceRecord(DailyAttendanceRecord):
    """Attendance record enriched with the student's public data."""
    student: StudentSummary


def parse_reported_status(value) -> Optional[DeviceStatus]:
    """Status a device may report about itself: 'normal' or 'tampered', any case."""
    if value is None:
        return None
    status = DeviceStatus(value)
    if status == DeviceStatus.OFFLINE:
        raise ValueError("A device cannot report itself as offline.")
    return status


class DeviceTelemetry(BaseModel):
    """
    Network telemetry reported with every heartbeat. Stored verbatim:
    a field missing from the heartbeat clears the stored value.
    """
    ip_address: Optional[str] = None
    wifi_signal: Optional[int] = None
    uptime: Optional[int] = None
    cache_size: Optional[int] = None
    firmware: Optional[str] = None
    mac_address: Optional[str] = None
    status: Optional[DeviceStatus] = Field(None, description="Explicit security report from the device, if any")

    @field_validator("status", mode="before")
    def offline_is_not_reportable(cls, v):
        return parse_reported_status(v)


class Device(BaseModel):
    """
    A field device (RFID reader), mapping to the 'devices' table.
    """
    device_id: str = Field(..., description="Unique device identifier (Primary Key)")
    status: DeviceStatus = DeviceStatus.OFFLINE
    last_heartbeat: Optional[datetime] = None
    ip_address: Optional[str] = None
    wifi_signal: Optional[int] = None
    uptime: Optional[int] = None
    cache_size: Optional[int] = None
    firmware: Optional[str] = None
    mac_address: Optional[str] = None
    location: str = "Unknown"
    description: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
