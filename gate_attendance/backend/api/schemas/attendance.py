from pydantic import BaseModel, Field, ConfigDict
from uuid import UUID
from datetime import date, datetime
from typing import List, Optional, Union

from ...models.db_models import DailyAttendanceRecord, StudentSummary
from ...services.report_service import StudentAttendanceSummary


class ScanRequest(BaseModel):
    """Body sent by a gate reader for every tag it reads. Readers send camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    rfid_tag: str = Field(..., alias="rfidTag", description="Tag UID as read by the reader.")
    device_id: str = Field(..., alias="deviceId")
    timestamp: Optional[Union[int, float, str]] = Field(
        None, description="Reader clock. ISO-8601 (offset optional) or POSIX seconds. Server time is used if missing or unparseable."
    )
    security_status: Optional[str] = Field(None, alias="status", description="'SECURE' or 'TAMPERED'.")


class ScanData(BaseModel):
    student: StudentSummary
    attendance: DailyAttendanceRecord


class ScanResponse(BaseModel):
    success: bool = True
    data: ScanData
    message: str = Field(description="'Entry time recorded' or 'Exit time recorded'.")


class ManualRecordRequest(BaseModel):
    """Administrative record creation."""
    model_config = ConfigDict(populate_by_name=True)

    student_id: UUID = Field(..., alias="studentId")
    day: str = Field(..., alias="date", description="YYYY-MM-DD, or a full ISO instant bucketed to its day.")
    status: str = Field(..., description="present, absent, late or half-day.")
    notes: Optional[str] = None
    created_by: Optional[str] = Field(None, alias="createdBy")
    entry_time: Optional[datetime] = Field(None, alias="entryTime", description="Entry time for 'present' records; if omitted, the time carried by `date`, else start of day.")


class RecordUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[str] = None
    notes: Optional[str] = None
    entry_time: Optional[datetime] = Field(None, alias="entryTime")
    exit_time: Optional[datetime] = Field(None, alias="exitTime")


class ReportResponse(BaseModel):
    success: bool = True
    start_day: date
    end_day: date
    total_days: int
    data: List[StudentAttendanceSummary]
