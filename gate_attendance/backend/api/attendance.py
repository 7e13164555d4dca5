from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import Optional
from uuid import UUID

from ..models.db_models import DailyAttendanceRecord, EnrichedAttendanceRecord
from ..models.pagination import Page
from ..services.attendance_service import AttendanceService
from ..services.device_service import DeviceService
from ..services.report_service import ReportService
from ..services.errors import ServiceError
from .schemas.attendance import (
    ManualRecordRequest, RecordUpdateRequest, ReportResponse,
    ScanData, ScanRequest, ScanResponse,
)
from .schemas.device import HeartbeatRequest, HeartbeatResponse
from .dependencies import get_attendance_service, get_device_service, get_report_service
from .errors import to_http_exception
from .utilities.limiter import limiter

router = APIRouter(prefix="/attendance", tags=["Attendance"])


# === Reader-facing ===

@router.post("/scan", response_model=ScanResponse, summary="Record a gate scan (entry, then exit)")
@limiter.limit("120/minute")
async def record_scan(
    request: Request,
    scan: ScanRequest,
    service: AttendanceService = Depends(get_attendance_service),
):
    """
    First scan of the day records the entry, the second the exit.
    A third scan is refused with 400; an unknown tag gives 404 and is kept for enrolment.
    """
    try:
        result = await service.record_scan(
            rfid_tag=scan.rfid_tag,
            device_id=scan.device_id,
            observed_time=scan.timestamp,
            security_status=scan.security_status,
        )
    except ServiceError as e:
        raise to_http_exception(e)
    return ScanResponse(
        data=ScanData(student=result.student, attendance=result.record),
        message=result.outcome.value,
    )


@router.post("/device/heartbeat", response_model=HeartbeatResponse, summary="Reader heartbeat (firmware route)")
@limiter.limit("30/minute")
async def attendance_device_heartbeat(
    request: Request,
    heartbeat: HeartbeatRequest,
    service: DeviceService = Depends(get_device_service),
):
    """Same as POST /devices/heartbeat. Deployed reader firmware posts here."""
    try:
        device = await service.record_heartbeat(heartbeat.device_id, heartbeat.to_telemetry())
    except ServiceError as e:
        raise to_http_exception(e)
    return HeartbeatResponse(data=device, server_time=service.clock.now())


# === Administration ===

@router.get("", response_model=Page[EnrichedAttendanceRecord], summary="List attendance records")
async def list_records(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    day: Optional[str] = Query(None, alias="date"),
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    student: Optional[UUID] = None,
    record_status: Optional[str] = Query(None, alias="status"),
    service: AttendanceService = Depends(get_attendance_service),
):
    try:
        return await service.list_records(
            day=day, start_day=start_date, end_day=end_date, student_id=student,
            status=record_status, page=page, limit=limit,
        )
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/report", response_model=ReportResponse, summary="Attendance percentage per student over a date range")
async def attendance_report(
    start_date: str,
    end_date: str,
    class_name: Optional[str] = Query(None, alias="class"),
    grade: Optional[str] = None,
    service: ReportService = Depends(get_report_service),
):
    try:
        report = await service.generate_report(start_date, end_date, class_name=class_name, grade=grade)
    except ServiceError as e:
        raise to_http_exception(e)
    return ReportResponse(
        start_day=report.start_day, end_day=report.end_day, total_days=report.total_days, data=report.rows
    )


@router.get("/{record_id}", response_model=DailyAttendanceRecord, summary="Get one attendance record")
async def get_record(record_id: UUID, service: AttendanceService = Depends(get_attendance_service)):
    try:
        return await service.get_record(record_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("", response_model=DailyAttendanceRecord, status_code=status.HTTP_201_CREATED, summary="Add a manual attendance record")
async def add_manual_record(body: ManualRecordRequest, service: AttendanceService = Depends(get_attendance_service)):
    try:
        return await service.add_manual_record(
            student_id=body.student_id,
            day=body.day,
            status=body.status,
            notes=body.notes,
            created_by=body.created_by,
            reference_time=body.entry_time,
        )
    except ServiceError as e:
        raise to_http_exception(e)


@router.put("/{record_id}", response_model=DailyAttendanceRecord, summary="Correct an attendance record")
async def update_record(record_id: UUID, body: RecordUpdateRequest, service: AttendanceService = Depends(get_attendance_service)):
    if not body.model_fields_set:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update.")
    try:
        return await service.update_record(
            record_id,
            status=body.status,
            notes=body.notes,
            entry_time=body.entry_time,
            exit_time=body.exit_time,
        )
    except ServiceError as e:
        raise to_http_exception(e)
