from fastapi import APIRouter, Depends, Query, Request, Response, status
from typing import Optional
from uuid import UUID

from ..models.db_models import Student
from ..models.pagination import Page
from ..services.device_service import DeviceService
from ..services.student_service import StudentService
from ..services.errors import ServiceError
from .schemas.student import (
    LastTagResponse, StoreTagRequest, StoreTagResponse,
    StudentCreateRequest, StudentUpdateRequest,
)
from .dependencies import get_device_service, get_student_service
from .errors import to_http_exception
from .utilities.limiter import limiter

router = APIRouter(prefix="/students", tags=["Students"])


# === Enrolment helpers (reader + registration screen) ===
# Declared before '/{student_id}' so the fixed paths win.

@router.post("/store-rfid", response_model=StoreTagResponse, summary="Keep the tag a reader just saw for enrolment")
@limiter.limit("60/minute")
async def store_rfid_tag(
    request: Request,
    body: StoreTagRequest,
    service: DeviceService = Depends(get_device_service),
):
    try:
        await service.remember_tag(body.rfid_tag, body.device_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return StoreTagResponse()


@router.get("/last-rfid", response_model=LastTagResponse, summary="Most recent unmatched tag, if not expired")
async def get_last_rfid_tag(clear: bool = False, service: DeviceService = Depends(get_device_service)):
    """With `clear=true` the slot is emptied in the same step."""
    try:
        entry = await service.take_last_tag(clear=clear)
    except ServiceError as e:
        raise to_http_exception(e)
    return LastTagResponse(data=entry)


@router.get("/rfid/{tag}", response_model=Student, summary="Look up a student by tag")
async def get_student_by_tag(tag: str, service: StudentService = Depends(get_student_service)):
    try:
        return await service.get_by_tag(tag)
    except ServiceError as e:
        raise to_http_exception(e)


# === Directory ===

@router.get("", response_model=Page[Student], summary="Search students")
async def search_students(
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    class_name: Optional[str] = Query(None, alias="class"),
    grade: Optional[str] = None,
    active: Optional[bool] = None,
    search: Optional[str] = None,
    service: StudentService = Depends(get_student_service),
):
    try:
        return await service.search(
            class_name=class_name, grade=grade, active=active, search=search, page=page, limit=limit
        )
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("", response_model=Student, status_code=status.HTTP_201_CREATED, summary="Enrol a student")
async def create_student(body: StudentCreateRequest, service: StudentService = Depends(get_student_service)):
    try:
        return await service.create(body.model_dump())
    except ServiceError as e:
        raise to_http_exception(e)


@router.get("/{student_id}", response_model=Student, summary="Get one student")
async def get_student(student_id: UUID, service: StudentService = Depends(get_student_service)):
    try:
        return await service.resolve_by_id(student_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.put("/{student_id}", response_model=Student, summary="Update a student")
async def update_student(student_id: UUID, body: StudentUpdateRequest, service: StudentService = Depends(get_student_service)):
    try:
        return await service.update(student_id, body.model_dump(exclude_none=True))
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/{student_id}/deactivate", response_model=Student, summary="Deactivate a student (scans are refused)")
async def deactivate_student(student_id: UUID, service: StudentService = Depends(get_student_service)):
    try:
        return await service.deactivate(student_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.post("/{student_id}/activate", response_model=Student, summary="Reactivate a student")
async def activate_student(student_id: UUID, service: StudentService = Depends(get_student_service)):
    try:
        return await service.activate(student_id)
    except ServiceError as e:
        raise to_http_exception(e)


@router.delete("/{student_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a student and their records")
async def delete_student(student_id: UUID, service: StudentService = Depends(get_student_service)):
    try:
        await service.delete(student_id)
    except ServiceError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
