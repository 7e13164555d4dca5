#gate_attendance/backend/api/dependencies.py
from fastapi import Request, Depends
import redis.asyncio as redis
import asyncpg

from ..config.config import settings
from ..db.redis_client import RedisClient
from ..db.db_client import AsyncPostgresClient
from ..modules.clock import ClockService
from ..tools.storage_guard import StorageGuard
from ..services.student_service import StudentService
from ..services.device_service import DeviceService
from ..services.attendance_service import AttendanceService
from ..services.report_service import ReportService


def get_redis_pool(request: Request) -> redis.ConnectionPool:
    """Redis connection pool created in the application lifespan."""
    return request.app.state.redis_pool

def get_postgres_pool(request: Request) -> asyncpg.Pool:
    """PostgreSQL connection pool created in the application lifespan."""
    return request.app.state.postgres_pool


def get_db_client(postgres_pool: asyncpg.Pool = Depends(get_postgres_pool)) -> AsyncPostgresClient:
    return AsyncPostgresClient(pool=postgres_pool)

def get_redis_client(redis_pool: redis.ConnectionPool = Depends(get_redis_pool)) -> RedisClient:
    return RedisClient(pool=redis_pool)

def get_clock(request: Request) -> ClockService:
    return request.app.state.clock

def get_storage_guard() -> StorageGuard:
    return StorageGuard(timeout=settings.STORAGE_TIMEOUT_SECONDS, backoff=settings.STORAGE_RETRY_BACKOFF_SECONDS)


def get_student_service(
    db_client: AsyncPostgresClient = Depends(get_db_client),
    storage: StorageGuard = Depends(get_storage_guard),
) -> StudentService:
    return StudentService(db_client=db_client, storage=storage)


def get_device_service(
    request: Request,
    db_client: AsyncPostgresClient = Depends(get_db_client),
    redis_client: RedisClient = Depends(get_redis_client),
    clock: ClockService = Depends(get_clock),
    storage: StorageGuard = Depends(get_storage_guard),
) -> DeviceService:
    """
    A new DeviceService per request. The per-device locks live on app.state,
    so every request in this process serialises on the same device keys.
    """
    return DeviceService(
        db_client=db_client,
        clock=clock,
        locks=request.app.state.device_locks,
        redis_client=redis_client,
        storage=storage,
        liveness_timeout_seconds=settings.DEVICE_LIVENESS_TIMEOUT_SECONDS,
        last_tag_ttl_seconds=settings.LAST_TAG_TTL_SECONDS,
    )


def get_attendance_service(
    request: Request,
    db_client: AsyncPostgresClient = Depends(get_db_client),
    student_service: StudentService = Depends(get_student_service),
    device_service: DeviceService = Depends(get_device_service),
    clock: ClockService = Depends(get_clock),
    storage: StorageGuard = Depends(get_storage_guard),
) -> AttendanceService:
    """A new AttendanceService per request, sharing the process-wide (student, day) locks."""
    return AttendanceService(
        db_client=db_client,
        students=student_service,
        clock=clock,
        locks=request.app.state.scan_locks,
        devices=device_service,
        storage=storage,
        duplicate_window_seconds=settings.DUPLICATE_SCAN_WINDOW_SECONDS,
    )


def get_report_service(
    db_client: AsyncPostgresClient = Depends(get_db_client),
    student_service: StudentService = Depends(get_student_service),
    clock: ClockService = Depends(get_clock),
    storage: StorageGuard = Depends(get_storage_guard),
) -> ReportService:
    return ReportService(db_client=db_client, students=student_service, clock=clock, storage=storage)
