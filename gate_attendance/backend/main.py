# gate_attendance/backend/main.py
from fastapi import FastAPI
from contextlib import asynccontextmanager
import redis.asyncio as redis
import asyncpg
from apscheduler.schedulers.asyncio import AsyncIOScheduler as Scheduler
import logging
import time

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from fastapi.middleware.cors import CORSMiddleware

from .config.config import settings
from .api import attendance, devices, students
from .db.redis_client import RedisClient
from .db.db_client import AsyncPostgresClient
from .logging.logging_config import setup_logging
from .modules.clock import ClockService
from .services.device_service import DeviceService
from .tasks.cron import device_liveness_sweep_task
from .tools.keyed_lock import KeyedLock
from .tools.storage_guard import StorageGuard
from .api.utilities.limiter import limiter

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Creates the connection pools and the liveness sweep job on startup and
    releases them on shutdown.
    """
    setup_logging()
    logger.info("Starting gate attendance service...")

    app.state.postgres_pool = None
    app.state.redis_pool = None
    app.state.scheduler = None

    try:
        postgres_pool = await asyncpg.create_pool(
            dsn=settings.DATABASE_URL, min_size=5, max_size=20
        )
        redis_pool = redis.ConnectionPool.from_url(
            settings.APPLICATION_REDIS_URL, decode_responses=True
        )
        app.state.postgres_pool = postgres_pool
        app.state.redis_pool = redis_pool
        logger.info("PostgreSQL and Redis connection pools created.")

        db_client = AsyncPostgresClient(pool=postgres_pool)
        if settings.APPLY_SCHEMA_ON_STARTUP:
            await db_client.apply_schema()

        if settings.LIVENESS_SWEEP_INTERVAL_SECONDS > 0:
            device_service = DeviceService(
                db_client=db_client,
                clock=app.state.clock,
                locks=app.state.device_locks,
                redis_client=RedisClient(pool=redis_pool),
                storage=StorageGuard(timeout=settings.STORAGE_TIMEOUT_SECONDS, backoff=settings.STORAGE_RETRY_BACKOFF_SECONDS),
                liveness_timeout_seconds=settings.DEVICE_LIVENESS_TIMEOUT_SECONDS,
            )
            scheduler = Scheduler()
            scheduler.add_job(
                device_liveness_sweep_task, "interval",
                seconds=settings.LIVENESS_SWEEP_INTERVAL_SECONDS,
                args=[device_service], id="device_liveness_sweep",
                max_instances=1, coalesce=True,
            )
            scheduler.start()
            app.state.scheduler = scheduler
            logger.info(f"Device liveness sweep scheduled every {settings.LIVENESS_SWEEP_INTERVAL_SECONDS}s.")

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)

    yield

    logger.info("Shutting down gate attendance service...")
    if app.state.scheduler:
        app.state.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped.")
    if app.state.postgres_pool:
        await app.state.postgres_pool.close()
        logger.info("PostgreSQL connection pool closed.")
    if app.state.redis_pool:
        await app.state.redis_pool.disconnect()
        logger.info("Redis connection pool closed.")


app = FastAPI(
    title="Gate Attendance API",
    description="RFID gate attendance: scans, devices, students and reports.",
    version="1.0.0",
    lifespan=lifespan
)

# Process-wide state shared by the per-request services.
app.state.limiter = limiter
app.state.clock = ClockService(settings.TIMEZONE, settings.DEVICE_CLOCK_OFFSET_HOURS)
app.state.scan_locks = KeyedLock(timeout=settings.LOCK_TIMEOUT_SECONDS)
app.state.device_locks = KeyedLock(timeout=settings.LOCK_TIMEOUT_SECONDS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(attendance.router, prefix="/api/v1")
app.include_router(devices.router, prefix="/api/v1")
app.include_router(students.router, prefix="/api/v1")

@app.get("/health", tags=["System"])
def health_check():
    return {
        "status": "ok",
        "message": "Gate attendance API is running.",
        "server_time": app.state.clock.now().isoformat(),
        "uptime_seconds": round(time.monotonic() - STARTED_AT, 1),
    }
