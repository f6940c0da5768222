"""
REST API module for the weather push application.

Provides endpoints for:
- Device registration for push notifications
- Scheduler job management (validated at admission)
- Job status and manual runs
- Engine health
"""

import logging
import uuid
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .config import get_settings
from .database import Database
from .engine import ForecastEngine
from .errors import StorageError, ValidationError
from .models import (
    DEFAULT_TIMEZONE,
    DEFAULT_UNITS,
    VALID_PLATFORMS,
    VALID_UNITS,
    Device,
    NotifyConfig,
    SchedulerJob,
)
from .scheduler import validate_job

logging.basicConfig(
    level=get_settings().log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================

class DeviceRegistration(BaseModel):
    token: str = Field(..., min_length=1)
    platform: str
    device_name: Optional[str] = None
    app_version: Optional[str] = None
    cities: List[str] = []
    units: str = DEFAULT_UNITS
    enabled: bool = True


class DeviceModel(DeviceRegistration):
    id: str
    registered_at: int
    updated_at: int


class NotifyConfigModel(BaseModel):
    on_run: bool = True
    on_alert: bool = True
    on_precipitation: bool = False
    cold_threshold: Optional[float] = None
    heat_threshold: Optional[float] = None


class JobRequest(BaseModel):
    name: str
    city: str
    cron: str
    units: str = DEFAULT_UNITS
    timezone: str = DEFAULT_TIMEZONE
    include_daily: bool = True
    include_hourly: bool = False
    enabled: bool = True
    notify: NotifyConfigModel = NotifyConfigModel()


class JobModel(JobRequest):
    id: str
    next_run_at: Optional[str] = None


class JobStatus(BaseModel):
    job_id: str
    last_run_at: Optional[str] = None
    last_due_at: Optional[str] = None
    last_status: Optional[str] = None
    last_reason: Optional[str] = None
    notified_count: int = 0
    failed_count: int = 0
    last_error: Optional[str] = None
    permanent_failures: List[str] = []
    run_count: int = 0


class RunResult(BaseModel):
    job_id: str
    state: str
    reason: Optional[str]
    notified: int
    failed: int
    error: Optional[str]
    permanent_failures: List[str]


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    database: str
    engine: str
    uptime: str


# =============================================================================
# Global State
# =============================================================================

db: Optional[Database] = None
engine: Optional[ForecastEngine] = None
start_time: Optional[datetime] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global db, engine, start_time

    settings = get_settings()
    logger.info("Starting weather push service...")
    start_time = datetime.utcnow()

    db = Database(settings.database_path)
    engine = ForecastEngine.from_settings(settings, db)
    engine.start()

    yield

    logger.info("Shutting down...")
    if engine:
        engine.stop()
    if db:
        db.close()


app = FastAPI(
    title="Weather Push API",
    description="Scheduled weather forecasts delivered as push notifications",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_db() -> Database:
    if not db:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


def _require_engine() -> ForecastEngine:
    if not engine:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


def _device_model(device: Device) -> DeviceModel:
    return DeviceModel(
        id=device.id,
        token=device.token,
        platform=device.platform,
        device_name=device.device_name,
        app_version=device.app_version,
        cities=device.cities,
        units=device.units,
        enabled=device.enabled,
        registered_at=device.registered_at,
        updated_at=device.updated_at,
    )


def _job_model(job: SchedulerJob) -> JobModel:
    next_run = engine.cron.next_run(job.id) if engine else None
    data: Dict[str, Any] = job.to_dict()
    data["next_run_at"] = next_run.isoformat() if next_run else None
    return JobModel(**data)


def _job_from_request(job_id: str, request: JobRequest) -> SchedulerJob:
    job = SchedulerJob(
        id=job_id,
        name=request.name,
        city=request.city.strip(),
        cron=request.cron,
        units=request.units,
        timezone=request.timezone,
        include_daily=request.include_daily,
        include_hourly=request.include_hourly,
        enabled=request.enabled,
        notify=NotifyConfig.from_dict(request.notify.model_dump()),
    )
    try:
        validate_job(job)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return job


# =============================================================================
# Endpoints
# =============================================================================

def get_uptime() -> str:
    """Get formatted uptime string."""
    if not start_time:
        return "N/A"
    delta = datetime.utcnow() - start_time
    hours, remainder = divmod(int(delta.total_seconds()), 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes}m {seconds}s"


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy" if db and engine and engine.is_running else "degraded",
        timestamp=datetime.utcnow().isoformat(),
        database="connected" if db else "disconnected",
        engine="running" if engine and engine.is_running else "stopped",
        uptime=get_uptime(),
    )


@app.get("/status", tags=["Health"])
async def get_status():
    """Engine status: snapshot size, invalid jobs, in-flight executions."""
    return _require_engine().get_status()


@app.post("/devices", response_model=DeviceModel, tags=["Devices"])
async def register_device(request: DeviceRegistration):
    """Register a device, or update the device holding the same token."""
    database = _require_db()
    if request.platform not in VALID_PLATFORMS:
        raise HTTPException(status_code=422, detail=f"Invalid platform: {request.platform}")
    if request.units not in VALID_UNITS:
        raise HTTPException(status_code=422, detail=f"Invalid units: {request.units}")
    device = Device(
        id=str(uuid.uuid4()),
        token=request.token,
        platform=request.platform,
        device_name=request.device_name,
        app_version=request.app_version,
        cities=[c.strip() for c in request.cities if c.strip()],
        units=request.units,
        enabled=request.enabled,
    )
    try:
        device = database.upsert_device(device)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _device_model(device)


@app.get("/devices", response_model=List[DeviceModel], tags=["Devices"])
async def list_devices():
    return [_device_model(d) for d in _require_db().get_all_devices()]


@app.delete("/devices/{token}", tags=["Devices"])
async def unregister_device(token: str):
    if not _require_db().delete_device(token):
        raise HTTPException(status_code=404, detail="Device not found")
    return {"deleted": True}


@app.post("/jobs", response_model=JobModel, status_code=201, tags=["Jobs"])
async def create_job(request: JobRequest):
    """Create a job; invalid cron expressions or timezones are rejected."""
    job = _job_from_request(str(uuid.uuid4()), request)
    _require_db().upsert_job(job)
    logger.info(f"Created job {job.id} ({job.name})")
    return _job_model(job)


@app.get("/jobs", response_model=List[JobModel], tags=["Jobs"])
async def list_jobs():
    return [_job_model(job) for job in _require_db().get_all_jobs()]


@app.get("/jobs/{job_id}", response_model=JobModel, tags=["Jobs"])
async def get_job(job_id: str):
    job = _require_db().get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_model(job)


@app.put("/jobs/{job_id}", response_model=JobModel, tags=["Jobs"])
async def update_job(job_id: str, request: JobRequest):
    database = _require_db()
    if not database.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    job = _job_from_request(job_id, request)
    database.upsert_job(job)
    logger.info(f"Updated job {job.id} ({job.name})")
    return _job_model(job)


@app.delete("/jobs/{job_id}", tags=["Jobs"])
async def delete_job(job_id: str):
    if not _require_db().delete_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    logger.info(f"Deleted job {job_id}")
    return {"deleted": True}


@app.get("/jobs/{job_id}/status", response_model=JobStatus, tags=["Jobs"])
async def get_job_status(job_id: str):
    """Last execution outcome of a job."""
    database = _require_db()
    if not database.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    run = database.get_job_run(job_id)
    if not run:
        return JobStatus(job_id=job_id)
    return JobStatus(**run)


@app.post("/jobs/{job_id}/run", response_model=RunResult, tags=["Jobs"])
def run_job(job_id: str):
    """Run a job immediately (blocks until the execution finishes)."""
    job = _require_db().get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    outcome = _require_engine().run_now(job)
    return RunResult(
        job_id=outcome.job_id,
        state=outcome.state.value,
        reason=outcome.reason.value if outcome.reason else None,
        notified=outcome.notified,
        failed=outcome.failed,
        error=outcome.error,
        permanent_failures=outcome.permanent_failures,
    )
