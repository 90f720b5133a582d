"""
Supervisor FastAPI application.

Management surface for the supervised apps: start, stop, restart, reload and
remove apps, query instance status, and read captured output and lifecycle
history. Apps declared in the ecosystem file are started when the server starts.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .config import config
from .descriptor import AppDescriptor, load_descriptors, parse_descriptor
from .errors import LaunchError, UnknownAppError, ValidationError
from .models import InstanceEvent, LogEntry, database, initialize_db
from .monitor import resource_monitor
from .process import supervisor
from .state import ExitStatus, InstanceRecord, InstanceState

# Configure logging with rotation
log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

# Rotating file handler (auto-compaction)
file_handler = RotatingFileHandler(
    config.supervisor_log,
    maxBytes=config.log_max_bytes,
    backupCount=config.log_backup_count,
)
file_handler.setFormatter(log_formatter)

# Console handler
console_handler = logging.StreamHandler()
console_handler.setFormatter(log_formatter)

# Configure root logger
logging.basicConfig(
    level=logging.INFO,
    handlers=[file_handler, console_handler],
)
logger = logging.getLogger(__name__)


class LogWriter:
    """
    Buffers captured output and writes it to the database in batches.

    The supervisor calls it once per output line on the event loop; the
    inserts run in a worker thread so a chatty child never stalls the loop.
    """

    def __init__(self, flush_interval: float = 0.5, batch_size: int = 500):
        self.flush_interval = flush_interval
        self.batch_size = batch_size
        self._pending: list[dict] = []
        self._task: Optional[asyncio.Task] = None

    def __call__(self, app_name: str, instance: int, level: str, message: str):
        self._pending.append(
            {
                "app_name": app_name,
                "instance": instance,
                "level": level,
                "message": message[:2000],
                "timestamp": datetime.now(),
            }
        )

    async def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())

    async def stop(self):
        """Stop the flush loop and write whatever is still buffered."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def flush(self):
        while self._pending:
            batch = self._pending[: self.batch_size]
            del self._pending[: self.batch_size]
            await asyncio.to_thread(_insert_log_entries, batch)

    async def _flush_loop(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Error writing captured output: {e}")


def _insert_log_entries(rows: list[dict]):
    with database.atomic():
        LogEntry.insert_many(rows).execute()


log_writer = LogWriter()


def event_callback(app_name: str, instance: int, kind: str, message: str, status: Optional[ExitStatus]):
    InstanceEvent.create(
        app_name=app_name,
        instance=instance,
        kind=kind,
        message=message,
        exit_code=status.returncode if status else None,
        signal=status.signal_name if status else None,
    )


async def start_declared_apps(apps_file: Path):
    """Start every app in the ecosystem file; a bad app never blocks the others."""
    if not apps_file.exists():
        logger.warning(f"No ecosystem file at {apps_file}, starting with no apps")
        return

    try:
        descriptors = load_descriptors(apps_file)
    except ValidationError as e:
        logger.error(str(e))
        return

    for descriptor in descriptors:
        logger.info(f"Starting app: {descriptor.name}")
        try:
            await supervisor.start(descriptor)
        except (ValidationError, LaunchError) as e:
            logger.error(f"Failed to start app {descriptor.name}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting supervisor...")
    initialize_db()

    supervisor.set_log_callback(log_writer)
    supervisor.set_event_callback(event_callback)
    await log_writer.start()
    await supervisor.open()
    await start_declared_apps(Path(config.apps_file))
    await resource_monitor.start()

    yield

    # Shutdown
    logger.info("Shutting down supervisor...")
    await resource_monitor.stop()
    await supervisor.shutdown()
    await log_writer.stop()


app = FastAPI(
    title="App Supervisor",
    description="Process supervisor for apps declared in an ecosystem file",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class InstanceResponse(BaseModel):
    app: str
    instance: int
    state: str
    pid: Optional[int] = None
    started_at: Optional[str] = None
    uptime_seconds: float = 0.0
    restart_count: int = 0
    last_exit: Optional[dict] = None
    alert: Optional[str] = None
    cpu_percent: float = 0.0
    memory_mb: float = 0.0
    child_processes: int = 0


class AppResponse(BaseModel):
    name: str
    working_directory: str
    entry_point: str
    instance_count: int
    auto_restart: bool
    watch_enabled: bool
    instances: list[InstanceResponse] = []


# Apps
@app.get("/api/apps", response_model=list[AppResponse])
async def list_apps():
    """List all registered apps with their instances."""
    return [_app_response(descriptor) for descriptor in supervisor.descriptors()]


@app.post("/api/apps", response_model=AppResponse)
async def create_app(data: dict[str, Any] = Body(...)):
    """Register a new app from a descriptor and start it."""
    try:
        descriptor = parse_descriptor(data)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if descriptor.name in {d.name for d in supervisor.descriptors()}:
        raise HTTPException(status_code=409, detail=f"App '{descriptor.name}' already exists")

    await _run(supervisor.start(descriptor))
    return _app_response(descriptor)


@app.get("/api/apps/{name}", response_model=AppResponse)
async def get_app(name: str):
    """Get one app with the status of each instance."""
    return _app_response(_get_descriptor(name))


@app.delete("/api/apps/{name}")
async def delete_app(name: str):
    """Stop an app and unregister it."""
    _get_descriptor(name)
    await supervisor.remove(name)
    return {"status": "deleted", "name": name}


# App control
@app.post("/api/apps/{name}/start", response_model=AppResponse)
async def start_app(name: str):
    """Start every instance of an app."""
    descriptor = _get_descriptor(name)
    await _run(supervisor.start(descriptor))
    return _app_response(descriptor)


@app.post("/api/apps/{name}/stop", response_model=AppResponse)
async def stop_app(name: str):
    """Stop every instance of an app."""
    descriptor = _get_descriptor(name)
    await supervisor.stop(name)
    return _app_response(descriptor)


@app.post("/api/apps/{name}/restart", response_model=AppResponse)
async def restart_app(name: str):
    """Stop and start every instance, clearing any restart-budget alert."""
    descriptor = _get_descriptor(name)
    await _run(supervisor.restart(name))
    return _app_response(descriptor)


@app.post("/api/apps/{name}/reload", response_model=AppResponse)
async def reload_app(name: str, data: Optional[dict[str, Any]] = Body(None)):
    """Cycle instances one at a time, optionally with a new descriptor."""
    descriptor = _get_descriptor(name)
    if data:
        data = {**data, "name": name}
        try:
            descriptor = parse_descriptor(data)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))

    await _run(supervisor.reload(descriptor))
    return _app_response(descriptor)


# Logs
@app.get("/api/apps/{name}/logs")
async def get_app_logs(
    name: str,
    instance: Optional[int] = Query(None, ge=0),
    level: Optional[str] = Query(None, description="Filter by level: info, warning, error"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Get captured output history for an app."""
    _get_descriptor(name)
    query = LogEntry.select().where(LogEntry.app_name == name)
    if instance is not None:
        query = query.where(LogEntry.instance == instance)
    if level:
        query = query.where(LogEntry.level == level)

    logs = query.order_by(LogEntry.timestamp.desc(), LogEntry.id.desc()).offset(offset).limit(limit)
    return [log.to_dict() for log in logs]


@app.get("/api/apps/{name}/logs/tail")
async def tail_app_logs(
    name: str,
    instance: Optional[int] = Query(None, ge=0),
    lines: int = Query(100, ge=1, le=1000),
):
    """Get the most recent output lines held in memory."""
    _get_descriptor(name)
    return [line.to_dict() for line in supervisor.logs(name, instance=instance, lines=lines)]


@app.get("/api/apps/{name}/events")
async def get_app_events(
    name: str,
    instance: Optional[int] = Query(None, ge=0),
    limit: int = Query(100, ge=1, le=1000),
):
    """Get lifecycle event history for an app."""
    _get_descriptor(name)
    query = InstanceEvent.select().where(InstanceEvent.app_name == name)
    if instance is not None:
        query = query.where(InstanceEvent.instance == instance)

    events = query.order_by(InstanceEvent.timestamp.desc(), InstanceEvent.id.desc()).limit(limit)
    return [event.to_dict() for event in events]


# Status overview
@app.get("/api/status")
async def get_status():
    """Get overview of all apps."""
    records = supervisor.status()
    apps = {}
    for record in records:
        summary = apps.setdefault(record.app_name, {"name": record.app_name, "instances": 0, "running": 0, "errored": 0})
        summary["instances"] += 1
        if record.state == InstanceState.RUNNING:
            summary["running"] += 1
        elif record.state == InstanceState.ERRORED:
            summary["errored"] += 1

    return {
        "apps": list(apps.values()),
        "total": len(apps),
        "instances": len(records),
        "running": sum(a["running"] for a in apps.values()),
        "alerts": [{"app": r.app_name, "instance": r.index, "alert": r.alert} for r in records if r.alert],
    }


# Supervisor logs
@app.get("/api/supervisor/logs")
async def get_supervisor_logs(lines: int = Query(100, ge=1, le=1000)):
    """Get recent supervisor log entries."""
    try:
        with open(config.supervisor_log, "r") as f:
            all_lines = f.readlines()
            return {"lines": all_lines[-lines:], "total": len(all_lines)}
    except FileNotFoundError:
        return {"lines": [], "total": 0}


# Helper functions
def _get_descriptor(name: str) -> AppDescriptor:
    try:
        return supervisor.get_descriptor(name)
    except UnknownAppError as e:
        raise HTTPException(status_code=404, detail=str(e))


async def _run(operation):
    """Await a supervisor operation, mapping its errors to HTTP errors."""
    try:
        return await operation
    except UnknownAppError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except LaunchError as e:
        raise HTTPException(status_code=500, detail=str(e))


def _instance_response(record: InstanceRecord) -> dict:
    """Convert an instance record to a response dict with resource usage."""
    data = record.to_dict()
    data.update(resource_monitor.get_usage(record.pid))
    return data


def _app_response(descriptor: AppDescriptor) -> dict:
    """Convert a descriptor to a response dict with its instances."""
    return {
        "name": descriptor.name,
        "working_directory": str(descriptor.working_directory),
        "entry_point": descriptor.entry_point,
        "instance_count": descriptor.instance_count,
        "auto_restart": descriptor.auto_restart,
        "watch_enabled": descriptor.watch_enabled,
        "instances": [_instance_response(r) for r in supervisor.table.snapshot(descriptor.name)],
    }
