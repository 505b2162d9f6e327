"""
Gateway supervisor FastAPI application.

Provides the control surface for the supervised gateway: status and health
reports, an asynchronous restart, a synchronous skills sync, and the
messaging webhook endpoint. The lifespan handler starts initialization in
the background (initial skills sync, scheduler, gateway) so the API reports
"initializing" meanwhile; on shutdown it stops the gateway without
restarting it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .config import Config
from .models import AgentIdentity, SyncStatus
from .monitor import ResourceMonitor
from .process import ProcessSupervisor
from .scheduler import SyncScheduler
from .secret_store import SecretResolver
from .sync import SkillSynchronizer
from .workspace import agent_identity, install_gateway

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: Config):
    """Log to the console and to a rotating file in the data directory."""
    log_formatter = logging.Formatter(LOG_FORMAT)
    config.data_dir.mkdir(parents=True, exist_ok=True)

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

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        handlers=[file_handler, console_handler],
    )


@dataclass
class Runtime:
    """The components of one supervisor, wired together."""

    config: Config
    identity: AgentIdentity
    secrets: SecretResolver
    synchronizer: SkillSynchronizer
    supervisor: ProcessSupervisor
    scheduler: SyncScheduler
    monitor: ResourceMonitor
    initialized: bool = False
    startup_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @classmethod
    def from_config(cls, config: Config) -> "Runtime":
        secrets = SecretResolver.from_config(config)
        synchronizer = SkillSynchronizer.from_config(config, secrets)
        supervisor = ProcessSupervisor.from_config(config, skills_lock=synchronizer.publish_lock)
        scheduler = SyncScheduler(
            synchronizer,
            supervisor,
            period=config.skills_sync_interval,
            schedule=config.skills_sync_schedule or None,
        )
        return cls(
            config=config,
            identity=agent_identity(config),
            secrets=secrets,
            synchronizer=synchronizer,
            supervisor=supervisor,
            scheduler=scheduler,
            monitor=ResourceMonitor(supervisor, config.skills_dir),
        )

    async def startup(self):
        logger.info(f"Initializing gateway supervisor for {self.identity.name}...")

        if self.config.gateway_install_command:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, install_gateway, self.config)

        if self.synchronizer.enabled:
            # The gateway is not running yet, so an update needs no restart.
            await self.scheduler.trigger_now(restart_on_update=False)
            self.scheduler.arm()

        # Shielded so a shutdown arriving mid-spawn still finds the child to stop.
        await asyncio.shield(self.supervisor.start())
        self.initialized = True
        logger.info(f"{self.identity.name} initialization complete!")

    def begin_startup(self) -> asyncio.Task:
        """Run startup in the background so the control surface answers while it runs."""
        self.startup_task = asyncio.create_task(self.startup())
        self.startup_task.add_done_callback(_log_startup_failure)
        return self.startup_task

    async def shutdown(self):
        logger.info("Shutting down gateway supervisor...")
        self.initialized = False
        if self.startup_task is not None and not self.startup_task.done():
            self.startup_task.cancel()
            await asyncio.wait({self.startup_task})
        await self.scheduler.disarm()
        await self.supervisor.shutdown()


def _log_startup_failure(task: asyncio.Task):
    if task.cancelled():
        logger.info("Initialization cancelled by shutdown")
    elif task.exception() is not None:
        logger.error(f"Initialization failed: {task.exception()}", exc_info=task.exception())


# Pydantic models for API
class RestartRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the restart was requested (logged)")


router = APIRouter()


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _status(runtime: Runtime) -> dict:
    return {
        "agent": runtime.identity.name,
        "workspace": str(runtime.identity.workspace),
        "status": "running" if runtime.initialized else "initializing",
        "gateway": runtime.supervisor.status().value,
        "pid": runtime.supervisor.pid,
        "skills_sync": {
            "enabled": runtime.synchronizer.enabled,
            "armed": runtime.scheduler.armed,
            "in_progress": runtime.scheduler.in_progress,
        },
        "timestamp": datetime.now().isoformat(),
    }


@router.get("/")
@router.get("/status")
async def get_status(request: Request):
    """Agent identity, gateway state and scheduler flag."""
    return _status(_runtime(request))


@router.get("/health")
def get_health(request: Request):
    """Status plus resource metrics and the last sync outcome."""
    runtime = _runtime(request)
    last = runtime.scheduler.last_outcome
    return {
        **_status(runtime),
        "health": "healthy",
        "services": {
            "supervisor": "running",
            "gateway": "running" if runtime.supervisor.is_running() else "stopped",
            "skills_sync": "enabled" if runtime.synchronizer.enabled else "disabled",
        },
        "supervisor": runtime.monitor.supervisor_metrics(),
        "gateway_metrics": runtime.monitor.gateway_metrics(),
        "skills": runtime.monitor.skills_metrics(),
        "last_sync": last.to_dict() if last else None,
        "dropped_ticks": runtime.scheduler.dropped_ticks,
    }


@router.post("/restart", status_code=202)
async def restart_gateway(request: Request, data: Optional[RestartRequest] = None):
    """Request a gateway restart. Returns before the restart completes."""
    runtime = _runtime(request)
    reason = (data.reason if data else None) or "api"
    logger.info(f"Restart requested via API ({reason})")
    scheduled = runtime.supervisor.request_restart(reason)
    return {
        "message": "Gateway restart initiated" if scheduled else "Gateway restart already in progress",
        "agent": runtime.identity.name,
        "scheduled": scheduled,
    }


@router.post("/sync-skills")
@router.post("/sync-now")
async def sync_skills(request: Request):
    """Run a skills sync now and report its outcome."""
    runtime = _runtime(request)
    logger.info("Skills sync requested via API")
    outcome = await runtime.scheduler.trigger_now()
    body = {"agent": runtime.identity.name, **outcome.to_dict()}
    if outcome.status is SyncStatus.FAILED:
        raise HTTPException(status_code=500, detail={"error": "Skills sync failed", **body})
    return body


@router.api_route("/webhook/whatsapp", methods=["GET", "POST"])
async def whatsapp_webhook(request: Request):
    """Acknowledge webhook deliveries for the agent."""
    runtime = _runtime(request)
    return {
        "message": f"WhatsApp webhook for {runtime.identity.name} received",
        "timestamp": datetime.now().isoformat(),
    }


def create_app(config: Config, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI application for one supervisor."""
    runtime = runtime or Runtime.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        runtime.begin_startup()
        yield
        await runtime.shutdown()

    app = FastAPI(
        title="Gateway Supervisor",
        description="Supervisor for a messaging gateway agent and its skills",
        version=__version__,
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
    app.state.runtime = runtime
    app.include_router(router)
    return app
