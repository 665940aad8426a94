"""Isoflow HTTP agent.

Exposes start/stop/status for a host over HTTP so a controller can drive
several hosts. Each request runs the same orchestrator the CLI uses;
concurrent requests for one (uplink, vlan) scope are rejected with 409.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from isoflow import __version__
from isoflow.config import settings
from isoflow.errors import IsoflowError, ResolutionError, SegmentBusyError, ValidationError
from isoflow.lifecycle import LifecycleOrchestrator
from isoflow.logging_config import setup_logging
from isoflow.metrics import get_metrics
from isoflow.models import BackendKind
from isoflow.providers import close_backends
from isoflow.schemas import ErrorResponse, ProvisionRequest, StartResponse, StatusResponse, StopResponse

setup_logging()

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[ProvisionRequest], LifecycleOrchestrator]


def get_orchestrator_factory() -> OrchestratorFactory:
    """Dependency returning how orchestrators are built (overridden in tests)."""
    return LifecycleOrchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - close backend connections on shutdown."""
    logger.info(f"Isoflow agent {__version__} starting (bridge {settings.ovs_bridge_name})")
    yield
    await close_backends()
    logger.info("Isoflow agent shutting down")


app = FastAPI(
    title="Isoflow Agent",
    version=__version__,
    lifespan=lifespan,
)


def _error(status_code: int, error: IsoflowError) -> JSONResponse:
    body = ErrorResponse(error=type(error).__name__, detail=str(error), resource=error.resource)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(SegmentBusyError)
async def segment_busy_handler(request: Request, exc: SegmentBusyError) -> JSONResponse:
    return _error(409, exc)


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(422, exc)


@app.exception_handler(ResolutionError)
async def resolution_handler(request: Request, exc: ResolutionError) -> JSONResponse:
    return _error(422, exc)


@app.exception_handler(IsoflowError)
async def isoflow_error_handler(request: Request, exc: IsoflowError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return _error(500, exc)


# --- Health Endpoints ---

@app.get("/healthz")
def healthz():
    """Basic health check."""
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics")
def metrics():
    """Prometheus metrics endpoint."""
    content, content_type = get_metrics()
    return Response(content=content, media_type=content_type)


# --- Lifecycle Endpoints ---

@app.post("/start", response_model=StartResponse)
async def start(
    request: ProvisionRequest,
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> StartResponse:
    """Bring up segment, endpoints and isolation flows.

    Partial isolation is still a 200; the body lists the failures.
    """
    logger.info(f"Start requested: vlan {request.vlan_id}, {request.count} {request.backend.value} endpoint(s)")
    report = await factory(request).start()
    return report.to_response()


@app.post("/stop", response_model=StopResponse)
async def stop(
    request: ProvisionRequest,
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> StopResponse:
    """Tear the scope down; resources that could not be removed are listed in errors."""
    logger.info(f"Stop requested: vlan {request.vlan_id} ({request.backend.value})")
    report = await factory(request).stop()
    return report.to_response()


@app.get("/status", response_model=StatusResponse)
async def status(
    vlan_id: int,
    interface: str | None = None,
    mac: str | None = None,
    backend: BackendKind = BackendKind.VM,
    factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> StatusResponse:
    raw = {"vlan_id": vlan_id, "interface": interface, "uplink_mac": mac, "backend": backend}
    request = ProvisionRequest.parse(**{k: v for k, v in raw.items() if v is not None})
    report = await factory(request).status()
    return report.to_response()


def run() -> None:
    """Serve the agent with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=settings.agent_host, port=settings.agent_port, log_config=None)


if __name__ == "__main__":
    run()
