"""Health and status endpoints for the svclink controller.

``/healthz`` answers as long as the process is up, ``/readyz`` once a
sync cycle has completed without aborting, and ``/status`` returns the
last cycle report.
"""

from __future__ import annotations

import logging
import threading

import uvicorn
from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from svclink import __version__
from svclink.controller import Controller
from svclink.models import CycleReport

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

_controller: Controller | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str


class StatusResponse(BaseModel):
    """Last cycle report plus the effective sync settings."""

    version: str
    sync_interval: float
    included_namespaces: list[str]
    sync_services_to_local_cluster: bool
    last_cycle: CycleReport | None = None


def init_router(controller: Controller) -> None:
    global _controller  # noqa: PLW0603
    _controller = controller


@router.get("/healthz", response_model=HealthResponse)
def healthz() -> HealthResponse:
    return HealthResponse(version=__version__)


@router.get("/readyz")
def readyz() -> JSONResponse:
    report = _controller.last_report if _controller else None
    if report is None or report.aborted:
        reason = "no sync cycle completed yet" if report is None else "last sync cycle aborted"
        return JSONResponse({"status": "not ready", "reason": reason}, status_code=503)
    return JSONResponse({"status": "ready", "errors": len(report.errors)})


@router.get("/status", response_model=StatusResponse)
def status() -> StatusResponse:
    if _controller is None:
        return StatusResponse(
            version=__version__,
            sync_interval=0.0,
            included_namespaces=[],
            sync_services_to_local_cluster=False,
        )
    cfg = _controller.config
    return StatusResponse(
        version=__version__,
        sync_interval=cfg.sync_interval,
        included_namespaces=list(cfg.included_namespaces),
        sync_services_to_local_cluster=cfg.sync_services_to_local_cluster,
        last_cycle=_controller.last_report,
    )


def create_app(controller: Controller) -> FastAPI:
    """Build the health application for *controller*."""
    init_router(controller)
    app = FastAPI(title="svclink", version=__version__, docs_url=None, redoc_url=None)
    app.include_router(router)
    return app


def serve_in_background(app: FastAPI, host: str, port: int) -> tuple[uvicorn.Server, threading.Thread]:
    """Start uvicorn on a daemon thread. Set ``server.should_exit`` to stop it."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="svclink-health", daemon=True)
    thread.start()
    logger.info("Serving health endpoints on http://%s:%d", host, port)
    return server, thread
