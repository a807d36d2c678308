"""FastAPI application exposing render job orchestration endpoints."""

from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Any, Awaitable, Callable, Mapping

import structlog
from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.responses import Response

from apps.framefleet.config import load_profile
from apps.framefleet.settings import OrchestratorSettings, build_orchestrator
from libraries import __version__
from libraries.render.base import RenderOrchestrationError
from libraries.render.service import RenderOrchestrator

logger = structlog.get_logger(__name__)


class APIErrorDetail(BaseModel):
    """Standardised error payload returned by the render API."""

    code: str = Field(
        ..., description="Machine readable error code identifying the failure."
    )
    message: str = Field(..., description="Human readable summary of what went wrong.")
    hint: str | None = Field(
        None, description="Optional remediation guidance for operators."
    )
    context: dict[str, Any] | None = Field(
        None, description="Structured context describing the failing request."
    )


class APIErrorResponse(BaseModel):
    """Envelope returned for failed render API requests."""

    error: APIErrorDetail


class StartJobResponse(BaseModel):
    """Response payload for a render start request."""

    job_id: str = Field(..., description="Identifier of the new or existing job.")
    status: str = Field(
        ..., description="'accepted' for a new job, 'duplicate' for a live match."
    )


@lru_cache
def get_settings() -> OrchestratorSettings:  # pragma: no cover - runtime wiring
    return OrchestratorSettings.from_profile(load_profile())


@lru_cache
def get_orchestrator() -> RenderOrchestrator:  # pragma: no cover - runtime wiring
    return build_orchestrator(get_settings())


def _error_response(
    status_code: int, detail: APIErrorDetail, *, path: str
) -> JSONResponse:
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "render.api.error",
        code=detail.code,
        message=detail.message,
        hint=detail.hint,
        context=detail.context,
        status=status_code,
        path=path,
    )
    return JSONResponse(
        status_code=status_code,
        content=APIErrorResponse(error=detail).model_dump(exclude_none=True),
    )


app = FastAPI(title="FrameFleet Render Service", version=__version__)


async def _sweep_periodically(orchestrator: RenderOrchestrator, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            result = await asyncio.to_thread(orchestrator.sweep)
        except RenderOrchestrationError as exc:
            logger.warning("render.api.sweep.failed", code=exc.code, error=str(exc))
        except Exception:
            logger.exception("render.api.sweep.crashed")
        else:
            logger.info("render.api.sweep.complete", **result.to_dict())


@app.on_event("startup")
async def start_stuck_job_sweeper() -> None:
    interval = get_settings().sweep_interval
    if interval <= 0:
        logger.info("render.api.sweep.disabled")
        return
    app.state.sweeper = asyncio.create_task(
        _sweep_periodically(get_orchestrator(), interval)
    )


@app.on_event("shutdown")
async def stop_stuck_job_sweeper() -> None:
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None
    get_orchestrator().close()


@app.exception_handler(RenderOrchestrationError)
async def orchestration_error_handler(
    request: Request, exc: RenderOrchestrationError
) -> JSONResponse:
    """Map orchestration errors to standardised JSON responses."""

    detail = APIErrorDetail(
        code=exc.code,
        message=exc.message,
        hint=exc.hint,
        context=exc.context or None,
    )
    return _error_response(exc.status_code, detail, path=str(request.url.path))


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    detail = APIErrorDetail(
        code="VALIDATION_ERROR",
        message="Request failed validation.",
        context={"errors": [str(error.get("msg", error)) for error in exc.errors()]},
    )
    return _error_response(422, detail, path=str(request.url.path))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("render.api.unexpected", path=str(request.url.path))
    detail = APIErrorDetail(
        code="INTERNAL_ERROR", message="Unexpected error while handling the request."
    )
    return JSONResponse(
        status_code=500,
        content=APIErrorResponse(error=detail).model_dump(exclude_none=True),
    )


@app.middleware("http")
async def log_requests(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    logger.info(
        "render.api.request.start", method=request.method, path=request.url.path
    )
    response = await call_next(request)
    logger.info(
        "render.api.request.complete",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
    )
    return response


@app.get("/health")  # type: ignore[misc]
def health(
    orchestrator: RenderOrchestrator = Depends(get_orchestrator),
) -> Mapping[str, Any]:
    return orchestrator.health()


@app.post("/jobs", response_model=StartJobResponse)  # type: ignore[misc]
def create_job(
    payload: dict[str, Any] = Body(...),
    orchestrator: RenderOrchestrator = Depends(get_orchestrator),
) -> JSONResponse:
    logger.info(
        "render.api.start.request",
        content_id=payload.get("content_id"),
        engine=payload.get("engine"),
    )
    result = orchestrator.start(payload)
    status_code = 202 if result.status == "accepted" else 200
    return JSONResponse(
        status_code=status_code,
        content=StartJobResponse(**result.to_dict()).model_dump(),
    )


@app.get("/jobs/{job_id}")  # type: ignore[misc]
def get_job(
    job_id: str,
    orchestrator: RenderOrchestrator = Depends(get_orchestrator),
) -> Mapping[str, Any]:
    return orchestrator.status(job_id).to_response()


@app.post("/admin/sweep")  # type: ignore[misc]
def sweep(
    stuck_minutes: int | None = Query(None, ge=1),
    orchestrator: RenderOrchestrator = Depends(get_orchestrator),
) -> Mapping[str, Any]:
    result = orchestrator.sweep(stuck_minutes=stuck_minutes)
    return {
        **result.to_dict(),
        "lock_acquired": result.lock_acquired,
        "lock_free": result.lock_free,
    }


__all__ = ["app", "get_orchestrator", "get_settings"]
