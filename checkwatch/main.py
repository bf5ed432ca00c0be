import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkwatch.db import engine
from checkwatch.errors import ApiError, error_response
from checkwatch.logging_utils import setup_json_logging
from checkwatch.routers import admin, check_ins
from checkwatch.services.dispatch import drain_side_effects
from checkwatch.services.missed_checkins import detect_missed_check_ins
from checkwatch.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from checkwatch.services.transfers import process_transfers
from checkwatch.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("checkwatch.request")
worker_logger = logging.getLogger("checkwatch.worker")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor_id = request.headers.get("X-Actor-Id") or "system"

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor_id": getattr(request.state, "actor_id", "system"),
                "person_id": getattr(request.state, "person_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(admin.router)
app.include_router(check_ins.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


def _worker_interval_seconds() -> int:
    return max(15, int(settings.worker_interval_seconds))


async def _worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = _worker_interval_seconds()
    while not stop_event.is_set():
        try:
            now_utc = datetime.now(timezone.utc)
            transfers = await asyncio.to_thread(process_transfers, now_utc)
            detection = await asyncio.to_thread(detect_missed_check_ins, now_utc)
            drained = await asyncio.to_thread(drain_side_effects)
        except Exception:
            worker_logger.exception("worker_tick_failed")
        else:
            if transfers.processed or transfers.cancelled or detection.detected or drained.persisted:
                worker_logger.info(
                    "worker_tick",
                    extra={
                        "transfers_processed": transfers.processed,
                        "transfers_cancelled": transfers.cancelled,
                        "transfers_failed": transfers.failed,
                        "missed_check_ins_detected": detection.detected,
                        "side_effects_persisted": drained.persisted,
                        "side_effects_failed": drained.failed,
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    worker_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_worker() -> None:
    if not settings.worker_enabled:
        return
    if getattr(app.state, "worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_worker_loop(stop_event))
    app.state.worker_stop_event = stop_event
    app.state.worker_task = task
    worker_logger.info(
        "worker_started",
        extra={"interval_seconds": _worker_interval_seconds()},
    )


@app.on_event("shutdown")
async def stop_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.worker_stop_event = None
    app.state.worker_task = None
    # Flush whatever the last tick left behind.
    try:
        await asyncio.to_thread(drain_side_effects)
    except Exception:
        worker_logger.exception("shutdown_drain_failed")


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
    }
