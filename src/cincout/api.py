"""FastAPI application — one-shot job endpoints and the interactive session WebSocket."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cincout.config import CinCoutConfig, load_config
from cincout.errors import (
    CapacityExceededError,
    InputRejectedError,
    ToolchainUnavailableError,
    WorkspaceError,
)
from cincout.models import Action, Job, JobRequest, JobResult, MemoryExceeded, TimedOut, ToolError
from cincout.runtime.pipeline import JobPipeline
from cincout.session.channel import WebSocketChannel
from cincout.session.supervisor import SessionSupervisor
from cincout.utils.logging import get_logger

logger = get_logger(__name__)

RETRY_AFTER_SECONDS = 1


def status_for(result: JobResult) -> int:
    """HTTP status for a finished job. A non-zero program exit is still a 200."""
    outcome = result.outcome
    if isinstance(outcome, ToolError):
        return 422
    if isinstance(outcome, TimedOut):
        return 408
    if isinstance(outcome, MemoryExceeded):
        return 413
    return 200


def _error(status: int, error: str, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": error, "message": message}, headers=headers)


def create_app(config: CinCoutConfig | None = None) -> FastAPI:
    """Create the HTTP/WebSocket application.

    Args:
        config: Configuration; loaded from the environment when omitted.

    Returns:
        Configured FastAPI app. The pipeline and session supervisor live on ``app.state``.
    """
    config = config or load_config()
    pipeline = JobPipeline(config)
    sessions = SessionSupervisor(config, pipeline)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("cincout_started", host=config.host, port=config.port, max_jobs=config.max_concurrent_jobs)
        yield
        await sessions.shutdown()
        logger.info("cincout_stopped")

    app = FastAPI(title="cincout", lifespan=lifespan)
    app.state.config = config
    app.state.pipeline = pipeline
    app.state.sessions = sessions

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(_request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        return _error(400, "input_rejected", f"Invalid request field {location}: {first.get('msg', 'invalid')}")

    @app.exception_handler(InputRejectedError)
    async def _input_rejected(_request: Request, exc: InputRejectedError) -> JSONResponse:
        return _error(400, "input_rejected", exc.reason)

    @app.exception_handler(CapacityExceededError)
    async def _capacity(_request: Request, exc: CapacityExceededError) -> JSONResponse:
        return _error(503, "capacity", str(exc), headers={"Retry-After": str(RETRY_AFTER_SECONDS)})

    @app.exception_handler(ToolchainUnavailableError)
    async def _toolchain(_request: Request, exc: ToolchainUnavailableError) -> JSONResponse:
        logger.error("toolchain_unavailable", error=str(exc))
        return _error(503, "toolchain_unavailable", str(exc))

    @app.exception_handler(WorkspaceError)
    async def _workspace(_request: Request, exc: WorkspaceError) -> JSONResponse:
        logger.exception("workspace_failure", exc_info=exc)
        return _error(500, "internal", "Internal server error")

    async def _run(request: JobRequest, action: Action) -> JSONResponse:
        job = Job.from_request(request.model_copy(update={"action": action}))
        result = await pipeline.run(job)
        return JSONResponse(status_code=status_for(result), content=result.model_dump(mode="json"))

    @app.get("/health")
    async def health() -> dict:
        return {
            "ok": True,
            "sessions": len(sessions.sessions),
            "active_jobs": pipeline.limiter.active,
            "max_jobs": pipeline.limiter.max_jobs,
            "workspaces": len(pipeline.workspaces.active()),
        }

    @app.post("/api/jobs")
    async def submit_job(request: JobRequest) -> JSONResponse:
        return await _run(request, request.action)

    @app.post("/api/{action}")
    async def submit_action(action: Action, request: JobRequest) -> JSONResponse:
        return await _run(request, action)

    @app.websocket("/ws")
    async def session_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        await sessions.serve(WebSocketChannel(websocket))

    return app
