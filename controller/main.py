import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Mapping, Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from controller import __version__
from controller.chain_state import ReadinessState
from controller.config import as_int
from controller.errors import (
    ControllerError,
    DaemonRejected,
    ExecutionFailed,
    NotReady,
    QueueRejected,
    TransportError,
)
from controller.schemas import (
    ErrorResponse,
    HealthResponse,
    MineRequest,
    MineResponse,
    ResetResponse,
    StatusResponse,
)
from controller.service import ControllerService


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(env: Optional[Mapping[str, str]] = None, *, name: str = "controller") -> logging.Logger:
    """
    Attach handlers to the `name` logger tree once per process.

    CONTROLLER_LOG_LEVEL (or LOG_LEVEL) sets the level. CONTROLLER_LOG_FILE adds a
    rotating file next to stderr, sized by CONTROLLER_LOG_MAX_BYTES and
    CONTROLLER_LOG_BACKUP_COUNT.
    """
    env = os.environ if env is None else env
    tree = logging.getLogger(name)
    if tree.handlers:
        return tree

    level = logging.getLevelName((env.get("CONTROLLER_LOG_LEVEL") or env.get("LOG_LEVEL") or "INFO").upper())
    tree.setLevel(level if isinstance(level, int) else logging.INFO)
    tree.propagate = False

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    file_error: Optional[OSError] = None
    log_file = (env.get("CONTROLLER_LOG_FILE") or "").strip()
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    log_file,
                    maxBytes=as_int(env.get("CONTROLLER_LOG_MAX_BYTES"), default=10 * 1024 * 1024, floor=0),
                    backupCount=as_int(env.get("CONTROLLER_LOG_BACKUP_COUNT"), default=5, floor=0),
                )
            )
        except OSError as e:
            file_error = e

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        tree.addHandler(handler)
    if file_error is not None:
        tree.error("Cannot write CONTROLLER_LOG_FILE=%r, logging to stderr only: %s", log_file, file_error)
    return tree


configure_logging()
logger = logging.getLogger(__name__)


def _status_code_for(exc: ControllerError) -> int:
    if isinstance(exc, NotReady):
        return 503
    if isinstance(exc, QueueRejected):
        return 429
    if isinstance(exc, ExecutionFailed):
        return 504 if exc.classification == ExecutionFailed.AMBIGUOUS else 502
    if isinstance(exc, (DaemonRejected, TransportError)):
        return 502
    return 500


def _error_response(request: Request, status_code: int, body: dict) -> JSONResponse:
    body = dict(body)
    body["request_id"] = getattr(getattr(request, "state", None), "request_id", None)
    return JSONResponse(status_code=status_code, content=ErrorResponse(**body).model_dump(exclude_none=True))


def create_app(service: ControllerService, *, manage_lifecycle: bool = True) -> FastAPI:
    """
    Build the control API around an explicitly constructed service.

    With manage_lifecycle the service is started and stopped together with the
    application (uvicorn startup/shutdown, or a TestClient context).
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if manage_lifecycle:
            service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                service.stop()

    app = FastAPI(
        title="Regtest Block Controller",
        description="Control surface for a regtest bitcoind: status, on-demand mining, chain reset",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "Unhandled exception method=%s path=%s request_id=%s",
                request.method,
                request.url.path,
                request_id,
            )
            response = JSONResponse(
                status_code=500,
                content={"error": "internal_error", "detail": "Internal Server Error", "request_id": request_id},
            )
        duration_ms = (time.perf_counter() - start) * 1000.0

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s status=%s ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            getattr(response, "status_code", 0),
            duration_ms,
            request_id,
        )
        return response

    @app.exception_handler(ControllerError)
    async def controller_error_handler(request: Request, exc: ControllerError):
        return _error_response(request, _status_code_for(exc), exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "Unhandled exception (handler) method=%s path=%s", request.method, request.url.path
        )
        return _error_response(request, 500, {"error": "internal_error", "detail": "Internal Server Error"})

    @app.get("/status", response_model=StatusResponse)
    async def get_status() -> StatusResponse:
        """Cached readiness and tip. Never calls the daemon."""
        return StatusResponse(**service.status())

    @app.get("/health", response_model=HealthResponse, responses={503: {"model": HealthResponse}})
    async def health():
        state = service.tracker.state
        body = {"status": "ready" if state is ReadinessState.READY else "unavailable", "readiness": state.value}
        if state is ReadinessState.READY:
            return body
        return JSONResponse(status_code=503, content=body)

    @app.post(
        "/mine",
        response_model=MineResponse,
        responses={
            400: {"model": ErrorResponse},
            429: {"model": ErrorResponse},
            502: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
            504: {"model": ErrorResponse},
        },
    )
    async def mine(req: MineRequest, request: Request):
        """
        Mine `count` blocks. Not idempotent: repeating the call mines more blocks.
        """
        limit = service.config.max_blocks_per_request
        if req.count > limit:
            return _error_response(
                request,
                400,
                {"error": "invalid_request", "detail": f"count must be <= {limit}"},
            )
        result = await service.mine(req.count, correlation_id=request.state.request_id)
        return MineResponse(
            blocks=result.block_hashes,
            height=result.height,
            tip_hash=result.tip_hash,
            correlation_id=result.correlation_id,
        )

    @app.post(
        "/reset",
        response_model=ResetResponse,
        responses={429: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    )
    async def reset(request: Request):
        """Rewind the regtest chain to genesis."""
        result = await service.reset(correlation_id=request.state.request_id)
        return ResetResponse(height=result.height, tip_hash=result.tip_hash, correlation_id=result.correlation_id)

    return app
