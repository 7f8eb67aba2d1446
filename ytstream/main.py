import contextvars
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Any, AsyncIterator, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ytstream.downloader import DownloadOrchestrator, run_blocking
from ytstream.engine import YtDlpEngine, engine_version
from ytstream.errors import DownloadError
from ytstream.formats import DEFAULT_FORMAT, derive_filename, resolve
from ytstream.metadata import describe_formats, resolve_title, video_details
from ytstream.settings import APP_TITLE, Settings
from ytstream.streaming import serve
from ytstream.validation import validate_source_url
from ytstream.workspace import Workspace, WorkspaceSweeper

try:
    YTSTREAM_VERSION: Optional[str] = version("ytstream")
except PackageNotFoundError:
    YTSTREAM_VERSION = None

_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")

logger = logging.getLogger("ytstream")


class RequestIdFilter(logging.Filter):
    """Attach request_id to all log records for correlation."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get()
        return True


def configure_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIdFilter())
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s",
        handlers=[handler],
    )


class RequestLoggingMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get("x-request-id") or str(uuid.uuid4())
        token = _request_id_ctx.set(request_id)
        start = time.monotonic()
        status_code = 500

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                MutableHeaders(scope=message).append("X-Request-ID", request_id)
            await send(message)

        logger.info("Request start method=%s path=%s", scope["method"], scope["path"])
        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                "Request end method=%s path=%s status=%d elapsed_ms=%d",
                scope["method"],
                scope["path"],
                status_code,
                elapsed_ms,
            )
            _request_id_ctx.reset(token)


async def download_error_handler(request: Request, exc: DownloadError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s failed with %s: %s", request.url.path, exc.code, exc.message)
    else:
        logger.info("%s rejected with %s: %s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


router = APIRouter(prefix="/api")


async def fetch_info(request: Request, url: str) -> Dict[str, Any]:
    state = request.app.state
    return await run_blocking(
        state.engine.extract_info, url, timeout=state.settings.metadata_timeout_seconds
    )


@router.get("/health")
async def health() -> Dict[str, str]:
    payload: Dict[str, str] = {
        "status": "OK",
        "message": "YouTube Downloader API is running",
    }
    if YTSTREAM_VERSION:
        payload["version"] = YTSTREAM_VERSION
    engine = engine_version()
    if engine:
        payload["engine"] = engine
    return payload


@router.get("/video-info")
async def video_info(request: Request, url: Optional[str] = Query(None)) -> Dict[str, Any]:
    source_url = validate_source_url(url, request.app.state.settings.allowed_url_pattern)
    info = await fetch_info(request, source_url)
    return video_details(info)


@router.get("/formats")
async def formats(request: Request, url: Optional[str] = Query(None)) -> List[Dict[str, Any]]:
    source_url = validate_source_url(url, request.app.state.settings.allowed_url_pattern)
    info = await fetch_info(request, source_url)
    return describe_formats(info)


@router.get("/download")
async def download(
    request: Request,
    url: Optional[str] = Query(None),
    media_format: str = Query(DEFAULT_FORMAT, alias="format"),
) -> Response:
    state = request.app.state
    source_url = validate_source_url(url, state.settings.allowed_url_pattern)
    resolved = resolve(media_format)

    info = await fetch_info(request, source_url)
    filename = derive_filename(resolve_title(info), resolved.declared_output_ext)

    workspace: Workspace = state.workspace
    artifact = await run_in_threadpool(workspace.allocate, resolved.expected_output_ext)
    try:
        source = await state.orchestrator.run(
            source_url, resolved, artifact, is_disconnected=request.is_disconnected
        )
    except BaseException:
        await workspace.release_async(artifact)
        raise

    return await serve(
        source,
        artifact,
        workspace,
        media_type=resolved.declared_mime_type,
        filename=filename,
    )


def create_app(
    settings: Optional[Settings] = None, engine: Optional[YtDlpEngine] = None
) -> FastAPI:
    settings = settings or Settings.from_env()
    engine = engine or YtDlpEngine(settings)
    workspace = Workspace(
        settings.downloads_dir,
        retention_seconds=settings.retention_seconds,
        fragment_marker=settings.fragment_marker,
    )
    sweeper = WorkspaceSweeper(workspace, settings.sweep_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        workspace.ensure_ready()
        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()

    app = FastAPI(title=APP_TITLE, version=YTSTREAM_VERSION or "0.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.workspace = workspace
    app.state.sweeper = sweeper
    app.state.orchestrator = DownloadOrchestrator(
        engine,
        chunk_size=settings.stream_chunk_size,
        timeout_seconds=settings.download_timeout_seconds,
        poll_seconds=settings.disconnect_poll_seconds,
        workspace=workspace,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(DownloadError, download_error_handler)
    app.include_router(router)

    if settings.static_dir and settings.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=settings.static_dir, html=True), name="client")
    return app


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


def run() -> None:
    logger.info("Starting uvicorn host=%s port=%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
