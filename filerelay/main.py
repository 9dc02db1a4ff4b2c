import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException

from filerelay.config import Settings, get_settings
from filerelay.ingest import FileIngestor, format_file_size
from filerelay.models import FileInfoResponse
from filerelay.proxy import Disposition, StreamProxy
from filerelay.registry import FileNotFound, FileRegistry
from filerelay.resolver import ResolutionError, TelegramResolver, UpstreamRateLimited

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    settings = settings or get_settings()

    client = httpx.AsyncClient(transport=transport, follow_redirects=True)
    registry = FileRegistry(record_ttl_seconds=settings.record_ttl_seconds)
    resolver = TelegramResolver(
        bot_token=settings.telegram_bot_token,
        client=client,
        api_base=settings.telegram_api_base,
        timeout=settings.resolve_timeout_seconds,
    )
    proxy = StreamProxy(
        registry=registry,
        resolver=resolver,
        client=client,
        chunk_size=settings.chunk_size_bytes,
        connect_timeout=settings.resolve_timeout_seconds,
        idle_timeout=settings.stream_idle_timeout_seconds,
    )
    ingestor = FileIngestor(
        registry,
        public_base_url=settings.public_base_url,
        max_file_size_bytes=settings.max_file_size_bytes,
        route_prefix=settings.route_prefix,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await client.aclose()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.registry = registry
    app.state.ingestor = ingestor

    @app.get("/")
    def root() -> dict:
        return {"status": "ok", "service": settings.app_name}

    def error_response(status_code: int, message: str) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"error": message})

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):
        message = str(exc.detail) if exc.detail else "request failed"
        return error_response(exc.status_code, message)

    @app.exception_handler(FileNotFound)
    async def file_not_found_handler(_: Request, exc: FileNotFound):
        return PlainTextResponse("File not found", status_code=404)

    @app.exception_handler(ResolutionError)
    async def resolution_error_handler(request: Request, exc: ResolutionError):
        logger.warning("Upstream failure on %s: %s", request.url.path, exc)
        headers = {}
        if isinstance(exc, UpstreamRateLimited) and exc.retry_after:
            headers["Retry-After"] = str(exc.retry_after)
        return PlainTextResponse(exc.reason, status_code=502, headers=headers)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "environment": settings.app_env, "files": len(registry)}

    router = APIRouter(prefix=settings.route_prefix.rstrip("/"))

    @router.get("/stream/{key}")
    async def stream_file(key: str, request: Request):
        return await proxy.open(key, Disposition.INLINE, range_header=request.headers.get("range"))

    @router.get("/download/{key}")
    async def download_file(key: str, request: Request):
        return await proxy.open(key, Disposition.ATTACHMENT, range_header=request.headers.get("range"))

    @router.get("/api/file/{key}", response_model=FileInfoResponse)
    def file_info(key: str):
        try:
            record = registry.lookup(key)
        except FileNotFound:
            return error_response(404, "File not found")
        return FileInfoResponse(
            file_name=record.display_name,
            file_size=record.size_bytes,
            file_size_formatted=format_file_size(record.size_bytes),
            mime_type=record.mime_type,
            uploaded_at=record.created_at,
        )

    app.include_router(router)

    return app


app = create_app()
