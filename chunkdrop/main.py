import asyncio
import re
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from sqlalchemy.orm import Session

from chunkdrop.auth import AuthUser, optional_api_user, require_admin_user, require_api_user
from chunkdrop.config import settings
from chunkdrop.db import SessionLocal, create_schema, get_db
from chunkdrop.errors import (
    ChunkdropError,
    InvalidHeaders,
    NotFound,
    PayloadTooLarge,
    RangeNotSatisfiable,
    SessionConflict,
    StorageWriteFailed,
)
from chunkdrop.logs import audit_event, log_event, trace_id
from chunkdrop.maintenance import cleanup_once
from chunkdrop.metrics import (
    bytes_uploaded_total,
    chunk_upload_failures_total,
    chunk_write_latency_seconds,
    chunks_uploaded_total,
    http_request_duration_seconds,
    metrics_response,
    range_requests_total,
)
from chunkdrop.models import SessionStatus
from chunkdrop.schemas import (
    CompleteUploadRequest,
    CompleteUploadResponse,
    ErrorResponse,
    FileListResponse,
    InitUploadRequest,
    InitUploadResponse,
    MessageResponse,
    RemoteFileEntry,
    UploadStatusResponse,
)
from chunkdrop.services import Services, build_services, get_services
from chunkdrop.tracing import setup_tracing

_CHUNK_OFFSET = re.compile(r"^bytes (\d+)-", re.ASCII)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.db_auto_create:
        create_schema()
    services = build_services(settings)
    app.state.services = services
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                with SessionLocal() as db:
                    stats = cleanup_once(db, services.chunk_store)
                if any(stats.values()):
                    log_event({"event": "cleanup_completed", **stats})
            except Exception as exc:
                log_event({"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task
    await services.handoff.drain()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list(),
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "x-upload-id", "content-range", "range"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length", "X-Request-ID"],
)
setup_tracing(app, settings)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id") or request.headers.get("x-upload-id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthenticated",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        413: "payload_too_large",
        416: "range_not_satisfiable",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(request: Request, status_code: int, detail: str, error_code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error_code": error_code,
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": trace_id(),
        },
        headers=headers or {},
    )


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing or invalid credential"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Chunkdrop-Version"] = settings.app_version
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(ChunkdropError)
async def chunkdrop_error_handler(request: Request, exc: ChunkdropError):
    error_class = "client_error" if exc.status_code < 500 else exc.error_code
    _log_request_error(request, exc.status_code, error_class, exc.detail)
    return _error_response(request, exc.status_code, exc.detail, exc.error_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc.detail))
    return _error_response(
        request, exc.status_code, str(exc.detail), _error_code_for_status(exc.status_code), headers=exc.headers
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    header_error = any((error.get("loc") or ("",))[0] == "header" for error in exc.errors())
    error_code = "invalid_headers" if header_error else "missing_parameters"
    detail = "Invalid headers" if header_error else "Missing or malformed request parameters"
    _log_request_error(request, 400, "client_error", detail)
    return _error_response(request, 400, detail, error_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return _error_response(request, 500, "internal server error", "internal_error")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
        "auth_mode": settings.auth_mode,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post("/admin/cleanup", responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(
    user: AuthUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
) -> dict:
    stats = cleanup_once(db, services.chunk_store)
    return {"status": "ok", "requested_by": user.user_id, **stats}


@app.get(
    "/files/{filename}",
    responses={
        200: {"content": {"application/octet-stream": {}}, "description": "Full file"},
        206: {"content": {"application/octet-stream": {}}, "description": "Partial content"},
        404: {"description": "File not found"},
        416: {"description": "Range not satisfiable"},
    },
)
def serve_file(
    filename: str,
    range: str | None = Header(default=None),
    services: Services = Depends(get_services),
) -> Response:
    try:
        served = services.reader.open(filename, range)
    except NotFound as exc:
        return PlainTextResponse(exc.detail, status_code=404)
    except RangeNotSatisfiable as exc:
        headers = {"Content-Range": f"bytes */{exc.file_size}"} if exc.file_size is not None else {}
        return PlainTextResponse(exc.detail, status_code=416, headers=headers)
    except Exception as exc:
        log_event(
            {
                "event": "serve_error",
                "path": filename,
                "error_class": "serve_failed",
                "detail": str(exc),
            }
        )
        return PlainTextResponse("Error serving file", status_code=500)

    range_requests_total.labels(kind="partial" if served.status_code == 206 else "full").inc()
    headers = dict(served.headers)
    media_type = headers.pop("Content-Type", "application/octet-stream")
    return StreamingResponse(served.body, status_code=served.status_code, media_type=media_type, headers=headers)


@app.post("/upload/init", response_model=InitUploadResponse, responses={**COMMON_ERROR_RESPONSES})
def init_upload(
    request: Request,
    payload: InitUploadRequest | None = Body(default=None),
    user: AuthUser | None = Depends(optional_api_user),
    services: Services = Depends(get_services),
) -> InitUploadResponse:
    declared_size = payload.file_size if payload else None
    owner_id = user.user_id if user else None
    record = services.registry.open_session(owner_id=owner_id, declared_size=declared_size)
    audit_event(
        {
            "action": "upload_init",
            "request_id": _request_id(request),
            "upload_id": record.id,
            "user_id": owner_id,
            "declared_size": declared_size,
        }
    )
    return InitUploadResponse(upload_id=record.id)


def parse_chunk_offset(content_range: str | None) -> int | None:
    if not content_range:
        return None
    match = _CHUNK_OFFSET.match(content_range.strip())
    if not match:
        return None
    return int(match.group(1))


async def _read_chunk_body(request: Request, limit: int, declared_length: str | None) -> bytes:
    if declared_length and declared_length.strip().isdigit() and int(declared_length) > limit:
        raise PayloadTooLarge(f"chunk exceeds {limit} bytes")
    body = bytearray()
    async for part in request.stream():
        body.extend(part)
        if len(body) > limit:
            raise PayloadTooLarge(f"chunk exceeds {limit} bytes")
    return bytes(body)


@app.post(
    "/upload/chunk",
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Invalid headers or unknown upload"},
        403: {"model": ErrorResponse, "description": "Upload owned by another user"},
        409: {"model": ErrorResponse, "description": "Upload no longer accepts chunks"},
        413: {"model": ErrorResponse, "description": "Chunk too large"},
    },
)
async def upload_chunk(
    request: Request,
    upload_id: str | None = Header(default=None, alias="x-upload-id"),
    content_range: str | None = Header(default=None, alias="Content-Range"),
    content_length: str | None = Header(default=None, alias="Content-Length"),
    user: AuthUser = Depends(require_api_user),
    services: Services = Depends(get_services),
) -> Response:
    offset = parse_chunk_offset(content_range)
    if not upload_id or offset is None:
        raise InvalidHeaders("Invalid headers")

    record = services.registry.require_owned(upload_id, user.user_id)
    if record.status != SessionStatus.open.value:
        raise SessionConflict("upload is not accepting chunks")
    body = await _read_chunk_body(request, settings.max_chunk_bytes, content_length)

    started = time.perf_counter()
    async with services.registry.guard(upload_id):
        # The body streamed without the guard; completion may have started meanwhile.
        current = services.registry.get(upload_id)
        if current is None or current.status != SessionStatus.open.value:
            raise SessionConflict("upload is not accepting chunks")
        try:
            await asyncio.to_thread(services.chunk_store.put, upload_id, offset, body)
        except OSError as exc:
            chunk_upload_failures_total.inc()
            raise StorageWriteFailed("Failed to upload chunk") from exc
    chunk_write_latency_seconds.observe(time.perf_counter() - started)
    chunks_uploaded_total.inc()
    bytes_uploaded_total.inc(len(body))
    return Response(status_code=200)


@app.post(
    "/upload/complete",
    response_model=CompleteUploadResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Missing parameters, unknown upload or no chunks"},
        403: {"model": ErrorResponse, "description": "Upload owned by another user"},
        409: {"model": ErrorResponse, "description": "Upload already completing or incomplete"},
    },
)
async def complete_upload(
    payload: CompleteUploadRequest | None = Body(default=None),
    user: AuthUser = Depends(require_api_user),
    services: Services = Depends(get_services),
) -> CompleteUploadResponse:
    payload = payload or CompleteUploadRequest()
    artifact = await services.assembler.complete(payload.upload_id, payload.file_name, user.user_id)
    return CompleteUploadResponse(message="Complete", url=artifact.url, file_name=artifact.file_name)


@app.get(
    "/upload/{upload_id}/status",
    response_model=UploadStatusResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        403: {"model": ErrorResponse, "description": "Upload owned by another user"},
        404: {"model": ErrorResponse, "description": "Upload not found"},
    },
)
def upload_status(
    upload_id: str,
    user: AuthUser = Depends(require_api_user),
    services: Services = Depends(get_services),
) -> UploadStatusResponse:
    record = services.registry.get(upload_id)
    if record is None:
        raise NotFound("upload not found")
    if record.owner_id is not None and record.owner_id != user.user_id:
        raise HTTPException(status_code=403, detail="forbidden for this upload owner")
    return UploadStatusResponse(
        upload_id=record.id,
        status=record.status,
        file_name=record.file_name,
        declared_size=record.declared_size,
        handoff_status=record.handoff_status,
        handoff_attempts=record.handoff_attempts,
        handoff_error=record.handoff_error,
    )


@app.get("/files", response_model=FileListResponse, responses={**COMMON_ERROR_RESPONSES})
async def list_files(
    user: AuthUser = Depends(require_api_user),
    services: Services = Depends(get_services),
) -> FileListResponse:
    files = await services.handoff.list_files(user.user_id)
    return FileListResponse(
        files=[
            RemoteFileEntry(
                key=item.key,
                file_name=item.file_name,
                size=item.size,
                last_modified=item.last_modified,
                url=item.url,
            )
            for item in files
        ]
    )


@app.delete("/files/{file_name}", response_model=MessageResponse, responses={**COMMON_ERROR_RESPONSES})
async def delete_file(
    request: Request,
    file_name: str,
    user: AuthUser = Depends(require_api_user),
    services: Services = Depends(get_services),
) -> MessageResponse:
    key = await services.handoff.delete_file(user.user_id, file_name)
    audit_event(
        {
            "action": "file_delete",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "object_key": key,
        }
    )
    return MessageResponse(message="File deleted successfully")
