"""SnapList backend service."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from analysis import analysis_payload, stored_draft_payload
from auth import get_current_user_id, get_services
from errors import AppError, BadRequestError, InvalidStatusTransitionError, NotFoundError
from ingestion import read_upload_files
from item_status import transition_item_status
from schemas import ItemStatus, ReorderImagesRequest, UpdateItemStatusRequest
from services import AppServices, build_services
from settings import Settings, load_settings

logger = logging.getLogger(__name__)

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"
RATE_LIMITED_SUFFIXES = ("/images", "/analyze")
HTTP_ERROR_CODE_MAP = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "FILE_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
    503: "SERVICE_UNAVAILABLE",
}


def current_request_id() -> str:
    """Return current request ID from context."""
    request_id = (request_id_ctx.get() or "").strip()
    return request_id or "unknown"


def extract_client_ip(request: Request) -> str:
    """Extract best-effort client IP from proxy headers or request client."""
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def is_rate_limited_request(request: Request) -> bool:
    """Uploads and analyses are the expensive calls; only those are limited."""
    return request.method.upper() == "POST" and request.url.path.rstrip("/").endswith(RATE_LIMITED_SUFFIXES)


def build_error_payload(
    *,
    code: str,
    message: str,
    request_id: str | None = None,
    details: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """Build structured error response payload."""
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": request_id or current_request_id(),
    }
    if details is not None:
        error["details"] = details
    return {"error": error}


def _error_response(request: Request, status_code: int, payload: Dict[str, Any]) -> JSONResponse:
    request_id = getattr(request.state, "request_id", current_request_id())
    response = JSONResponse(status_code=status_code, content=payload)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def request_context_middleware(request: Request, call_next: Callable[[Request], Any]) -> Any:
    """Attach request IDs, enforce the per-client rate limit, and log requests."""
    request_id = (request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex).strip()[:128]
    context_token = request_id_ctx.set(request_id)
    request.state.request_id = request_id

    method = request.method
    path = request.url.path
    client_ip = extract_client_ip(request)
    started_at = time.perf_counter()
    status_code = 500
    rate_limited = False

    try:
        if is_rate_limited_request(request):
            limiter = request.app.state.services.rate_limiter
            allowed, retry_after_seconds = limiter.consume(client_ip)
            if not allowed:
                rate_limited = True
                response = JSONResponse(
                    status_code=429,
                    content=build_error_payload(
                        code="RATE_LIMIT_EXCEEDED",
                        message=(
                            f"Too many requests. Maximum {limiter.max_requests} "
                            f"requests per {limiter.window_seconds} seconds."
                        ),
                        request_id=request_id,
                        details={
                            "retry_after_seconds": retry_after_seconds,
                            "limit": limiter.max_requests,
                            "window_seconds": limiter.window_seconds,
                        },
                    ),
                )
                response.headers["Retry-After"] = str(retry_after_seconds)
                response.headers[REQUEST_ID_HEADER] = request_id
                status_code = response.status_code
                return response

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - started_at) * 1000
        logger.info(
            "request_id=%s method=%s path=%s status=%s ip=%s rate_limited=%s duration_ms=%.2f",
            request_id,
            method,
            path,
            status_code,
            client_ip,
            rate_limited,
            duration_ms,
        )
        request_id_ctx.reset(context_token)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Map domain errors to their status and code."""
    if exc.status_code >= 500:
        logger.error(
            "Request failed request_id=%s path=%s code=%s message=%s",
            getattr(request.state, "request_id", current_request_id()),
            request.url.path,
            exc.code,
            exc.message,
        )
    return _error_response(
        request,
        exc.status_code,
        build_error_payload(code=exc.code, message=exc.message, details=exc.details),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return structured payloads for HTTP errors."""
    error_code = HTTP_ERROR_CODE_MAP.get(exc.status_code, "HTTP_ERROR")

    if isinstance(exc.detail, str):
        message = exc.detail
        details: Dict[str, Any] = {"status_code": exc.status_code}
    elif isinstance(exc.detail, dict):
        details = dict(exc.detail)
        message = str(details.get("message") or details.get("detail") or "Request failed.")
        details.setdefault("status_code", exc.status_code)
    else:
        message = str(exc.detail)
        details = {"status_code": exc.status_code}

    response = _error_response(
        request,
        exc.status_code,
        build_error_payload(code=error_code, message=message, details=details),
    )
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return structured payloads for validation errors."""
    return _error_response(
        request,
        400,
        build_error_payload(
            code="VALIDATION_ERROR",
            message="Request validation failed.",
            details={"errors": jsonable_encoder(exc.errors())},
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all error handler for consistent API error responses."""
    request_id = getattr(request.state, "request_id", current_request_id())
    logger.exception("Unhandled exception request_id=%s path=%s", request_id, request.url.path)
    return _error_response(
        request,
        500,
        build_error_payload(code="INTERNAL_ERROR", message="Internal server error.", request_id=request_id),
    )


def item_payload(item: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize an item row to the camelCase API shape."""
    return {
        "id": item["id"],
        "userId": item["user_id"],
        "status": item["status"],
        "createdAt": item.get("created_at"),
        "updatedAt": item.get("updated_at"),
    }


def image_payload(image: Dict[str, Any], url: Optional[str]) -> Dict[str, Any]:
    """Serialize an image row with its signed URL."""
    return {
        "id": image["id"],
        "itemId": image["item_id"],
        "storagePath": image["storage_path"],
        "orderIndex": image["order_index"],
        "url": url,
        "createdAt": image.get("created_at"),
    }


def require_item(services: AppServices, item_id: str, user_id: str) -> Dict[str, Any]:
    """Return the caller's item or raise NotFoundError."""
    item = services.records.get_item(item_id, user_id)
    if item is None:
        raise NotFoundError("Item not found.")
    return item


def _signed_url_or_none(services: AppServices, image: Dict[str, Any]) -> Optional[str]:
    try:
        return services.media.create_signed_url(image["storage_path"], services.settings.signed_url_ttl_seconds)
    except Exception:
        logger.exception("Failed to sign image URL image_id=%s", image.get("id"))
        return None


def _delete_objects_best_effort(services: AppServices, paths: List[str], context: str) -> None:
    try:
        services.media.delete_images(paths)
    except Exception:
        logger.exception("Storage cleanup failed %s key_count=%s", context, len(paths))


router = APIRouter()


@router.post("/items", status_code=201)
def create_item(request: Request, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    """Create a new draft item for the caller."""
    item = get_services(request).records.create_item(user_id)
    logger.info("Item created item_id=%s user_id=%s", item["id"], user_id)
    return {"data": item_payload(item)}


@router.get("/items")
def list_items(
    request: Request,
    status: Optional[ItemStatus] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    """List the caller's items with optional status filter and pagination."""
    rows, total = get_services(request).records.list_items(
        user_id,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return {
        "data": [item_payload(row) for row in rows],
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


@router.get("/items/{item_id}")
def get_item(item_id: str, request: Request, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    """Fetch one item owned by the caller."""
    return {"data": item_payload(require_item(get_services(request), item_id, user_id))}


@router.patch("/items/{item_id}")
def update_item_status(
    item_id: str,
    body: UpdateItemStatusRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    """Move an item to a new status through the transition table."""
    services = get_services(request)
    strict = services.settings.strict_status_transitions
    item = require_item(services, item_id, user_id)

    if strict and body.status == ItemStatus.PROCESSING and item["status"] != ItemStatus.PROCESSING.value:
        raise InvalidStatusTransitionError(
            "Items enter processing only through analysis.",
            details={"from": item["status"], "to": body.status.value},
        )

    updated = transition_item_status(services.records, item, body.status, strict=strict)
    logger.info("Item status updated item_id=%s from=%s to=%s", item_id, item["status"], updated["status"])
    return {"data": {"id": updated["id"], "status": updated["status"], "updatedAt": updated.get("updated_at")}}


@router.delete("/items/{item_id}", status_code=204)
def delete_item(item_id: str, request: Request, user_id: str = Depends(get_current_user_id)) -> Response:
    """Delete an item with its images and draft."""
    services = get_services(request)
    storage_paths = services.records.delete_item(item_id, user_id)
    if storage_paths is None:
        raise NotFoundError("Item not found.")

    _delete_objects_best_effort(services, storage_paths, f"item_id={item_id}")
    logger.info("Item deleted item_id=%s image_count=%s", item_id, len(storage_paths))
    return Response(status_code=204)


@router.post("/items/{item_id}/images", status_code=202)
async def upload_item_images(
    item_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> JSONResponse:
    """Accept a multipart batch and hand it to background ingestion."""
    services = get_services(request)
    settings = services.settings

    content_type = request.headers.get("content-type", "").lower()
    if not content_type.startswith("multipart/form-data"):
        raise BadRequestError("Request must be multipart/form-data.")

    await run_in_threadpool(require_item, services, item_id, user_id)

    form = await request.form(max_files=settings.max_files_per_upload)
    files = await read_upload_files(form, settings.max_file_size_bytes)
    if not files:
        raise BadRequestError("No files uploaded.")

    job_id = services.ingestion.submit(item_id, user_id, files)
    return JSONResponse(
        status_code=202,
        content={
            "data": {
                "itemId": item_id,
                "imageCount": len(files),
                "jobId": job_id,
                "message": "Images accepted for processing.",
            }
        },
    )


@router.get("/items/{item_id}/images")
def list_item_images(item_id: str, request: Request, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    """List an item's images in display order with signed URLs."""
    services = get_services(request)
    require_item(services, item_id, user_id)
    images = services.records.list_item_images(item_id, user_id)
    return {"data": [image_payload(image, _signed_url_or_none(services, image)) for image in images]}


@router.patch("/items/{item_id}/images/reorder")
def reorder_item_images(
    item_id: str,
    body: ReorderImagesRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    """Rewrite image order from the submitted id list."""
    if not body.image_ids:
        raise BadRequestError("imageIds must be a non-empty array.")

    services = get_services(request)
    require_item(services, item_id, user_id)
    services.records.reorder_images(item_id, body.image_ids)
    return {"data": {"success": True}}


@router.delete("/images/{image_id}", status_code=204)
def delete_image(image_id: str, request: Request, user_id: str = Depends(get_current_user_id)) -> Response:
    """Delete one image record and its stored object."""
    services = get_services(request)
    image = services.records.delete_image_record(image_id, user_id)
    if image is None:
        raise NotFoundError("Image not found.")

    _delete_objects_best_effort(services, [image["storage_path"]], f"image_id={image_id}")
    return Response(status_code=204)


@router.post("/items/{item_id}/analyze")
def analyze_item(item_id: str, request: Request, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    """Run AI analysis for an item and return the generated draft."""
    draft = get_services(request).analysis.analyze(item_id, user_id)
    return {"data": analysis_payload(draft)}


@router.get("/items/{item_id}/draft")
def get_item_draft(item_id: str, request: Request, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    """Return the stored listing draft of an item."""
    row = get_services(request).analysis.get_draft(item_id, user_id)
    if row is None:
        raise NotFoundError("Listing draft not found.")
    return {"data": stored_draft_payload(row)}


@router.get("/jobs/{job_id}")
def get_upload_job(job_id: str, request: Request, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    """Fetch background upload job status."""
    snapshot = get_services(request).ingestion.tracker.snapshot(job_id, user_id=user_id)
    if snapshot is None:
        raise NotFoundError("Upload job not found.")
    return {"data": snapshot}


def health(request: Request) -> Dict[str, Any]:
    """Health endpoint with non-sensitive service status."""
    services: AppServices = request.app.state.services
    settings = services.settings
    return {
        "message": "SnapList backend is running.",
        "services": services.health_snapshot(),
        "limits": {
            "max_file_size_mb": settings.max_file_size_mb,
            "max_files_per_upload": settings.max_files_per_upload,
            "max_image_dimension": settings.max_image_dimension,
            "ai_max_attempts": settings.ai_max_attempts,
            "rate_limit_max_requests": settings.rate_limit_max_requests,
            "rate_limit_window_seconds": settings.rate_limit_window_seconds,
        },
        "strict_status_transitions": settings.strict_status_transitions,
    }


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    # Let queued upload jobs finish before the process exits.
    app.state.services.shutdown()


def create_app(settings: Optional[Settings] = None, services: Optional[AppServices] = None) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="SnapList API", version="1.0.0", lifespan=lifespan)
    app.state.services = services or build_services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(request_context_middleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_api_route("/", health, methods=["GET"])
    app.add_api_route("/health", health, methods=["GET"])
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
