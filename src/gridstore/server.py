"""FastAPI application hosting a gridstore storage engine."""

import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any

from bson import ObjectId
from fastapi import FastAPI, File, Request, Response, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gridstore.config import GridStoreConfig, StorageConfig
from gridstore.errors import GridStoreError
from gridstore.models import UploadResult
from gridstore.storage import GridStorage, LifecycleState

logger = logging.getLogger(__name__)

# Module-level singleton so multiple create_app() calls (e.g. in tests)
# don't re-register the same Prometheus collectors in the global registry.
_instrumentator = None


def _get_instrumentator():
    global _instrumentator
    if _instrumentator is None:
        from prometheus_fastapi_instrumentator import Instrumentator

        _instrumentator = Instrumentator(
            should_instrument_requests_inprogress=True,
            excluded_handlers=["/metrics"],
        )
    return _instrumentator


def default_naming(config: StorageConfig):
    """Naming function applying the configured bucket and chunk size.

    The stored filename stays random; the client supplied name is kept in
    the file metadata.
    """

    def naming(request: Any, file: Any) -> dict[str, Any]:
        settings: dict[str, Any] = {
            "bucket_name": config.bucket_name,
            "chunk_size": config.chunk_size,
        }
        original = getattr(file, "filename", None)
        if original:
            settings["metadata"] = {"original_filename": original}
        return settings

    return naming


def create_storage(config: GridStoreConfig) -> GridStorage:
    """Create the storage engine described by the ``storage`` section."""
    return GridStorage.from_config(config.storage, file=default_naming(config.storage))


def result_body(result: UploadResult) -> dict[str, Any]:
    """JSON representation of an upload result."""
    body = result.to_dict()
    body["id"] = str(result.id)
    body["upload_date"] = result.upload_date.isoformat()
    return body


def parse_file_id(file_id: str) -> Any:
    """Convert a path segment into the stored id type."""
    if ObjectId.is_valid(file_id):
        return ObjectId(file_id)
    return file_id


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(config: GridStoreConfig) -> FastAPI:
    """Create and configure the gridstore FastAPI application.

    The lifespan context manager creates the storage engine and waits for
    its connection on startup, and closes it on shutdown. A failed connection
    does not prevent startup: uploads are then refused and ``/health``
    reports the failure.

    Args:
        config: The loaded gridstore configuration.

    Returns:
        A configured FastAPI application ready to run.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        storage = create_storage(config)
        app.state.storage = storage
        try:
            await storage.ready()
            logger.info("Storage engine connected")
        except GridStoreError as exc:
            logger.error("Storage engine failed to connect: %s", exc)

        yield

        await storage.close()
        logger.info("Storage engine closed")

    app = FastAPI(
        title="gridstore",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config

    _register_exception_handlers(app)
    _register_middleware(app)

    if config.observability.metrics:
        import gridstore.metrics as _metrics

        _metrics.init_metrics()
        _get_instrumentator().instrument(app, metric_namespace="gridstore").expose(
            app, endpoint="/metrics"
        )

    _setup_routes(app, config)

    return app


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


def _error_response(code: str, message: str, status: int, request: Request) -> Response:
    return JSONResponse(
        {
            "error": {
                "code": code,
                "message": message,
                "request_id": getattr(request.state, "request_id", ""),
            }
        },
        status_code=status,
    )


def _register_exception_handlers(app: FastAPI) -> None:
    """Register exception handlers on the FastAPI app."""

    @app.exception_handler(GridStoreError)
    async def gridstore_error_handler(request: Request, exc: GridStoreError) -> Response:
        return _error_response(exc.code, exc.message, exc.http_status, request)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
        """Map FastAPI validation errors to the common error body."""
        messages = []
        for err in exc.errors():
            loc = " -> ".join(str(p) for p in err.get("loc", []))
            msg = err.get("msg", "Invalid value")
            messages.append(f"{loc}: {msg}" if loc else msg)
        combined = "; ".join(messages) or "Invalid request parameters"
        return _error_response("InvalidArgument", combined, 400, request)

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> Response:
        """Catch unexpected exceptions and return InternalError."""
        logger.exception("Unhandled exception in request handler")
        return _error_response(
            "InternalError",
            "We encountered an internal error. Please try again.",
            500,
            request,
        )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


def _register_middleware(app: FastAPI) -> None:
    """Register the request id and access log middleware."""

    _QUIET_PATHS = {"/metrics", "/health"}

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        request_id = secrets.token_hex(8).upper()
        request.state.request_id = request_id
        start = time.monotonic()

        response = await call_next(request)

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        response.headers["x-request-id"] = request_id

        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "%s %s %d %.2fms",
                request.method,
                request.url.path,
                response.status_code,
                duration_ms,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": duration_ms,
                    "request_id": request_id,
                },
            )

        return response


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _storage(app: FastAPI) -> GridStorage:
    storage = getattr(app.state, "storage", None)
    if storage is None:
        raise GridStoreError("NotConnected", "Storage engine not initialized", 503)
    return storage


def _setup_routes(app: FastAPI, config: GridStoreConfig) -> None:
    """Register the upload, delete, and health routes."""
    health_check_enabled = config.observability.health_check

    @app.get("/health")
    async def health_check(request: Request) -> Response:
        """Return the storage engine connection status.

        When health_check is disabled, return a static ``{"status": "ok"}``.
        """
        if not health_check_enabled:
            return JSONResponse({"status": "ok"})

        storage = getattr(app.state, "storage", None)
        if storage is None:
            return JSONResponse(
                {"status": "error", "storage": {"state": "uninitialized"}}, status_code=503
            )

        storage.update_connection_status()
        check: dict[str, Any] = {
            "state": storage.state.value,
            "connected": storage.connected,
        }
        if storage.error is not None:
            check["error"] = str(storage.error)

        if storage.state is LifecycleState.CONNECTED and storage.connected:
            return JSONResponse({"status": "ok", "storage": check})
        status = "starting" if storage.connecting else "error"
        return JSONResponse({"status": status, "storage": check}, status_code=503)

    @app.post("/files", status_code=201)
    async def upload_file(request: Request, file: UploadFile = File(...)) -> Response:
        """Stream a multipart upload into the blob store."""
        storage = _storage(app)
        try:
            result = await storage.handle_upload(request, file)
        finally:
            await file.close()
        return JSONResponse(result_body(result), status_code=201)

    @app.delete("/files/{bucket_name}/{file_id}", status_code=204)
    async def delete_file(bucket_name: str, file_id: str, request: Request) -> Response:
        """Remove a stored file."""
        storage = _storage(app)
        await storage.remove_upload(
            request, {"id": parse_file_id(file_id), "bucket_name": bucket_name}
        )
        return Response(status_code=204)
