"""FastAPI application exposing the media storage pipeline."""

import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mediavault import __version__
from mediavault.config import StorageSettings
from mediavault.domain.errors import StorageError
from mediavault.domain.models import (
    ApiKeyCreate,
    ApiKeyIssued,
    ApiKeyRecord,
    CommitRequest,
    CommitResponse,
    FileListResponse,
    FileMetadata,
    StageResponse,
)
from mediavault.domain.rules import Category
from mediavault.security.problem_details import (
    SECURITY_HEADERS,
    new_correlation_id,
    problem_response,
)
from mediavault.services.api_key_service import ApiKeyService
from mediavault.services.policy_service import PolicyEnforcer
from mediavault.services.probes import default_probes
from mediavault.services.processing import ImageProcessor
from mediavault.services.staging_service import RawFile, StagingArea
from mediavault.services.storage_service import StorageService

logger = logging.getLogger(__name__)

CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9-]{8,64}$")

router = APIRouter(prefix="/api/v1")


def _ensure_correlation_id(request: Request) -> str:
    """Return existing correlation id or generate a new one."""
    correlation_id = getattr(request.state, "correlation_id", None)
    if not correlation_id:
        incoming = request.headers.get("X-Correlation-ID", "")
        correlation_id = incoming if CORRELATION_ID_RE.match(incoming) else new_correlation_id()
        request.state.correlation_id = correlation_id
    return correlation_id


def _problem_response(
    request: Request,
    *,
    status_code: int,
    title: str,
    detail: str,
    code: str,
    headers: dict[str, str] | None = None,
    extras: dict[str, Any] | None = None,
):
    """Produce a RFC 7807 response with a stable correlation id."""
    response_headers = dict(SECURITY_HEADERS)
    if headers:
        response_headers.update(headers)
    return problem_response(
        status=status_code,
        title=title,
        detail=detail,
        code=code,
        headers=response_headers,
        extras=extras,
        correlation_id=_ensure_correlation_id(request),
        instance=str(request.url.path),
    )


def _serialize_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep location, message and type; drop echoed input."""
    return [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": error.get("msg"),
            "type": error.get("type"),
        }
        for error in errors
    ]


# Dependencies
def get_settings(request: Request) -> StorageSettings:
    return request.app.state.settings


def get_staging(request: Request) -> StagingArea:
    return request.app.state.staging


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_api_keys(request: Request) -> ApiKeyService:
    return request.app.state.api_keys


def _extract_key(authorization: Optional[str], x_api_key: Optional[str]) -> Optional[str]:
    if x_api_key:
        return x_api_key.strip()
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if not value:
        return scheme
    if scheme.lower() in ("apikey", "bearer"):
        return value.strip()
    return None


def require_api_key(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    api_keys: ApiKeyService = Depends(get_api_keys),
) -> ApiKeyRecord:
    """Authenticate the caller by API key."""
    key = _extract_key(authorization, x_api_key)
    record = api_keys.verify(key) if key else None
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return record


def require_internal_key(
    record: ApiKeyRecord = Depends(require_api_key),
    api_keys: ApiKeyService = Depends(get_api_keys),
) -> ApiKeyRecord:
    if not api_keys.is_internal(record):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Internal API key required")
    return record


def _requested_category(media_type: Optional[str]) -> Optional[Category]:
    if not media_type or media_type.strip().lower() == "mixed":
        return None
    try:
        category = Category(media_type.strip().lower())
    except ValueError:
        category = Category.UNKNOWN
    if category is Category.UNKNOWN:
        raise StorageError(
            f"Unknown media_type '{media_type}'", code="invalid_media_type", status=400
        )
    return category


async def _read_upload(upload: UploadFile, limit: int) -> RawFile:
    data = await upload.read(limit + 1)
    await upload.close()
    return RawFile(filename=upload.filename, data=data, content_type=upload.content_type)


# Staging endpoints
@router.post("/upload/temp", response_model=StageResponse, status_code=status.HTTP_201_CREATED)
async def upload_temp(
    files: List[UploadFile] = File(...),
    session_id: Optional[str] = Form(None),
    media_type: Optional[str] = Form(None),
    staging: StagingArea = Depends(get_staging),
    settings: StorageSettings = Depends(get_settings),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    """Stage a batch of files; the whole batch is accepted or rejected."""
    requested = _requested_category(media_type)
    raw_files = [await _read_upload(upload, settings.upload_limit_bytes) for upload in files]
    session, added = await staging.stage(raw_files, session_id=session_id or None, requested=requested)
    logger.info("Key %s staged %d file(s) into %s", api_key.id, len(added), session.session_id)
    return StageResponse(
        session_id=session.session_id,
        files=[entry.view() for entry in session.sorted_entries()],
    )


@router.get("/upload/temp/{session_id}", response_model=StageResponse)
async def get_temp_session(
    session_id: str,
    staging: StagingArea = Depends(get_staging),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    entries = await staging.list_session(session_id)
    return StageResponse(session_id=session_id, files=[entry.view() for entry in entries])


@router.delete("/upload/temp/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_temp_session(
    session_id: str,
    staging: StagingArea = Depends(get_staging),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    await staging.discard(session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/upload/commit",
    response_model=CommitResponse,
    status_code=status.HTTP_201_CREATED,
    responses={207: {"model": CommitResponse, "description": "Some mappings failed"}},
)
async def commit_upload(
    payload: CommitRequest,
    storage: StorageService = Depends(get_storage),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    """Move staged files into final storage."""
    report = await storage.commit(
        payload.session_id, payload.target_base, payload.mappings, payload.options
    )
    body = CommitResponse(
        session_id=report.session_id,
        files=report.records,
        skipped=report.skipped,
        failures=report.failures,
    )
    status_code = status.HTTP_207_MULTI_STATUS if report.partial else status.HTTP_201_CREATED
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# Final storage endpoints
@router.get("/files", response_model=FileListResponse)
async def list_files(
    directory: str = Query("", alias="dir", max_length=1024),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    storage: StorageService = Depends(get_storage),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    total, items = await storage.list_final(directory, offset, limit)
    return FileListResponse(items=items, total=total, offset=offset, limit=limit)


@router.get("/meta/file", response_model=FileMetadata)
async def file_metadata(
    path: str = Query(..., min_length=1, max_length=1024),
    storage: StorageService = Depends(get_storage),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    return await storage.get_metadata(path)


@router.delete("/files", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(
    path: str = Query(..., min_length=1, max_length=1024),
    storage: StorageService = Depends(get_storage),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    """Delete a stored file or directory; missing paths are not an error."""
    await storage.delete_path(path)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/files/replace", response_model=FileMetadata)
async def replace_file(
    path: str = Form(..., min_length=1, max_length=1024),
    file: UploadFile = File(...),
    storage: StorageService = Depends(get_storage),
    settings: StorageSettings = Depends(get_settings),
    api_key: ApiKeyRecord = Depends(require_api_key),
):
    raw = await _read_upload(file, settings.upload_limit_bytes)
    return await storage.replace(
        path, raw.data, filename=raw.filename, content_type=raw.content_type
    )


# API key endpoints
@router.post("/api-keys", response_model=ApiKeyIssued, status_code=status.HTTP_201_CREATED)
async def issue_api_key(
    payload: ApiKeyCreate,
    api_keys: ApiKeyService = Depends(get_api_keys),
    caller: ApiKeyRecord = Depends(require_internal_key),
):
    return api_keys.issue(payload.label, payload.expires_in_days)


@router.delete("/api-keys/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_api_key(
    key_id: str,
    api_keys: ApiKeyService = Depends(get_api_keys),
    caller: ApiKeyRecord = Depends(require_internal_key),
):
    if key_id == caller.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A key cannot revoke itself")
    api_keys.revoke(key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


def _register_handlers(app: FastAPI, settings: StorageSettings) -> None:
    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        """Attach correlation id and security headers to every response."""
        correlation_id = _ensure_correlation_id(request)
        response = await call_next(request)
        response.headers.setdefault("X-Correlation-ID", correlation_id)
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        return response

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        if exc.status >= 500:
            logger.error("Storage failure (%s): %s", exc.code, exc.message)
        else:
            logger.info("Request refused (%s): %s", exc.code, exc.message)
        return _problem_response(
            request,
            status_code=exc.status,
            title=exc.title,
            detail=exc.message,
            code=exc.code,
            extras=exc.extras,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _problem_response(
            request,
            status_code=422,
            title="Invalid request",
            detail="Request validation failed",
            code="validation_error",
            extras={"errors": _serialize_errors(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTPException exceptions."""
        detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        status_code = exc.status_code
        title = "HTTP error"
        code = "http_error"

        if status_code == status.HTTP_401_UNAUTHORIZED:
            title = "Authentication required"
            code = "not_authenticated"
        elif status_code == status.HTTP_403_FORBIDDEN:
            title = "Access denied"
            code = "access_denied"
        elif status_code == status.HTTP_404_NOT_FOUND:
            title = "Resource not found"
            code = "not_found"

        logger.warning("HTTPException (%s): %s", status_code, detail)
        return _problem_response(
            request,
            status_code=status_code,
            title=title,
            detail=detail,
            code=code,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle all other exceptions."""
        logger.error("Unhandled exception: %s", exc, exc_info=True)
        detail = "Internal server error" if settings.production else f"{type(exc).__name__}: {exc}"
        return _problem_response(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            title="Internal server error",
            detail=detail,
            code="internal_error",
        )


def create_app(settings: Optional[StorageSettings] = None) -> FastAPI:
    """Wire settings, services and routes into a FastAPI app."""
    settings = settings or StorageSettings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    enforcer = PolicyEnforcer(settings.rules, default_probes(), settings.max_concurrent_probes)
    staging = StagingArea(settings, enforcer)
    hook = ImageProcessor(max_width=settings.image_max_width) if settings.image_processing else None
    storage = StorageService(settings, staging, hook)
    api_keys = ApiKeyService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.temp_root.mkdir(parents=True, exist_ok=True)
        settings.final_root.mkdir(parents=True, exist_ok=True)
        staging.start()
        logger.info("Storage ready at %s", settings.storage_path)
        try:
            yield
        finally:
            await staging.stop()

    app = FastAPI(
        title="Media Vault API",
        description="Validated media uploads with safe storage",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.staging = staging
    app.state.storage = storage
    app.state.api_keys = api_keys

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_handlers(app, settings)
    app.include_router(router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()
