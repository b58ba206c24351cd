"""
vstream HTTP API.

Video endpoints address files by opaque id (the encoded remote path). Every
request is authenticated with a bearer token, and the decoded path must lie
inside the caller's own directory before any remote command runs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Tuple

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from api import folders
from api.auth import Principal, require_admin, require_stream_user, require_user
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    rate_limit_exceeded_handler,
)
from api.database import database, videos
from api.db_retry import DatabaseRetryableError, db_execute_with_retry
from api.enums import StreamPreference
from api.errors import (
    MediaInfoFailed,
    NameConflict,
    NotFound,
    RangeNotSatisfiable,
    RemoteTransportError,
    StreamError,
    redact_secrets,
    sanitize_details,
)
from api.metrics import REMOTE_COMMAND_FAILURES_TOTAL, get_metrics, init_app_info, metrics_content_type
from api.schemas import (
    CacheClearResponse,
    CacheStatusResponse,
    FolderSyncResponse,
    FolderUsageResponse,
    MediaInfoResponse,
    RenameRequest,
    VideoDeleteResponse,
    VideoListResponse,
    VideoMetadataResponse,
    VideoRecordResponse,
    VideoRenameResponse,
)
from api.sync import SyncReconciler, folder_records, folder_usage, retarget_url
from config import (
    API_PORT,
    APP_VERSION,
    CORS_ALLOWED_ORIGINS,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_SYNC,
)
from streaming import identity
from streaming.cache import LocalCacheManager
from streaming.delivery import StreamDeliveryEngine, content_type_for, preflight_response
from streaming.identity import RemoteVideoPath, folder_directory
from streaming.inspector import RemoteVideoInspector
from streaming.media_links import ExternalMediaLinks
from streaming.ssh_pool import SSHConnectionPool
from streaming.transport import quote

logger = logging.getLogger(__name__)

# Initialize rate limiter
# Uses in-memory storage by default, can be configured to use Redis
limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the database and build the streaming services.

    Services already placed on app.state (e.g. by tests) are kept.
    """
    if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
        logger.warning(
            "Rate limiting is using in-memory storage. "
            "For production deployments with multiple instances, configure Redis: "
            "VSTREAM_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
        )
    await database.connect()

    state = app.state
    if getattr(state, "executor", None) is None:
        state.executor = SSHConnectionPool(folders.get_server_address)
    if getattr(state, "cache", None) is None:
        state.cache = LocalCacheManager(state.executor)
        await asyncio.to_thread(state.cache.rebuild_index)
    if getattr(state, "media_links", None) is None:
        state.media_links = ExternalMediaLinks()
    state.inspector = RemoteVideoInspector(state.executor)
    state.engine = StreamDeliveryEngine(state.executor, state.inspector, state.cache, state.media_links)
    state.reconciler = SyncReconciler(state.inspector)
    init_app_info(APP_VERSION)

    yield

    await state.cache.close()
    await state.executor.close()
    await database.disconnect()


app = FastAPI(title="vstream", description="Remote video streaming and proxy service", lifespan=lifespan)

# Register rate limiter with the app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(StreamError)
async def stream_error_handler(request: Request, exc: StreamError):
    """Render domain errors as {success: false, error, details?}."""
    headers = {}
    if isinstance(exc, RangeNotSatisfiable):
        headers["Content-Range"] = f"bytes */{exc.size}"
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {redact_secrets(str(exc))}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "details": sanitize_details("; ".join(messages))},
    )


@app.exception_handler(DatabaseRetryableError)
async def database_retry_handler(request: Request, exc: DatabaseRetryableError):
    """Handle exhausted database retries with a 503 response."""
    logger.warning(f"Database unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": "Database temporarily unavailable, please retry"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {redact_secrets(str(exc))}")
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


app.add_middleware(SecurityHeadersMiddleware)

# CORS for the JSON API; video responses set their own CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials="*" not in CORS_ALLOWED_ORIGINS,
    allow_methods=["GET", "HEAD", "OPTIONS", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "Range", "X-Admin-Secret", "X-Request-ID"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "X-Request-ID"],
)
app.add_middleware(RequestIDMiddleware)


async def resolve_video(principal: Principal, video_id: str) -> Tuple[str, int]:
    """Decode and authorize an opaque id, then find the server holding it."""
    remote_path = identity.decode(video_id)
    identity.authorize(remote_path, principal.owner_login)
    server_id = await folders.server_for_path(principal.user_id, remote_path)
    return remote_path, server_id


def stream_path(video_id: str) -> str:
    return f"/stream/{video_id}"


# =============================================================================
# Streaming
# =============================================================================


@app.options("/stream/direct/{video_id:path}")
@app.options("/stream/{video_id:path}")
async def stream_preflight(video_id: str):
    return preflight_response()


@app.api_route("/stream/direct/{video_id:path}", methods=["GET", "HEAD"], name="stream_direct")
async def stream_direct(
    video_id: str,
    request: Request,
    principal: Principal = Depends(require_stream_user),
):
    """Pipe the file (or the requested range) straight from the media server."""
    remote_path, server_id = await resolve_video(principal, video_id)
    logger.info(f"Direct stream of {remote_path} for {principal.owner_login}")
    return await request.app.state.engine.stream_direct(
        server_id,
        remote_path,
        request.headers.get("range"),
        method=request.method,
    )


@app.api_route("/stream/{video_id:path}", methods=["GET", "HEAD"])
async def stream_video(
    video_id: str,
    request: Request,
    prefer: StreamPreference = Query(default=StreamPreference.AUTO),
    principal: Principal = Depends(require_stream_user),
):
    """Stream a video, from cache or directly, or redirect to the proxy or external engine."""
    remote_path, server_id = await resolve_video(principal, video_id)

    proxy_url = str(request.url_for("stream_direct", video_id=video_id))
    token = request.query_params.get("token")
    if token and not request.headers.get("Authorization"):
        proxy_url = str(request.url_for("stream_direct", video_id=video_id).include_query_params(token=token))

    return await request.app.state.engine.stream(
        server_id,
        remote_path,
        request.headers.get("range"),
        method=request.method,
        prefer=prefer,
        proxy_url=proxy_url,
    )


# =============================================================================
# Videos
# =============================================================================


def _record_response(filename: str, row, owner_login: str, folder_name: str) -> VideoRecordResponse:
    remote_path = f"{folder_directory(owner_login, folder_name)}/{filename}"
    video_id = identity.encode(remote_path)
    return VideoRecordResponse(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        url=row["url"],
        duration=row["duration"] or 0,
        size_bytes=row["size_bytes"] or 0,
        playlist_id=row["playlist_id"],
        created_at=row["created_at"],
        video_id=video_id,
        stream_url=stream_path(video_id),
    )


@app.get("/videos", response_model=VideoListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_videos(
    request: Request,
    folder: str = Query(..., min_length=1, max_length=255),
    principal: Principal = Depends(require_user),
):
    """List a folder's videos after reconciling its records with the media server."""
    folder_row = await folders.get_folder(principal.user_id, name=folder)
    server_id = await folders.server_for_folder(folder_row)
    owner_login = principal.owner_login

    result = await request.app.state.reconciler.reconcile(server_id, owner_login, folder_row["name"], principal.user_id)
    records = await folder_records(owner_login, folder_row["name"])

    return VideoListResponse(
        folder=folder_row["name"],
        videos=[_record_response(name, row, owner_login, folder_row["name"]) for name, row in records],
        sync=result.to_dict(),
    )


@app.get("/videos/{video_id:path}/metadata", response_model=VideoMetadataResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def video_metadata(
    video_id: str,
    request: Request,
    principal: Principal = Depends(require_user),
):
    """File details and, when ffprobe succeeds, media information."""
    remote_path, server_id = await resolve_video(principal, video_id)
    inspector = request.app.state.inspector

    descriptor = await inspector.stat(server_id, remote_path)
    if not descriptor.exists or descriptor.size == 0:
        raise NotFound()

    media = None
    try:
        info = await inspector.inspect_media(server_id, remote_path)
        media = MediaInfoResponse(**info.to_dict())
    except MediaInfoFailed as e:
        logger.info(f"No media info for {remote_path}: {e}")

    return VideoMetadataResponse(
        video_id=video_id,
        name=descriptor.name,
        size=descriptor.size,
        mtime=descriptor.mtime,
        permissions=descriptor.permissions,
        content_type=content_type_for(descriptor.name),
        media=media,
    )


async def _matching_records(video: RemoteVideoPath):
    """Records pointing at this file, by content URL or streaming-proxy URL."""
    records = await folder_records(video.owner, video.folder)
    return [row for name, row in records if name == video.filename]


@app.delete("/videos/{video_id:path}", response_model=VideoDeleteResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def delete_video(
    video_id: str,
    request: Request,
    principal: Principal = Depends(require_user),
):
    """Remove the file from the media server, its records and its cached copy."""
    remote_path, server_id = await resolve_video(principal, video_id)
    video = RemoteVideoPath.parse(remote_path)
    state = request.app.state

    descriptor = await state.inspector.stat(server_id, remote_path)
    if not descriptor.exists:
        raise NotFound()

    result = await state.executor.run(server_id, f"rm -f -- {quote(remote_path)}")
    if not result.ok:
        REMOTE_COMMAND_FAILURES_TOTAL.labels(operation="delete").inc()
        raise RemoteTransportError("Could not delete video on media server", details=result.error_text)

    records = await _matching_records(video)
    for row in records:
        await db_execute_with_retry(videos.delete().where(videos.c.id == row["id"]))
    cache_invalidated = await state.cache.invalidate(server_id, remote_path)

    logger.info(f"Deleted {remote_path} for {principal.owner_login} ({len(records)} record(s))")
    return VideoDeleteResponse(
        message=f"Video {video.filename} deleted",
        records_removed=len(records),
        cache_invalidated=cache_invalidated,
    )


@app.put("/videos/{video_id:path}/rename", response_model=VideoRenameResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def rename_video(
    video_id: str,
    request: Request,
    data: RenameRequest,
    principal: Principal = Depends(require_user),
):
    """Rename a file in place; the extension is kept."""
    remote_path = identity.decode(video_id)
    identity.authorize(remote_path, principal.owner_login)
    identity.validate_file_stem(data.new_name or "")

    video = RemoteVideoPath.parse(remote_path)
    target = video.with_stem(data.new_name)
    if target.filename == video.filename:
        return VideoRenameResponse(
            message="Name unchanged",
            video_id=video_id,
            name=video.filename,
            stream_url=stream_path(video_id),
        )

    server_id = await folders.server_for_path(principal.user_id, remote_path)
    state = request.app.state

    descriptor = await state.inspector.stat(server_id, remote_path)
    if not descriptor.exists:
        raise NotFound()

    exists = await state.executor.run(server_id, f"test -e {quote(target.format())}")
    if exists.ok:
        raise NameConflict(details=target.filename)

    result = await state.executor.run(server_id, f"mv -n -- {quote(remote_path)} {quote(target.format())}")
    if not result.ok:
        REMOTE_COMMAND_FAILURES_TOTAL.labels(operation="rename").inc()
        raise RemoteTransportError("Could not rename video on media server", details=result.error_text)

    for row in await _matching_records(video):
        await db_execute_with_retry(
            videos.update()
            .where(videos.c.id == row["id"])
            .values(
                name=target.filename if row["name"] == video.filename else row["name"],
                url=retarget_url(row["url"], target),
                updated_at=datetime.now(timezone.utc),
            )
        )
    await state.cache.invalidate(server_id, remote_path)

    new_id = identity.encode(target.format())
    logger.info(f"Renamed {remote_path} to {target.filename} for {principal.owner_login}")
    return VideoRenameResponse(
        message=f"Video renamed to {target.filename}",
        video_id=new_id,
        name=target.filename,
        stream_url=stream_path(new_id),
    )


# =============================================================================
# Cache administration
# =============================================================================


@app.get("/cache/status", response_model=CacheStatusResponse)
async def cache_status(request: Request, principal: Principal = Depends(require_admin)):
    return CacheStatusResponse(**request.app.state.cache.status())


@app.post("/cache/clear", response_model=CacheClearResponse)
async def cache_clear(request: Request, principal: Principal = Depends(require_admin)):
    removed = await request.app.state.cache.clear()
    logger.info(f"Cache cleared by user {principal.user_id}: {removed} file(s)")
    return CacheClearResponse(removed_files=removed)


# =============================================================================
# Folders
# =============================================================================


@app.post("/folders/{folder_id}/sync", response_model=FolderSyncResponse)
@limiter.limit(RATE_LIMIT_SYNC)
async def sync_folder(
    folder_id: int,
    request: Request,
    principal: Principal = Depends(require_user),
):
    """Create the folder directory if needed and reconcile its records."""
    folder = await folders.get_folder(principal.user_id, folder_id=folder_id)
    server_id = await folders.server_for_folder(folder)
    reconciler = request.app.state.reconciler
    owner_login = principal.owner_login

    directory = await reconciler.ensure_folder_directory(server_id, owner_login, folder["name"])
    result = await reconciler.reconcile(server_id, owner_login, folder["name"], principal.user_id)

    found = result.created + result.skipped
    return FolderSyncResponse(
        message=f"Folder {folder['name']} synchronized: {found} video(s) on server",
        folder=folder["name"],
        directory=directory,
        videos_found=found,
        **result.to_dict(),
    )


@app.get("/folders/{folder_id}/usage", response_model=FolderUsageResponse)
async def get_folder_usage(folder_id: int, principal: Principal = Depends(require_user)):
    folder = await folders.get_folder(principal.user_id, folder_id=folder_id)
    usage = await folder_usage(folder, principal.owner_login)
    return FolderUsageResponse(usage=usage)


# =============================================================================
# Operations
# =============================================================================


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns 503 if the database or the cache directory is unusable.
    """
    result = await check_health()
    return JSONResponse(
        status_code=result["status_code"],
        content={
            "status": "healthy" if result["healthy"] else "unhealthy",
            "checks": result["checks"],
        },
    )


@app.get("/metrics")
async def metrics():
    return Response(content=get_metrics(), media_type=metrics_content_type())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
