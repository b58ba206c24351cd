"""
Folder reconciliation between a media server and the videos table.

The remote folder listing is authoritative. A reconcile run inserts a record
for every remote file that has none (matched by name within the folder),
removes records whose file is gone, and leaves everything else untouched, so
running it twice in a row changes nothing the second time. A failure on one
file is logged and counted, and the run continues with the next.
"""

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa

from api.database import playlists, stream_folders, videos
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.errors import RemoteTransportError, StreamError
from api.metrics import RECONCILE_TOTAL
from config import DEFAULT_FOLDER_QUOTA_MB, QUOTA_DRIFT_TOLERANCE_MB
from streaming import identity
from streaming.identity import RemoteVideoPath, folder_directory
from streaming.inspector import RemoteVideoInspector
from streaming.transport import quote

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


# Path segment that precedes the opaque id in streaming-proxy URLs
STREAM_URL_SEGMENT = "/stream/"


@dataclass
class ReconcileResult:
    created: int = 0
    skipped: int = 0
    orphans_removed: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def folder_marker(owner_login: str, folder_name: str) -> str:
    return f"/{owner_login}/{folder_name}/"


def record_url(owner_login: str, folder_name: str, filename: str) -> str:
    return f"/content/{owner_login}/{folder_name}/{filename}"


def playlist_name_for(folder_name: str) -> str:
    return f"Remote - {folder_name}"


def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _proxied_path(url: str) -> Optional[RemoteVideoPath]:
    """Remote file behind a streaming-proxy URL, or None if the URL is not one."""
    if STREAM_URL_SEGMENT not in url:
        return None
    video_id = url.rsplit(STREAM_URL_SEGMENT, 1)[1].split("?", 1)[0]
    if video_id.startswith("direct/"):
        video_id = video_id[len("direct/"):]
    try:
        return RemoteVideoPath.parse(identity.decode(video_id))
    except StreamError:
        return None


def linked_file_name(url: str, owner_login: str, folder_name: str) -> Optional[str]:
    """
    Name of the folder file a record URL points at, or None if it points elsewhere.

    Content URLs carry the path in clear (``.../<login>/<folder>/<file>``);
    streaming-proxy URLs carry it as an opaque id (``.../stream/<id>``).
    """
    proxied = _proxied_path(url)
    if proxied is not None:
        if (proxied.owner, proxied.folder) == (owner_login, folder_name):
            return proxied.filename
        return None

    marker = folder_marker(owner_login, folder_name)
    if marker not in url:
        return None
    # Only direct children: nothing but the file name after the marker
    name = url.split(marker, 1)[1]
    if not name or "/" in name:
        return None
    return name


def retarget_url(url: str, target: RemoteVideoPath) -> str:
    """The URL a record should carry after its file moved to target, in the same form."""
    if _proxied_path(url) is not None:
        prefix = url.rsplit(STREAM_URL_SEGMENT, 1)[0]
        return f"{prefix}{STREAM_URL_SEGMENT}{identity.encode(target.format())}"
    return record_url(target.owner, target.folder, target.filename)


async def folder_records(owner_login: str, folder_name: str) -> List[Tuple[str, Any]]:
    """(file name, record) pairs for every video record that points into the folder."""
    marker = folder_marker(owner_login, folder_name)
    rows = await fetch_all_with_retry(
        videos.select()
        .where(
            sa.or_(
                videos.c.url.like(f"%{escape_like(marker)}%", escape="\\"),
                videos.c.url.like(f"%{escape_like(STREAM_URL_SEGMENT)}%", escape="\\"),
            )
        )
        .order_by(videos.c.id)
    )
    records = []
    for row in rows:
        name = linked_file_name(row["url"], owner_login, folder_name)
        if name is not None:
            records.append((name, row))
    return records


async def get_or_create_playlist(owner_id: int, folder_name: str) -> int:
    """Default playlist that collects a folder's synced videos."""
    name = playlist_name_for(folder_name)
    query = (
        sa.select(playlists.c.id)
        .where(playlists.c.owner_id == owner_id)
        .where(playlists.c.name == name)
        .order_by(playlists.c.id)
        .limit(1)
    )
    row = await fetch_one_with_retry(query)
    if row is not None:
        return row["id"]

    playlist_id = await db_execute_with_retry(
        playlists.insert().values(
            name=name,
            owner_id=owner_id,
            created_at=datetime.now(timezone.utc),
        )
    )
    logger.info(f"Created playlist '{name}' (id {playlist_id}) for owner {owner_id}")
    return playlist_id


class SyncReconciler:
    """Keeps the videos table in line with remote folder contents."""

    def __init__(self, inspector: RemoteVideoInspector):
        self.inspector = inspector

    async def reconcile(self, server_id: int, owner_login: str, folder_name: str, owner_id: int) -> ReconcileResult:
        """
        Reconcile one folder.

        Raises:
            RemoteTransportError: if the remote listing could not be obtained.
        """
        remote_files = await self.inspector.list_videos(server_id, owner_login, folder_name)
        existing = await folder_records(owner_login, folder_name)

        by_name: Dict[str, List] = {}
        for name, row in existing:
            by_name.setdefault(name, []).append(row)

        result = ReconcileResult()
        playlist_id = None

        for remote_file in remote_files:
            if remote_file.name in by_name:
                result.skipped += 1
                continue
            try:
                if playlist_id is None:
                    playlist_id = await get_or_create_playlist(owner_id, folder_name)
                now = datetime.now(timezone.utc)
                await db_execute_with_retry(
                    videos.insert().values(
                        name=remote_file.name,
                        description=f"Synced from remote folder {folder_name}",
                        url=record_url(owner_login, folder_name, remote_file.name),
                        duration=0,
                        size_bytes=remote_file.size,
                        playlist_id=playlist_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
                result.created += 1
            except Exception as e:
                logger.exception(f"Failed to sync {remote_file.name} in {owner_login}/{folder_name}: {e}")
                result.failed += 1

        remote_names = {remote_file.name for remote_file in remote_files}
        for name, rows in by_name.items():
            if name in remote_names:
                continue
            for row in rows:
                try:
                    await db_execute_with_retry(videos.delete().where(videos.c.id == row["id"]))
                    result.orphans_removed += 1
                except Exception as e:
                    logger.exception(f"Failed to remove orphaned record {row['id']} ({name}): {e}")
                    result.failed += 1

        RECONCILE_TOTAL.labels(result="created").inc(result.created)
        RECONCILE_TOTAL.labels(result="skipped").inc(result.skipped)
        RECONCILE_TOTAL.labels(result="orphan_removed").inc(result.orphans_removed)
        RECONCILE_TOTAL.labels(result="failed").inc(result.failed)

        logger.info(
            f"Reconciled {owner_login}/{folder_name} on server {server_id}: "
            f"{result.created} created, {result.skipped} unchanged, "
            f"{result.orphans_removed} orphans removed, {result.failed} failed"
        )
        return result

    async def ensure_folder_directory(self, server_id: int, owner_login: str, folder_name: str) -> str:
        """Create the folder's remote directory if it does not exist yet."""
        directory = folder_directory(owner_login, folder_name)
        result = await self.inspector.executor.run(server_id, f"mkdir -p -- {quote(directory)}")
        if not result.ok:
            raise RemoteTransportError("Could not create folder on media server", details=result.error_text)
        return directory


async def folder_usage(folder, owner_login: str) -> dict:
    """
    Storage used by a folder, corrected against its video records.

    The real usage is the sum of record sizes (each rounded up to whole MB).
    The larger of real and stored usage is reported, and the stored counter is
    updated when the two differ by more than the drift tolerance.
    """
    records = await folder_records(owner_login, folder["name"])
    real_used_mb = sum(math.ceil((row["size_bytes"] or 0) / BYTES_PER_MB) for _, row in records)
    stored_used_mb = folder["used_mb"] or 0
    total_mb = folder["quota_mb"] or DEFAULT_FOLDER_QUOTA_MB

    used_mb = max(real_used_mb, stored_used_mb)
    if abs(used_mb - stored_used_mb) > QUOTA_DRIFT_TOLERANCE_MB:
        await db_execute_with_retry(
            stream_folders.update().where(stream_folders.c.id == folder["id"]).values(used_mb=used_mb)
        )
        logger.info(f"Corrected usage of folder {folder['id']} ({folder['name']}): {stored_used_mb}MB -> {used_mb}MB")

    return {
        "used": used_mb,
        "total": total_mb,
        "percentage": round(used_mb / total_mb * 100),
        "available": total_mb - used_mb,
        "database_used": stored_used_mb,
        "real_used": real_used_mb,
        "last_updated": datetime.now(timezone.utc).isoformat(),
    }
