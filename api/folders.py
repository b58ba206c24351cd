"""
Folder and media-server lookups.

A folder names the server that stores it. Requests that address a video by
path use the server of the folder in that path, falling back to the
caller's first folder with a server when the path names no known folder.
There is no implicit fallback server: VSTREAM_DEFAULT_SERVER_ID must be set for
accounts without any mapping, otherwise the request fails with 503.
"""

import logging
from typing import Optional

import sqlalchemy as sa

from api.database import media_servers, stream_folders
from api.db_retry import fetch_one_with_retry
from api.enums import MediaServerStatus
from api.errors import InvalidIdentifier, NoServerConfigured, NotFound
from config import DEFAULT_SERVER_ID, SSH_PORT, SSH_USERNAME
from streaming.identity import RemoteVideoPath
from streaming.ssh_pool import ServerAddress

logger = logging.getLogger(__name__)


async def get_server_address(server_id: int) -> ServerAddress:
    """
    SSH address of an active media server.

    Raises:
        NoServerConfigured: if the server is not registered or disabled.
    """
    row = await fetch_one_with_retry(media_servers.select().where(media_servers.c.id == server_id))
    if row is None or row["status"] != MediaServerStatus.ACTIVE.value:
        logger.error(f"Media server {server_id} is not registered or not active")
        raise NoServerConfigured("Media server is not available", details=f"server {server_id}")
    return ServerAddress(
        server_id=row["id"],
        host=row["host"],
        port=row["ssh_port"] or SSH_PORT,
        username=row["ssh_username"] or SSH_USERNAME,
    )


async def resolve_server_for_user(user_id: int) -> Optional[int]:
    """Server of the user's first folder with a server mapping, or None."""
    query = (
        sa.select(stream_folders.c.server_id)
        .where(stream_folders.c.owner_id == user_id)
        .where(stream_folders.c.server_id.isnot(None))
        .order_by(stream_folders.c.id)
        .limit(1)
    )
    row = await fetch_one_with_retry(query)
    return row["server_id"] if row is not None else None


async def require_server_for_user(user_id: int) -> int:
    """
    Server for path-addressed requests.

    Raises:
        NoServerConfigured: if the user has no mapping and no default is configured.
    """
    server_id = await resolve_server_for_user(user_id)
    if server_id is not None:
        return server_id
    if DEFAULT_SERVER_ID is not None:
        logger.info(f"User {user_id} has no folder server mapping, using default server {DEFAULT_SERVER_ID}")
        return DEFAULT_SERVER_ID
    raise NoServerConfigured()


async def get_folder(owner_id: int, folder_id: Optional[int] = None, name: Optional[str] = None):
    """
    A folder owned by owner_id, by id or by name.

    Raises:
        NotFound: if no such folder belongs to the owner.
    """
    query = stream_folders.select().where(stream_folders.c.owner_id == owner_id)
    if folder_id is not None:
        query = query.where(stream_folders.c.id == folder_id)
    elif name is not None:
        query = query.where(stream_folders.c.name == name)
    else:
        raise NotFound("Folder not found")

    row = await fetch_one_with_retry(query)
    if row is None:
        raise NotFound("Folder not found")
    return row


async def server_for_folder(folder) -> int:
    if folder["server_id"] is not None:
        return folder["server_id"]
    return await require_server_for_user(folder["owner_id"])


async def server_for_path(user_id: int, remote_path: str) -> int:
    """Server of the folder a video path lives in, or the user's server if that folder is unknown."""
    try:
        video = RemoteVideoPath.parse(remote_path)
        folder = await get_folder(user_id, name=video.folder)
    except (InvalidIdentifier, NotFound):
        return await require_server_for_user(user_id)
    return await server_for_folder(folder)
