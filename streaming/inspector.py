"""
Remote video inspection: file sizes, folder listings and media probing.

Every operation is a single remote command. Nothing here retries; transport
failures surface as RemoteTransportError and a command that ran but failed
is interpreted per operation (a failed ``stat`` means the file is absent).
"""

import json
import logging
import math
import posixpath
from dataclasses import dataclass
from typing import List, Optional

from api.enums import AvailabilityReason
from api.errors import MediaInfoFailed, RemoteTransportError
from config import REMOTE_MEDIA_INFO_TIMEOUT, SUPPORTED_VIDEO_EXTENSIONS
from streaming.identity import folder_directory
from streaming.transport import RemoteExecutor, quote

logger = logging.getLogger(__name__)


@dataclass
class MediaInfo:
    duration: float
    codec: str
    width: int
    height: int

    def to_dict(self) -> dict:
        return {
            "duration": self.duration,
            "codec": self.codec,
            "width": self.width,
            "height": self.height,
        }


@dataclass
class RemoteFileDescriptor:
    """What the media server reports about one file."""

    path: str
    exists: bool
    size: int = 0
    mtime: Optional[float] = None
    permissions: Optional[str] = None
    media: Optional[MediaInfo] = None

    @property
    def name(self) -> str:
        return posixpath.basename(self.path)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "exists": self.exists,
            "size": self.size,
            "mtime": self.mtime,
            "permissions": self.permissions,
            "media": self.media.to_dict() if self.media else None,
        }


@dataclass
class Availability:
    available: bool
    reason: Optional[AvailabilityReason] = None
    size: int = 0

    def to_dict(self) -> dict:
        result = {"available": self.available}
        if self.reason is not None:
            result["reason"] = self.reason.value
        return result


def is_video_file(filename: str) -> bool:
    return posixpath.splitext(filename)[1].lower() in SUPPORTED_VIDEO_EXTENSIONS


def validate_duration(raw_duration) -> float:
    """ffprobe reports duration as a string; missing or nonsensical values become 0."""
    try:
        duration = float(raw_duration)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(duration) or math.isinf(duration) or duration < 0:
        return 0.0
    return duration


def parse_media_info(output: str) -> MediaInfo:
    """
    Extract duration, codec and dimensions from ffprobe JSON output.

    Raises:
        MediaInfoFailed: if the output is not JSON or has no video stream.
    """
    try:
        data = json.loads(output)
    except ValueError as e:
        raise MediaInfoFailed(details="ffprobe returned invalid JSON") from e

    video_stream = None
    for stream in data.get("streams", []):
        if stream.get("codec_type") == "video":
            video_stream = stream
            break

    if not video_stream:
        raise MediaInfoFailed(details="No video stream found")

    return MediaInfo(
        duration=validate_duration(data.get("format", {}).get("duration")),
        codec=video_stream.get("codec_name", "unknown"),
        width=int(video_stream.get("width", 0) or 0),
        height=int(video_stream.get("height", 0) or 0),
    )


class RemoteVideoInspector:
    """Read-only queries against a media server's file system."""

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor

    async def stat_size(self, server_id: int, remote_path: str) -> int:
        """
        Size of remote_path in bytes; 0 when the file does not exist.

        Raises:
            RemoteTransportError: if the size could not be determined because
                the remote channel failed.
        """
        result = await self.executor.run(server_id, f"stat -c%s -- {quote(remote_path)}")
        if not result.ok:
            logger.debug(f"stat failed for {remote_path} on server {server_id}: {result.error_text}")
            return 0
        try:
            return int(result.text.strip())
        except ValueError:
            raise RemoteTransportError("Unexpected response from media server", details="stat output was not a size")

    async def stat(self, server_id: int, remote_path: str) -> RemoteFileDescriptor:
        """Size, modification time and permission string of remote_path."""
        result = await self.executor.run(server_id, f"stat -c '%s %Y %A' -- {quote(remote_path)}")
        if not result.ok:
            return RemoteFileDescriptor(path=remote_path, exists=False)

        fields = result.text.split()
        if len(fields) != 3:
            raise RemoteTransportError("Unexpected response from media server", details="stat output was malformed")
        try:
            size, mtime = int(fields[0]), float(fields[1])
        except ValueError:
            raise RemoteTransportError("Unexpected response from media server", details="stat output was malformed")
        return RemoteFileDescriptor(
            path=remote_path,
            exists=True,
            size=size,
            mtime=mtime,
            permissions=fields[2],
        )

    async def list_videos(self, server_id: int, owner_login: str, folder_name: str) -> List[RemoteFileDescriptor]:
        """
        Video files directly inside ``<root>/<owner_login>/<folder_name>``.

        A folder that does not exist yet lists as empty.
        """
        directory = folder_directory(owner_login, folder_name)
        quoted = quote(directory)
        # NUL-terminated records with the name last, so names may contain tabs
        command = (
            f"if [ -d {quoted} ]; then "
            f"find {quoted} -mindepth 1 -maxdepth 1 -type f -printf '%s\\t%T@\\t%M\\t%f\\0'; "
            f"fi"
        )
        result = await self.executor.run(server_id, command)
        if not result.ok:
            raise RemoteTransportError("Could not list folder on media server", details=result.error_text)

        files = []
        for record in result.stdout.split(b"\0"):
            if not record:
                continue
            try:
                size, mtime, permissions, name = record.decode("utf-8").split("\t", 3)
                descriptor = RemoteFileDescriptor(
                    path=f"{directory}/{name}",
                    exists=True,
                    size=int(size),
                    mtime=float(mtime),
                    permissions=permissions,
                )
            except (UnicodeDecodeError, ValueError):
                logger.warning(f"Skipping unparseable listing entry in {directory} on server {server_id}")
                continue
            if is_video_file(descriptor.name):
                files.append(descriptor)

        files.sort(key=lambda f: f.name)
        return files

    async def inspect_media(self, server_id: int, remote_path: str) -> MediaInfo:
        """
        Run ffprobe on the media server.

        Raises:
            MediaInfoFailed: if ffprobe is missing, fails, or finds no video stream.
            RemoteTransportError: if the command could not be run at all.
        """
        command = f"ffprobe -v quiet -print_format json -show_format -show_streams {quote(remote_path)}"
        result = await self.executor.run(server_id, command, timeout=REMOTE_MEDIA_INFO_TIMEOUT)
        if not result.ok:
            raise MediaInfoFailed(details=f"ffprobe exited with status {result.exit_status}")
        return parse_media_info(result.text)

    async def check_availability(self, server_id: int, remote_path: str) -> Availability:
        """Whether remote_path exists with non-zero size."""
        descriptor = await self.stat(server_id, remote_path)
        if not descriptor.exists:
            return Availability(available=False, reason=AvailabilityReason.NOT_FOUND)
        if descriptor.size == 0:
            return Availability(available=False, reason=AvailabilityReason.EMPTY_FILE)
        return Availability(available=True, size=descriptor.size)
