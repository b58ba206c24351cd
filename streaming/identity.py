"""
Opaque video identifiers and remote path structure.

A video is addressed by clients through an opaque token that encodes the
absolute path of the file on its media server. The encoding is URL-safe
base64 without padding, so ``decode(encode(p)) == p`` for every path.
Legacy identifiers in standard base64 (``+``, ``/``, ``=`` padding) are still
accepted on decode.

Ownership is a path property: a file belongs to ``login`` when its path
contains the segment ``/<login>/``.
"""

import base64
import binascii
import posixpath
import re
from dataclasses import dataclass

from api.errors import AccessDenied, InvalidIdentifier, ValidationFailed
from config import CONTENT_ROOT

# Both the URL-safe and the standard alphabet, optional padding
_OPAQUE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-+/]+={0,2}$")

# Path components that must never reach a remote shell
_FORBIDDEN_SEGMENTS = frozenset({".", ".."})

MAX_OPAQUE_ID_LENGTH = 4096


def encode(remote_path: str) -> str:
    """Encode an absolute remote path as a URL-safe opaque identifier."""
    return base64.urlsafe_b64encode(remote_path.encode("utf-8")).decode("ascii").rstrip("=")


def decode(opaque_id: str) -> str:
    """
    Decode an opaque identifier back into the remote path.

    Raises:
        InvalidIdentifier: if the token is not valid base64, not UTF-8, or
            does not decode to a clean absolute path.
    """
    if not opaque_id or len(opaque_id) > MAX_OPAQUE_ID_LENGTH or not _OPAQUE_ID_PATTERN.match(opaque_id):
        raise InvalidIdentifier()

    # Normalize the standard alphabet to the URL-safe one and restore padding
    token = opaque_id.rstrip("=").replace("+", "-").replace("/", "_")
    token += "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(token.encode("ascii"))
        remote_path = raw.decode("utf-8")
    except (binascii.Error, ValueError, UnicodeDecodeError):
        raise InvalidIdentifier()

    validate_remote_path(remote_path)
    return remote_path


def validate_remote_path(remote_path: str) -> None:
    """Reject paths that are relative, contain NUL/newlines, or traverse with '.'/'..'."""
    if not remote_path.startswith("/") or "\x00" in remote_path or "\n" in remote_path or "\r" in remote_path:
        raise InvalidIdentifier()
    segments = remote_path.split("/")
    if any(segment in _FORBIDDEN_SEGMENTS for segment in segments):
        raise InvalidIdentifier()
    if remote_path.endswith("/"):
        raise InvalidIdentifier()


def owns_path(remote_path: str, owner_login: str) -> bool:
    """Whether remote_path contains ``/<owner_login>/`` as a path segment."""
    if not owner_login or "/" in owner_login:
        return False
    return f"/{owner_login}/" in remote_path


def authorize(remote_path: str, owner_login: str) -> None:
    """
    Check that remote_path belongs to owner_login.

    Raises:
        AccessDenied: if the path does not contain ``/<owner_login>/``.
    """
    if not owns_path(remote_path, owner_login):
        raise AccessDenied()


@dataclass(frozen=True)
class RemoteVideoPath:
    """A video file under the content root: ``<root>/<owner>/<folder>/<filename>``."""

    owner: str
    folder: str
    filename: str
    root: str = CONTENT_ROOT

    @classmethod
    def parse(cls, remote_path: str, root: str = CONTENT_ROOT) -> "RemoteVideoPath":
        """
        Split an absolute remote path into owner, folder and filename.

        Raises:
            InvalidIdentifier: if the path is not exactly three levels below root.
        """
        validate_remote_path(remote_path)
        root = root.rstrip("/")
        prefix = root + "/"
        if not remote_path.startswith(prefix):
            raise InvalidIdentifier()
        parts = remote_path[len(prefix):].split("/")
        if len(parts) != 3 or not all(parts):
            raise InvalidIdentifier()
        owner, folder, filename = parts
        return cls(owner=owner, folder=folder, filename=filename, root=root)

    @property
    def directory(self) -> str:
        return f"{self.root}/{self.owner}/{self.folder}"

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.filename)[1]

    @property
    def stem(self) -> str:
        return posixpath.splitext(self.filename)[0]

    @property
    def relative(self) -> str:
        """Path below the content root, with a leading slash."""
        return f"/{self.owner}/{self.folder}/{self.filename}"

    def format(self) -> str:
        return f"{self.directory}/{self.filename}"

    def with_stem(self, new_stem: str) -> "RemoteVideoPath":
        """Same location and extension, new base name."""
        validate_file_stem(new_stem)
        return RemoteVideoPath(
            owner=self.owner,
            folder=self.folder,
            filename=f"{new_stem}{self.extension}",
            root=self.root,
        )

    def __str__(self) -> str:
        return self.format()


def validate_file_stem(stem: str) -> None:
    """A new file name must be a single, visible path component."""
    if not stem or not stem.strip():
        raise ValidationFailed("New name is required")
    if "/" in stem or "\\" in stem or "\x00" in stem or stem.startswith("."):
        raise ValidationFailed("New name must not contain path separators or start with a dot")


def folder_directory(owner_login: str, folder_name: str, root: str = CONTENT_ROOT) -> str:
    """Remote directory holding a folder's videos."""
    for part in (owner_login, folder_name):
        if not part or "/" in part or part in _FORBIDDEN_SEGMENTS or "\x00" in part:
            raise ValidationFailed("Invalid folder name")
    return f"{root.rstrip('/')}/{owner_login}/{folder_name}"


def relative_to_root(remote_path: str, root: str = CONTENT_ROOT) -> str:
    """Path below the content root with a leading slash; paths outside it are kept as-is."""
    prefix = root.rstrip("/")
    if prefix and remote_path.startswith(prefix + "/"):
        return remote_path[len(prefix):]
    return remote_path
