"""
Error taxonomy and error-message sanitizing.

Every failure the streaming core can report to a client is a StreamError
subclass carrying its HTTP status. The API renders them uniformly as
``{"success": false, "error": ..., "details": ...}``. Detail strings may echo
lower-level error text, so they pass through sanitize_details() first to
strip credentials and bound their length.
"""

import logging
import re
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH

logger = logging.getLogger(__name__)

# Patterns that may carry secrets in lower-level error text
_SECRET_PATTERNS = [
    # user:password@host in URLs
    (re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/\s:@]+:[^/\s@]+@"), r"\g<scheme>***@"),
    # key=value pairs for common secret names
    (
        re.compile(r"(?P<key>password|passwd|pwd|secret|token|api_key|apikey)(?P<sep>\s*[=:]\s*)\S+", re.IGNORECASE),
        r"\g<key>\g<sep>***",
    ),
    # Bearer tokens
    (re.compile(r"(?P<prefix>Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE), r"\g<prefix>***"),
]


def truncate_error(message: Optional[str], max_length: int = ERROR_SUMMARY_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message to max_length, marking the cut with an ellipsis."""
    if message is None:
        return None
    if len(message) <= max_length:
        return message
    return message[: max(0, max_length - 3)] + "..."


def redact_secrets(text: str) -> str:
    """Replace credentials embedded in text (URL userinfo, key=value secrets, bearer tokens)."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_details(details: Optional[str]) -> Optional[str]:
    """
    Make a diagnostic string safe to return to an API client.

    Credentials are redacted and the result is bounded by
    VSTREAM_ERROR_DETAIL_MAX_LENGTH.
    """
    if details is None:
        return None
    details = redact_secrets(str(details)).strip()
    if not details:
        return None
    return truncate_error(details, ERROR_DETAIL_MAX_LENGTH)


class StreamError(Exception):
    """Base class for errors reported to clients with a fixed HTTP status."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message if details is None else f"{self.message}: {details}")

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message}
        safe_details = sanitize_details(self.details)
        if safe_details:
            body["details"] = safe_details
        return body


class Unauthenticated(StreamError):
    """Missing, invalid or expired token."""

    status_code = 401
    default_message = "Access token required"


class InvalidIdentifier(StreamError):
    """Opaque video id could not be decoded into a usable remote path."""

    status_code = 400
    default_message = "Invalid video identifier"


class ValidationFailed(StreamError):
    status_code = 400
    default_message = "Invalid request"


class AccessDenied(StreamError):
    """Decoded path does not belong to the caller."""

    status_code = 403
    default_message = "Access denied to this video"


class NotFound(StreamError):
    status_code = 404
    default_message = "Video not found"


class NameConflict(StreamError):
    status_code = 409
    default_message = "A video with this name already exists"


class RangeNotSatisfiable(StreamError):
    """Requested byte range lies outside the file."""

    status_code = 416
    default_message = "Requested range not satisfiable"

    def __init__(self, size: int):
        self.size = size
        super().__init__()


class RemoteTransportError(StreamError):
    """The remote execution channel failed (connection loss, command error, timeout)."""

    status_code = 500
    default_message = "Error accessing video on media server"

    @classmethod
    def for_video(cls, error: "RemoteTransportError") -> "RemoteTransportError":
        """The generic video access error, keeping the transport message as details."""
        if error.message == cls.default_message:
            return error
        return cls(details=error.message)


class CacheWriteError(StreamError):
    """Writing a downloaded file into the local cache failed."""

    status_code = 500
    default_message = "Error writing video to local cache"


class NoServerConfigured(StreamError):
    """No media server is associated with the account and no default policy is set."""

    status_code = 503
    default_message = "No media server configured for this account"


class MediaInfoFailed(StreamError):
    """
    Media probing failed on the remote host.

    Callers treat this as missing metadata, not as a request failure.
    """

    status_code = 502
    default_message = "Could not read video metadata"
