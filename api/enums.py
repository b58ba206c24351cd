"""
Centralized enums for values shared by the API and the streaming core.
Using str-based enums so values serialize and compare as plain strings.
"""

from enum import Enum


class DeliveryStrategy(str, Enum):
    """How a stream request is answered."""

    DIRECT = "direct"  # remote bytes piped through, no local copy
    CACHED = "cached"  # downloaded once, served from local disk
    EXTERNAL = "external"  # redirect to the external media engine
    PROXY = "proxy"  # redirect to the direct-stream endpoint


class AvailabilityReason(str, Enum):
    """Why a remote file is not available for streaming."""

    NOT_FOUND = "not_found"
    EMPTY_FILE = "empty_file"


class MediaServerStatus(str, Enum):
    """Status values for media servers."""

    ACTIVE = "active"
    DISABLED = "disabled"


class StreamPreference(str, Enum):
    """Client playback preference on the general stream endpoint."""

    AUTO = "auto"
    DIRECT = "direct"  # play from the external engine when one is configured
