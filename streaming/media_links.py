"""
URLs on the external media engine.

The engine serves the same content tree the media servers hold, so a video's
external URL is the engine base URL followed by its path below the content
root. Credentials, when configured, are placed in the URL userinfo. Only the
redacted form of such a URL may be logged.
"""

import logging
from typing import Callable, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from api.errors import redact_secrets
from config import CONTENT_ROOT, EXTERNAL_MEDIA_BASE_URL, EXTERNAL_MEDIA_PASSWORD, EXTERNAL_MEDIA_USER
from streaming.identity import relative_to_root

logger = logging.getLogger(__name__)

# Builds the external URL for a remote path, or None when no engine is configured
MediaUrlBuilder = Callable[[str], Optional[str]]


class ExternalMediaLinks:
    """Builds external media engine URLs from configured base URL and credentials."""

    def __init__(
        self,
        base_url: str = EXTERNAL_MEDIA_BASE_URL,
        username: str = EXTERNAL_MEDIA_USER,
        password: str = EXTERNAL_MEDIA_PASSWORD,
        content_root: str = CONTENT_ROOT,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.content_root = content_root

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _with_credentials(self, url: str) -> str:
        if not self.username:
            return url
        parts = urlsplit(url)
        userinfo = quote(self.username, safe="")
        if self.password:
            userinfo += ":" + quote(self.password, safe="")
        netloc = f"{userinfo}@{parts.hostname or ''}"
        if parts.port:
            netloc += f":{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    def __call__(self, remote_path: str) -> Optional[str]:
        if not self.configured:
            return None
        url = self._with_credentials(self.base_url + quote(relative_to_root(remote_path, self.content_root)))
        logger.debug(f"External media URL for {remote_path}: {redact_secrets(url)}")
        return url
