"""
Bearer-token authentication.

Tokens are HS256 JWTs issued by the account service. Claims used here:
``userId`` (account id), ``email`` and ``tipo`` (account kind). The caller's
owner login, which scopes every remote path, is the local part of the email
or ``user_<id>`` when the token carries no email.

Stream endpoints also accept the token as a ``token`` query parameter, since
video elements cannot send an Authorization header.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from jose import JWTError, jwt

from api.common import get_real_ip
from api.errors import AccessDenied, Unauthenticated
from config import ADMIN_API_SECRET, JWT_ALGORITHM, JWT_SECRET

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.auth")


@dataclass(frozen=True)
class Principal:
    user_id: int
    email: Optional[str] = None
    kind: Optional[str] = None

    @property
    def owner_login(self) -> str:
        if self.email and "@" in self.email:
            local_part = self.email.split("@", 1)[0]
            if local_part:
                return local_part
        return f"user_{self.user_id}"


def decode_token(token: str) -> Principal:
    """
    Verify signature and expiry and build the principal.

    Raises:
        Unauthenticated: for any invalid, expired or incomplete token.
    """
    if not JWT_SECRET:
        raise Unauthenticated("Invalid token", details="token verification is not configured")
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        raise Unauthenticated("Invalid token") from e

    try:
        user_id = int(claims["userId"])
    except (KeyError, TypeError, ValueError):
        raise Unauthenticated("Invalid token")
    email = claims.get("email")
    return Principal(
        user_id=user_id,
        email=email if isinstance(email, str) else None,
        kind=claims.get("tipo"),
    )


def extract_token(request: Request, allow_query: bool = False) -> Optional[str]:
    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    if allow_query:
        token = request.query_params.get("token")
        if token:
            return token
    return None


def authenticate(request: Request, allow_query: bool = False) -> Principal:
    token = extract_token(request, allow_query=allow_query)
    if token is None:
        security_logger.info(f"Missing token for {request.url.path} from {get_real_ip(request)}")
        raise Unauthenticated()
    try:
        return decode_token(token)
    except Unauthenticated:
        security_logger.warning(f"Invalid token for {request.url.path} from {get_real_ip(request)}")
        raise


async def require_user(request: Request) -> Principal:
    """FastAPI dependency: Authorization header only."""
    return authenticate(request)


async def require_stream_user(request: Request) -> Principal:
    """FastAPI dependency for stream endpoints: header or ``?token=``."""
    return authenticate(request, allow_query=True)


async def require_admin(request: Request) -> Principal:
    """
    FastAPI dependency for cache administration.

    Any authenticated caller is accepted unless VSTREAM_ADMIN_API_SECRET is
    set, in which case the X-Admin-Secret header must match it as well.
    """
    principal = authenticate(request)
    if ADMIN_API_SECRET:
        provided = request.headers.get("X-Admin-Secret", "")
        if not provided or not hmac.compare_digest(provided, ADMIN_API_SECRET):
            security_logger.warning(
                f"Admin secret rejected for user {principal.user_id} on {request.url.path} from {get_real_ip(request)}"
            )
            raise AccessDenied("Admin access required")
    return principal
