"""Authentication dependencies - session JWTs for reads, shared secret for cron."""

import logging
import secrets
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

security = HTTPBearer(auto_error=False)


class SessionUser(BaseModel):
    """Caller identity extracted from a session JWT."""
    user_id: str
    email: Optional[str] = None


def decode_session_token(token: str) -> Optional[SessionUser]:
    """Decode a GoTrue (Supabase) access token. Returns None if invalid."""
    if not settings.session_jwt_secret:
        return None
    try:
        payload = jwt.decode(
            token,
            settings.session_jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except JWTError:
        return None
    user_id = payload.get("sub")
    if not user_id:
        return None
    return SessionUser(user_id=user_id, email=payload.get("email"))


async def get_session_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> SessionUser:
    """Extract and validate the calling user from the bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing_auth",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = decode_session_token(credentials.credentials)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def _secret_matches(candidate: Optional[str]) -> bool:
    if not candidate or not settings.cron_secret:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), settings.cron_secret.encode("utf-8"))


async def verify_cron_caller(
    request: Request,
    x_cron_secret: Annotated[Optional[str], Header()] = None,
    authorization: Annotated[Optional[str], Header()] = None,
) -> str:
    """Accept the scheduler's shared secret, as a header or a bearer token.

    When `trust_cron_marker_header` is set, the platform scheduler's marker
    header alone is accepted; only enable it where the platform strips that
    header from outside traffic.
    """
    if _secret_matches(x_cron_secret):
        return "x-cron-secret"

    if authorization and authorization.lower().startswith("bearer "):
        if _secret_matches(authorization[7:].strip()):
            return "bearer"

    if settings.trust_cron_marker_header and request.headers.get(settings.cron_marker_header):
        return "marker-header"

    logger.warning(f"Rejected cron call to {request.url.path}")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="unauthorized",
    )
