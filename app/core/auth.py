from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from loguru import logger

from app.backend.base import AuthUser, DataBackend
from app.core.errors import AuthRequired, MentorLinkError


# ------------------------------------------------------------
# Backend handle
# ------------------------------------------------------------
def get_backend(request: Request) -> DataBackend:
    """The single backend client built at startup (see app.main lifespan)."""
    backend = getattr(request.app.state, "backend", None)
    if backend is None:
        raise HTTPException(status_code=503, detail="Backend not initialized")
    return backend


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthRequired("Missing Authorization header")

    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthRequired("Invalid Authorization header format")

    token = parts[1].strip()
    if not token:
        raise AuthRequired("Missing bearer token")

    return token


def http_error(e: MentorLinkError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


# ------------------------------------------------------------
# Main Dependency
# ------------------------------------------------------------
async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    backend: DataBackend = Depends(get_backend),
) -> AuthUser:
    try:
        user = await backend.authenticate(bearer_token(authorization))
    except MentorLinkError as e:
        logger.debug(f"[auth] rejected: {e}")
        raise http_error(e)

    logger.debug(f"[auth] user_id={user.user_id} via {backend.name}")
    return user
