"""
Authentication dependencies for FastAPI endpoints.

Callers present a bearer JWT signed with ``SECRET_KEY``. The ``sub`` claim is
the user id; ``role`` is the caller's project role and decides whether they may
link and sync repositories.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from reposync.core.security import CurrentUser, verify_token
from logconfig.logger import get_logger

logger = get_logger()
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    """
    Get current user from the bearer token.
    """
    payload = verify_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return CurrentUser(
        id=user_id,
        email=payload.get("email"),
        role=payload.get("role") or "viewer",
    )
