from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import jwt

from reposync.core.settings import get_settings
from logconfig.logger import get_logger

logger = get_logger()

ACCESS_TOKEN_EXPIRE_MINUTES = 60

# Project roles allowed to link and sync repositories
SYNC_ROLES = ("admin", "member")


class CurrentUser:
    """Authenticated caller."""

    def __init__(self, id: str, email: Optional[str] = None, role: str = "member"):
        self.id = id
        self.email = email
        self.role = role

    def __repr__(self):
        return f"<CurrentUser {self.id} ({self.role})>"


def can_sync_repositories(role: Optional[str]) -> bool:
    return role in SYNC_ROLES


def create_access_token(
    subject: Union[str, Any],
    expires_delta: Optional[timedelta] = None,
    data: Optional[dict] = None,
) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = {"exp": expire, "sub": str(subject), "type": "access"}
    if data:
        to_encode.update(data)

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError as e:
        logger.info(f"Rejected access token: {e.__class__.__name__}")
        return None
    if payload.get("type") != "access":
        return None
    return payload
