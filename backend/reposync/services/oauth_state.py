"""
OAuth state codec and return-URL validation.

The state parameter travels through the provider's authorize/callback round
trip, so it is a self-contained signed JWT rather than a server-side session
key. Decoding never raises: anything that is not a valid, unexpired state
token decodes to ``None``.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urljoin, urlsplit

import jwt

from reposync.core.settings import get_settings
from logconfig.logger import get_logger

logger = get_logger()

STATE_TOKEN_TYPE = "oauth_state"


@dataclass
class OAuthState:
    """Redirect-flow context carried across the provider round trip."""
    project_id: str
    repository_type: str
    user_id: Optional[str] = None
    return_to: Optional[str] = None
    repository_url: Optional[str] = None


class OAuthStateCodec:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ):
        settings = get_settings()
        self.secret_key = secret_key or settings.SECRET_KEY
        self.algorithm = algorithm or settings.ALGORITHM
        self.ttl = timedelta(seconds=ttl_seconds or settings.OAUTH_STATE_TTL_SECONDS)

    def encode(self, state: OAuthState) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "typ": STATE_TOKEN_TYPE,
            "iat": now,
            "exp": now + self.ttl,
            "projectId": state.project_id,
            "repositoryType": state.repository_type,
            "userId": state.user_id,
            "returnTo": state.return_to,
            "repositoryUrl": state.repository_url,
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode(self, token: Optional[str]) -> Optional[OAuthState]:
        if not token:
            return None
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.PyJWTError as e:
            logger.info(f"Rejected OAuth state: {e.__class__.__name__}")
            return None

        if payload.get("typ") != STATE_TOKEN_TYPE:
            return None
        project_id = payload.get("projectId")
        repository_type = payload.get("repositoryType")
        if not isinstance(project_id, str) or not project_id:
            return None
        if not isinstance(repository_type, str) or not repository_type:
            return None

        return OAuthState(
            project_id=project_id,
            repository_type=repository_type,
            user_id=payload.get("userId"),
            return_to=payload.get("returnTo"),
            repository_url=payload.get("repositoryUrl"),
        )


def resolve_return_to(return_to: Optional[str], request_origin: str, default_path: str) -> str:
    """
    Resolve a post-OAuth return URL, refusing anything off-origin.

    Args:
        return_to: Absolute or relative URL supplied by the client
        request_origin: Scheme and host of the request being served
        default_path: Safe fallback path

    Returns:
        Path (with query and fragment) on the request origin
    """
    if not return_to:
        return default_path

    try:
        origin = urlsplit(request_origin)
        resolved = urlsplit(urljoin(request_origin.rstrip("/") + "/", return_to))
    except ValueError:
        return default_path

    if resolved.scheme not in ("http", "https"):
        return default_path
    if (resolved.scheme, resolved.netloc.lower()) != (origin.scheme, origin.netloc.lower()):
        logger.warning(f"Discarding off-origin returnTo target: {resolved.netloc}")
        return default_path

    path = resolved.path or "/"
    if resolved.query:
        path = f"{path}?{resolved.query}"
    if resolved.fragment:
        path = f"{path}#{resolved.fragment}"
    return path
