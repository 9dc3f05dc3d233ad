"""Authentication utilities for the gigsettle backend.

Callers present a bearer JWT (or the httpOnly auth cookie) whose `sub`
claim is their marketplace identity. The engine maps that identity to a
role on each escrow; roles are never taken from request bodies.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("gigsettle.api.auth")

# Cookie name for httpOnly auth
AUTH_COOKIE_NAME = "gigsettle_auth"

# Make bearer optional to allow cookie fallback
security = HTTPBearer(auto_error=False)


def create_access_token(
    agent_id: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
    admin: bool = False,
) -> str:
    """Create a JWT access token for an identity."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    to_encode = {
        "sub": agent_id,
        "exp": expire,
        "iat": now,
        "type": "access",
    }
    if admin:
        to_encode["admin"] = True
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthContext:
    """Authenticated caller."""

    def __init__(self, agent_id: str, is_admin: bool = False):
        self.agent_id = agent_id
        self.is_admin = is_admin


async def get_current_agent(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
    request: Request,
) -> AuthContext:
    """Get the authenticated caller from the Authorization header or cookie."""
    token = credentials.credentials if credentials else request.cookies.get(AUTH_COOKIE_NAME)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated - provide Authorization header or auth cookie",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(token, settings)
    agent_id = payload.get("sub")
    if not agent_id or payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )
    is_admin = bool(payload.get("admin")) or agent_id in settings.admin_agents
    return AuthContext(agent_id=agent_id, is_admin=is_admin)


async def require_admin(
    auth: Annotated[AuthContext, Depends(get_current_agent)],
) -> AuthContext:
    """Reject callers without admin rights."""
    if not auth.is_admin:
        logger.warning(f"Admin access denied | agent={auth.agent_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return auth


# Type aliases for dependency injection
CurrentAgent = Annotated[AuthContext, Depends(get_current_agent)]
AdminAgent = Annotated[AuthContext, Depends(require_admin)]
