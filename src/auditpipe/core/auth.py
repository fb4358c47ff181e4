"""
Admin authentication.
"""

import secrets
from typing import Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import Settings, get_settings
from .exceptions import AuthenticationError

logger = structlog.get_logger(__name__)
security = HTTPBearer(auto_error=False)


def _settings_for(request: Request) -> Settings:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is not None:
        return pipeline.settings
    return get_settings()


async def authenticate_admin_token(
    request: Request,
    token: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Authenticate the admin bearer token.

    An empty configured token disables the admin surface.
    """
    if not token or not token.credentials:
        raise AuthenticationError("Missing authentication token")

    token_value = token.credentials.strip()
    expected = _settings_for(request).security.admin_token

    if not expected:
        logger.warning("Admin request rejected: no admin token configured")
        raise AuthenticationError("Admin API is disabled")

    if not secrets.compare_digest(token_value.encode("utf-8"), expected.encode("utf-8")):
        logger.warning(
            "Authentication failed: invalid admin token",
            token=token_value[:8] + "..." if len(token_value) >= 8 else "invalid",
        )
        raise AuthenticationError("Invalid admin token")

    return token_value
