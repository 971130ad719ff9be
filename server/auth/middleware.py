"""Optional HTTP basic auth for the admin API."""

from __future__ import annotations

import base64
import binascii
import logging
import secrets
from dataclasses import dataclass

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Paths that don't require authentication
PUBLIC_PATHS = {
    "/health",
    "/",
}

REALM = "Promptworks Admin"


@dataclass(frozen=True)
class AuthConfig:
    """Basic auth is enforced only when enabled and both credentials are set."""

    enabled: bool = False
    username: str = ""
    password: str = ""

    @classmethod
    def from_settings(cls, settings) -> AuthConfig:
        return cls(
            enabled=settings.auth_enabled,
            username=settings.http_basic_auth_name,
            password=settings.http_basic_auth_password,
        )

    @property
    def uses_basic_auth(self) -> bool:
        return self.enabled and bool(self.username) and bool(self.password)


def check_basic_auth(header: str | None, config: AuthConfig) -> bool:
    if not header or not header.startswith("Basic "):
        return False
    try:
        decoded = base64.b64decode(header[6:], validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        return False
    username, _, password = decoded.partition(":")
    # Compare both halves so timing does not reveal which one was wrong.
    user_ok = secrets.compare_digest(username.encode(), config.username.encode())
    password_ok = secrets.compare_digest(password.encode(), config.password.encode())
    return user_ok & password_ok


class AuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, config: AuthConfig):
        super().__init__(app)
        self.config = config

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if (
            not self.config.uses_basic_auth
            or path in PUBLIC_PATHS
            or path.startswith("/docs")
            or path.startswith("/openapi")
        ):
            return await call_next(request)

        if check_basic_auth(request.headers.get("authorization"), self.config):
            return await call_next(request)

        logger.info("Rejected unauthenticated request to %s", path)
        return JSONResponse(
            status_code=401,
            content={"error": {"code": "UNAUTHORIZED", "message": "Authentication required"}},
            headers={"WWW-Authenticate": f'Basic realm="{REALM}"'},
        )
