from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

logger = logging.getLogger("support_line.auth")

security = HTTPBearer(auto_error=False)

KNOWN_ROLES = {"admin", "service"}


@dataclass(frozen=True)
class AuthContext:
    subject: str
    roles: set[str]


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _developer_context() -> AuthContext:
    return AuthContext(subject="support-line-dev", roles=set(KNOWN_ROLES))


def _reject(code: int, detail: str) -> HTTPException:
    logger.warning("auth_rejected status=%s detail=%s", code, detail)
    return HTTPException(status_code=code, detail=detail)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    """Bearer token check for the dashboard and internal services calling the API."""
    settings = get_settings(request)
    if not settings.auth_enabled:
        return _developer_context()

    if not credentials or credentials.scheme.lower() != "bearer":
        raise _reject(status.HTTP_401_UNAUTHORIZED, "missing bearer token")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.InvalidTokenError as exc:
        raise _reject(status.HTTP_401_UNAUTHORIZED, "invalid auth token") from exc

    subject = payload.get("sub")
    roles = payload.get("roles", [])
    if not isinstance(subject, str) or not subject.strip():
        raise _reject(status.HTTP_401_UNAUTHORIZED, "token missing subject")
    if not isinstance(roles, list):
        raise _reject(status.HTTP_401_UNAUTHORIZED, "token roles must be a list")
    role_set = {str(role).strip() for role in roles if str(role).strip()}
    if not role_set:
        raise _reject(status.HTTP_403_FORBIDDEN, "token has no roles")
    return AuthContext(subject=subject.strip(), roles=role_set)


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = {role.strip() for role in required_roles if role.strip()}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            raise _reject(
                status.HTTP_403_FORBIDDEN,
                f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
