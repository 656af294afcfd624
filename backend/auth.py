"""Bearer-token authentication dependency."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from errors import UnauthorizedError
from services import AppServices

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Resolve the caller's user id or raise UnauthorizedError."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing or invalid authorization header.")

    user_id = get_services(request).records.get_user_id(credentials.credentials)
    if not user_id:
        raise UnauthorizedError("Invalid or expired token.")

    request.state.user_id = user_id
    return user_id
