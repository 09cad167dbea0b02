"""Middleware: optional bearer-token authentication for the SnapClass API."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def _token_matches(presented: str, expected: str) -> bool:
    return secrets.compare_digest(presented.encode(), expected.encode())


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject requests whose bearer token does not match SNAPCLASS_API_KEY.

    Authentication is disabled when no key is configured. Session ids are
    not secrets, so a deployment reachable by other users should set a key.
    """
    expected: str | None = request.app.state.settings.api_key
    if expected is None:
        return

    if credentials is not None and _token_matches(credentials.credentials, expected):
        return

    logger.warning("Rejected unauthenticated request to %s", request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
