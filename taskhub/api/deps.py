"""FastAPI dependencies: service container and the authenticated Actor."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from taskhub.engine.context import Actor


def get_container(request: Request):
    return request.app.state.container


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Extract ``<token>`` from ``Authorization: Bearer <token>``."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_actor(
    request: Request,
    container=Depends(get_container),
    token: Optional[str] = Depends(bearer_token),
) -> Actor:
    """
    Resolve the caller. Raises AuthenticationError (401) when the token is
    missing, expired or belongs to a deleted/deactivated account.
    """
    actor = container.auth.resolve_actor(token)
    request.state.actor = actor
    return actor


def envelope(data=None, message: Optional[str] = None) -> dict:
    """Success body: ``{success, message?, data?}``."""
    body = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body
