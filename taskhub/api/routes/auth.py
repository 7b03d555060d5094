"""Registration, login, logout and the caller's own profile."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from taskhub.api.deps import bearer_token, envelope, get_actor, get_container
from taskhub.engine.context import Actor
from taskhub.schemas import LoginIn, RegisterIn, UserOut

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", status_code=201)
def register(
    body: RegisterIn,
    request: Request,
    container=Depends(get_container),
    user_agent: Optional[str] = Header(None),
):
    container.auth.register(body.email, body.password, body.first_name, body.last_name)
    result = container.auth.authenticate(
        body.email,
        body.password,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )
    return envelope(
        {"user": UserOut.model_validate(result["user"]).dump(), "token": result["token"]},
        "User registered successfully",
    )


@router.post("/login")
def login(
    body: LoginIn,
    request: Request,
    container=Depends(get_container),
    user_agent: Optional[str] = Header(None),
):
    result = container.auth.authenticate(
        body.email,
        body.password,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )
    return envelope(
        {"user": UserOut.model_validate(result["user"]).dump(), "token": result["token"]},
        "Login successful",
    )


@router.post("/logout")
def logout(
    actor: Actor = Depends(get_actor),
    token: Optional[str] = Depends(bearer_token),
    container=Depends(get_container),
):
    container.auth.logout(token)
    return envelope(message="Logout successful")


@router.get("/me")
def me(actor: Actor = Depends(get_actor), container=Depends(get_container)):
    return envelope({"user": container.users.profile(actor.id).dump()})
