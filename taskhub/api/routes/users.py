"""User administration and self-service endpoints."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from taskhub.api.deps import envelope, get_actor, get_container
from taskhub.engine.context import Actor, Role
from taskhub.schemas import ChangePasswordIn, UserQuery, UserUpdate

router = APIRouter(prefix="/api/users", tags=["users"])

_SORT_FIELDS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "lastLogin": "last_login",
}


def user_query(
    role: Optional[Role] = Query(None),
    is_active: Optional[bool] = Query(None, alias="isActive"),
    search: Optional[str] = Query(None, max_length=255),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: Literal["createdAt", "updatedAt", "firstName", "lastName", "email", "lastLogin"] = Query(
        "createdAt", alias="sortBy"
    ),
    sort_order: Literal["ASC", "DESC"] = Query("DESC", alias="sortOrder"),
) -> UserQuery:
    return UserQuery(
        role=role,
        is_active=is_active,
        search=search,
        page=page,
        limit=limit,
        sort_by=_SORT_FIELDS[sort_by],
        sort_order=sort_order,
    )


@router.get("")
def list_users(
    query: UserQuery = Depends(user_query),
    actor: Actor = Depends(get_actor),
    container=Depends(get_container),
):
    return envelope(container.users.list(actor, query).dump())


@router.get("/{user_id}")
def get_user(user_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    return envelope({"user": container.users.get(actor, user_id).dump()})


@router.put("/{user_id}")
def update_user(
    user_id: str,
    body: UserUpdate,
    actor: Actor = Depends(get_actor),
    container=Depends(get_container),
):
    user = container.users.update(actor, user_id, body.changes())
    return envelope({"user": user.dump()}, "User updated successfully")


@router.delete("/{user_id}")
def delete_user(user_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    container.users.delete(actor, user_id)
    return envelope(message="User deleted successfully")


@router.put("/{user_id}/change-password")
def change_password(
    user_id: str,
    body: ChangePasswordIn,
    actor: Actor = Depends(get_actor),
    container=Depends(get_container),
):
    container.users.change_password(actor, user_id, body.current_password, body.new_password)
    return envelope(message="Password changed successfully")


@router.put("/{user_id}/deactivate")
def deactivate_user(user_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    user = container.users.deactivate(actor, user_id)
    return envelope({"user": user.dump()}, "User deactivated successfully")


@router.put("/{user_id}/activate")
def activate_user(user_id: str, actor: Actor = Depends(get_actor), container=Depends(get_container)):
    user = container.users.activate(actor, user_id)
    return envelope({"user": user.dump()}, "User activated successfully")
