from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.backend.base import AuthUser, DataBackend
from app.core.auth import get_backend, get_current_user, http_error
from app.core.errors import MentorLinkError
from app.schemas.enums import Role
from .schemas import (
    ConnectionListing,
    ConnectionRecord,
    ConnectRequestIn,
    ConnectRequestOut,
    PendingCountOut,
    RespondIn,
)
from .service import ConnectionLifecycle

router = APIRouter(prefix="/v1/connections", tags=["connections"])


def get_lifecycle(backend: DataBackend = Depends(get_backend)) -> ConnectionLifecycle:
    return ConnectionLifecycle(backend)


@router.post("/request", response_model=ConnectRequestOut, status_code=201)
async def connect_request(
    payload: ConnectRequestIn,
    user: AuthUser = Depends(get_current_user),
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
):
    try:
        conn = await lifecycle.request_connection(user, payload.mentor_id)
    except MentorLinkError as e:
        raise http_error(e)
    return {"connection_id": conn.id, "status": conn.status}


@router.get("", response_model=ConnectionListing)
async def connection_list(
    role: Optional[Role] = Query(default=None),
    user: AuthUser = Depends(get_current_user),
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
):
    # fall back to the account type chosen at signup
    if role is None:
        if user.user_type not in (Role.student.value, Role.mentor.value):
            raise HTTPException(status_code=400, detail="role required")
        role = Role(user.user_type)

    try:
        return await lifecycle.list_connections(user.user_id, role)
    except MentorLinkError as e:
        raise http_error(e)


@router.get("/pending-count", response_model=PendingCountOut)
async def pending_count(
    user: AuthUser = Depends(get_current_user),
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
):
    try:
        return {"pending": await lifecycle.count_pending(user.user_id)}
    except MentorLinkError as e:
        raise http_error(e)


@router.post("/{connection_id}/respond", response_model=ConnectionRecord)
async def connect_respond(
    connection_id: str,
    payload: RespondIn,
    user: AuthUser = Depends(get_current_user),
    lifecycle: ConnectionLifecycle = Depends(get_lifecycle),
):
    try:
        return await lifecycle.respond(user, connection_id, payload.decision)
    except MentorLinkError as e:
        raise http_error(e)
