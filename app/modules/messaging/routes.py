from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger

from app.backend.base import AuthUser, DataBackend
from app.core.auth import get_backend, get_current_user, http_error
from app.core.errors import AuthRequired, MentorLinkError
from app.modules.connections.service import ConnectionLifecycle
from .schemas import MarkReadOut, MessageHistoryOut, MessageRecord, SendMessageIn, ThreadMessage
from .service import load_history, mark_read, persist_message
from .sync import MessageThread

router = APIRouter(prefix="/v1/connections", tags=["messages"])

WS_AUTH_FAILED = 4401
WS_NOT_FOUND = 4404


@router.get("/{connection_id}/messages", response_model=MessageHistoryOut)
async def message_list(
    connection_id: str,
    user: AuthUser = Depends(get_current_user),
    backend: DataBackend = Depends(get_backend),
):
    try:
        connection = await ConnectionLifecycle(backend).get_connection(user, connection_id)
        messages = await load_history(backend, connection)
    except MentorLinkError as e:
        raise http_error(e)
    return {"connection_id": connection_id, "messages": messages}


@router.post("/{connection_id}/messages", response_model=MessageRecord, status_code=201)
async def message_send(
    connection_id: str,
    payload: SendMessageIn,
    user: AuthUser = Depends(get_current_user),
    backend: DataBackend = Depends(get_backend),
):
    try:
        connection = await ConnectionLifecycle(backend).get_connection(user, connection_id)
        return await persist_message(
            backend,
            connection,
            user.user_id,
            payload.content,
            payload.image,
            payload.client_id,
        )
    except MentorLinkError as e:
        raise http_error(e)


@router.post("/{connection_id}/messages/read", response_model=MarkReadOut)
async def message_mark_read(
    connection_id: str,
    user: AuthUser = Depends(get_current_user),
    backend: DataBackend = Depends(get_backend),
):
    try:
        connection = await ConnectionLifecycle(backend).get_connection(user, connection_id)
        return {"marked": await mark_read(backend, connection, user.user_id)}
    except MentorLinkError as e:
        raise http_error(e)


# ---------------------------------------------------
# Live thread over a socket
#   client -> {"type": "send", "content": ..., "image": ...}
#             {"type": "retry", "client_id": ...}
#             {"type": "read"}
#   server -> {"type": "history", "messages": [...]}
#             {"type": "message", "message": {...}}   (every local change)
#             {"type": "read", "marked": n}
#             {"type": "error", "status": ..., "detail": ...}
# ---------------------------------------------------
@router.websocket("/{connection_id}/stream")
async def message_stream(websocket: WebSocket, connection_id: str, token: Optional[str] = None):
    backend: DataBackend = websocket.app.state.backend

    try:
        user = await backend.authenticate(token)
        connection = await ConnectionLifecycle(backend).get_connection(user, connection_id)
    except MentorLinkError as e:
        code = WS_AUTH_FAILED if isinstance(e, AuthRequired) else WS_NOT_FOUND
        await websocket.close(code=code, reason=str(e))
        return

    await websocket.accept()

    async def push(msg: ThreadMessage) -> None:
        await websocket.send_json({"type": "message", "message": msg.model_dump(mode="json")})

    async def report(e: MentorLinkError) -> None:
        await websocket.send_json({"type": "error", "status": e.status_code, "detail": str(e)})

    thread = MessageThread(backend, connection, user.user_id, on_change=push)
    try:
        async with thread:
            try:
                history = await thread.load_history()
            except MentorLinkError as e:
                await report(e)
                await websocket.close(code=1011)
                return
            await websocket.send_json(
                {"type": "history", "messages": [m.model_dump(mode="json") for m in history]}
            )

            while True:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    await websocket.send_json(
                        {"type": "error", "status": 400, "detail": "Frame must be a JSON object"}
                    )
                    continue
                kind = data.get("type")
                try:
                    if kind == "send":
                        await thread.send(data.get("content", ""), data.get("image"))
                    elif kind == "retry":
                        await thread.retry(str(data.get("client_id", "")))
                    elif kind == "read":
                        marked = await mark_read(backend, connection, user.user_id)
                        await websocket.send_json({"type": "read", "marked": marked})
                    else:
                        await websocket.send_json(
                            {"type": "error", "status": 400, "detail": f"Unknown message type: {kind}"}
                        )
                except MentorLinkError as e:
                    await report(e)
    except WebSocketDisconnect:
        logger.info(f"[stream] {user.user_id} left connection {connection_id}")
