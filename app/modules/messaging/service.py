import base64
import binascii
import mimetypes
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from app.backend.base import DataBackend, Query
from app.core.errors import InvalidRequest, InvalidTransition, NotFound
from app.modules.connections.schemas import ConnectionRecord
from app.schemas.enums import ConnectionStatus
from .schemas import MessageRecord

MESSAGE_BUCKET = "message-images"

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.S)


def new_client_id() -> str:
    return uuid.uuid4().hex


def present(backend: DataBackend, row: Dict[str, Any]) -> MessageRecord:
    msg = MessageRecord.model_validate(row)
    if msg.image and msg.image.startswith("data:"):
        msg.image_url = msg.image
    elif msg.image:
        msg.image_url = backend.get_public_url(MESSAGE_BUCKET, msg.image)
    return msg


def check_sendable(connection: ConnectionRecord, sender_id: str, content: str, image: Optional[str]) -> str:
    if connection.role_of(sender_id) is None:
        raise NotFound("Connection not found")
    if connection.status is not ConnectionStatus.accepted:
        raise InvalidTransition("Messaging requires an accepted connection")
    text = (content or "").strip()
    if not text and not image:
        raise InvalidRequest("Message needs text or an image")
    return text


async def store_image(backend: DataBackend, connection_id: str, client_id: str, image: Optional[str]) -> Optional[str]:
    """Upload a data-URI image and return its storage path; stored paths pass through."""
    if not image:
        return None
    match = _DATA_URI.match(image)
    if not match:
        return image

    try:
        data = base64.b64decode(match["data"], validate=True)
    except (binascii.Error, ValueError):
        raise InvalidRequest("Malformed image data")

    mime = match["mime"]
    ext = mimetypes.guess_extension(mime) or ".bin"
    path = f"{connection_id}/{client_id}{ext}"
    return await backend.upload_object(MESSAGE_BUCKET, path, data, mime)


# ---------- MESSAGING ----------

async def load_history(backend: DataBackend, connection: ConnectionRecord) -> List[MessageRecord]:
    rows = await backend.query(
        Query("messages", eq={"connection_id": connection.id}).order_by("created_at")
    )
    return [present(backend, row) for row in rows]


async def persist_message(
    backend: DataBackend,
    connection: ConnectionRecord,
    sender_id: str,
    content: str,
    image: Optional[str] = None,
    client_id: Optional[str] = None,
) -> MessageRecord:
    text = check_sendable(connection, sender_id, content, image)
    client_id = client_id or new_client_id()

    # a retried send whose first attempt did land must not insert twice
    existing = await backend.fetch_one(
        Query("messages", eq={"connection_id": connection.id, "client_id": client_id})
    )
    if existing:
        logger.debug(f"[messaging] client_id={client_id} already stored as {existing['id']}")
        return present(backend, existing)

    stored_image = await store_image(backend, connection.id, client_id, image)
    row = await backend.insert(
        "messages",
        {
            "connection_id": connection.id,
            "sender_id": sender_id,
            "receiver_id": connection.counterpart_of(sender_id),
            "content": text,
            "image": stored_image,
            "client_id": client_id,
        },
    )
    logger.info(f"[messaging] stored message {row['id']} on connection {connection.id}")
    return present(backend, row)


async def mark_read(backend: DataBackend, connection: ConnectionRecord, reader_id: str) -> int:
    if connection.role_of(reader_id) is None:
        raise NotFound("Connection not found")
    rows = await backend.update(
        Query(
            "messages",
            eq={"connection_id": connection.id, "receiver_id": reader_id},
            is_null=("read_at",),
        ),
        {"read_at": datetime.now(timezone.utc)},
    )
    return len(rows)
