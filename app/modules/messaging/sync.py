"""
Live view of one connection's conversation.

A ``MessageThread`` is the in-memory cache behind an open chat: it loads the
history, keeps a realtime subscription scoped to its connection while open,
and appends outgoing messages optimistically. Every entry carries a
``client_id`` so the optimistic copy, the insert response and the realtime
echo of the same message collapse into one entry.
"""
from __future__ import annotations

import inspect
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from loguru import logger
from pydantic import ValidationError

from app.backend.base import ChangeEvent, DataBackend, Subscription
from app.core.errors import MentorLinkError, NotFound
from app.modules.connections.schemas import ConnectionRecord
from app.schemas.enums import DeliveryState
from .schemas import MessageRecord, ThreadMessage
from .service import check_sendable, load_history, new_client_id, persist_message, present

ChangeListener = Callable[[ThreadMessage], Optional[Awaitable[None]]]


def _sort_key(msg: ThreadMessage):
    return (msg.created_at, msg.id or "", msg.client_id or "")


class MessageThread:
    def __init__(
        self,
        backend: DataBackend,
        connection: ConnectionRecord,
        viewer_id: str,
        on_change: Optional[ChangeListener] = None,
    ):
        peer_id = connection.counterpart_of(viewer_id)
        if peer_id is None:
            raise NotFound("Connection not found")
        self.backend = backend
        self.connection = connection
        self.viewer_id = viewer_id
        self.peer_id = peer_id
        self.on_change = on_change
        self.messages: List[ThreadMessage] = []
        self._subscription: Optional[Subscription] = None

    # ---------- lifecycle ----------

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    async def open(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = await self.backend.subscribe(
            "messages",
            ["INSERT"],
            self._on_insert,
            eq={"connection_id": self.connection.id},
        )
        logger.debug(f"[thread] opened connection={self.connection.id} viewer={self.viewer_id}")

    async def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.unsubscribe()
            logger.debug(f"[thread] closed connection={self.connection.id} viewer={self.viewer_id}")

    async def __aenter__(self) -> "MessageThread":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ---------- state ----------

    def find(self, client_id: str) -> Optional[ThreadMessage]:
        return next((m for m in self.messages if m.client_id == client_id), None)

    def _sort(self) -> None:
        self.messages.sort(key=_sort_key)

    async def _notify(self, msg: ThreadMessage) -> None:
        if self.on_change is None:
            return
        result = self.on_change(msg)
        if inspect.isawaitable(result):
            await result

    def _replace(self, old: ThreadMessage, new: ThreadMessage) -> None:
        for i, msg in enumerate(self.messages):
            if msg is old:
                self.messages[i] = new
                break
        self._sort()

    async def _merge(self, record: MessageRecord) -> ThreadMessage:
        """Fold a confirmed row into the list, matching on server id or client id."""
        confirmed = ThreadMessage(**record.model_dump(), state=DeliveryState.sent)
        for local in self.messages:
            same_row = local.id is not None and local.id == record.id
            same_send = record.client_id is not None and local.client_id == record.client_id
            if not (same_row or same_send):
                continue
            if local.state is DeliveryState.sent and local.id == record.id:
                return local
            self._replace(local, confirmed)
            await self._notify(confirmed)
            return confirmed

        self.messages.append(confirmed)
        self._sort()
        await self._notify(confirmed)
        return confirmed

    # ---------- operations ----------

    async def load_history(self) -> List[ThreadMessage]:
        records = await load_history(self.backend, self.connection)
        snapshot = [ThreadMessage(**r.model_dump()) for r in records]

        ids = {m.id for m in snapshot if m.id}
        client_ids = {m.client_id for m in snapshot if m.client_id}
        # local sends and rows merged while the query was in flight
        newer = [
            m for m in self.messages
            if m.id not in ids and not (m.client_id and m.client_id in client_ids)
        ]
        self.messages = snapshot + newer
        self._sort()
        return list(self.messages)

    async def _on_insert(self, event: ChangeEvent) -> None:
        if str(event.record.get("connection_id")) != self.connection.id:
            return
        try:
            record = present(self.backend, event.record)
        except ValidationError as e:
            logger.warning(f"[thread] ignoring malformed message event: {e}")
            return
        await self._merge(record)

    async def send(self, content: str, image: Optional[str] = None) -> ThreadMessage:
        text = check_sendable(self.connection, self.viewer_id, content, image)

        local = ThreadMessage(
            connection_id=self.connection.id,
            sender_id=self.viewer_id,
            receiver_id=self.peer_id,
            content=text,
            image=image,
            image_url=image,
            client_id=new_client_id(),
            created_at=datetime.now(timezone.utc),
            state=DeliveryState.pending,
        )
        self.messages.append(local)
        self._sort()
        await self._notify(local)
        return await self._deliver(local)

    async def retry(self, client_id: str) -> ThreadMessage:
        failed = self.find(client_id)
        if failed is None or failed.state is not DeliveryState.failed:
            raise NotFound("No failed message with that client id")

        pending = failed.model_copy(update={"state": DeliveryState.pending, "error": None})
        self._replace(failed, pending)
        await self._notify(pending)
        return await self._deliver(pending)

    async def _deliver(self, local: ThreadMessage) -> ThreadMessage:
        try:
            record = await persist_message(
                self.backend,
                self.connection,
                self.viewer_id,
                local.content,
                local.image,
                local.client_id,
            )
        except MentorLinkError as e:
            logger.warning(
                f"[thread] send failed connection={self.connection.id} client_id={local.client_id}: {e}"
            )
            current = self.find(local.client_id)
            if current is None or current.state is DeliveryState.sent:
                return current or local
            failed = current.model_copy(update={"state": DeliveryState.failed, "error": str(e)})
            self._replace(current, failed)
            await self._notify(failed)
            return failed

        return await self._merge(record)
