from datetime import datetime, timezone
from typing import Optional

from loguru import logger

from app.backend.base import AuthUser, DataBackend, Embed, Query
from app.core.errors import (
    AuthRequired,
    Conflict,
    DuplicateRequest,
    InvalidRequest,
    InvalidTransition,
    NotFound,
)
from app.schemas.enums import ACTIVE_STATUSES, ConnectionStatus, Decision, Role, UserType
from .schemas import ConnectionListing, ConnectionRecord

PARTNER_COLUMNS = ("full_name", "profile_image", "expertise", "rating", "doubts_solved", "online")


def partner_embed(role: Role) -> Embed:
    """Join the counterpart's profile through whichever key the caller does not occupy."""
    return Embed(
        table="profiles",
        foreign_key=role.partner_column,
        columns=PARTNER_COLUMNS,
        alias="partner",
    )


def _require_actor(actor: Optional[AuthUser]) -> AuthUser:
    if actor is None:
        raise AuthRequired()
    return actor


class ConnectionLifecycle:
    """
    Owns the pending -> accepted / rejected state machine.

    Students open requests, mentors answer them; both terminal states are
    final. Nothing is changed locally until the backend has confirmed it.
    """

    def __init__(self, backend: DataBackend):
        self.backend = backend

    async def _user_type(self, actor: AuthUser) -> Optional[str]:
        # token metadata first, the stored profile when the token carries none
        if actor.user_type:
            return actor.user_type
        profile = await self.backend.fetch_one(
            Query("profiles", eq={"id": actor.user_id}, columns=("user_type",))
        )
        return profile["user_type"] if profile else None

    # ---------- CONNECTION LOGIC ----------

    async def request_connection(self, actor: Optional[AuthUser], mentor_id: str) -> ConnectionRecord:
        student = _require_actor(actor)
        if student.user_id == mentor_id:
            raise InvalidRequest("Cannot connect to self")
        if await self._user_type(student) != UserType.student.value:
            raise InvalidRequest("Only students can request a mentor")

        mentor = await self.backend.fetch_one(
            Query("profiles", eq={"id": mentor_id, "user_type": UserType.mentor.value}, columns=("id",))
        )
        if not mentor:
            raise NotFound("Mentor not found")

        existing = await self.backend.fetch_one(
            Query(
                "connections",
                eq={"student_id": student.user_id, "mentor_id": mentor_id},
                in_={"status": ACTIVE_STATUSES},
                columns=("id", "status"),
            )
        )
        if existing:
            raise DuplicateRequest(f"Connection already {existing['status']}")

        try:
            row = await self.backend.insert(
                "connections",
                {
                    "student_id": student.user_id,
                    "mentor_id": mentor_id,
                    "status": ConnectionStatus.pending.value,
                },
            )
        except Conflict:
            # lost a race against an identical request
            raise DuplicateRequest()

        logger.info(f"[connections] {student.user_id} requested mentor {mentor_id} id={row['id']}")
        return ConnectionRecord.model_validate(row)

    async def list_connections(self, user_id: str, role: Role) -> ConnectionListing:
        rows = await self.backend.query(
            Query(
                "connections",
                eq={role.own_column: user_id},
                in_={"status": ACTIVE_STATUSES},
                embeds=(partner_embed(role),),
            ).order_by("created_at", descending=True)
        )

        listing = ConnectionListing(role=role)
        for row in rows:
            record = ConnectionRecord.model_validate(row)
            if record.status is ConnectionStatus.pending:
                listing.pending.append(record)
            elif record.status is ConnectionStatus.accepted:
                listing.accepted.append(record)

        logger.debug(
            f"[connections] list {role.value}={user_id} "
            f"pending={len(listing.pending)} accepted={len(listing.accepted)}"
        )
        return listing

    async def respond(
        self, actor: Optional[AuthUser], connection_id: str, decision: Decision
    ) -> ConnectionRecord:
        mentor = _require_actor(actor)
        scope = {"id": connection_id, "mentor_id": mentor.user_id}

        row = await self.backend.fetch_one(Query("connections", eq=scope))
        if not row:
            raise NotFound("Connection not found")
        if row["status"] != ConnectionStatus.pending.value:
            raise InvalidTransition(f"Connection is already {row['status']}")

        target = decision.target_status
        # compare-and-set on status so two answers cannot both win
        updated = await self.backend.update(
            Query("connections", eq={**scope, "status": ConnectionStatus.pending.value}),
            {"status": target.value, "updated_at": datetime.now(timezone.utc)},
        )
        if not updated:
            raise InvalidTransition("Connection is no longer pending")

        logger.info(f"[connections] {connection_id} {target.value} by mentor {mentor.user_id}")
        return ConnectionRecord.model_validate(updated[0])

    async def get_connection(self, actor: Optional[AuthUser], connection_id: str) -> ConnectionRecord:
        user = _require_actor(actor)
        row = await self.backend.fetch_one(Query("connections", eq={"id": connection_id}))
        if not row:
            raise NotFound("Connection not found")

        record = ConnectionRecord.model_validate(row)
        if record.role_of(user.user_id) is None:
            raise NotFound("Connection not found")
        return record

    async def count_pending(self, mentor_id: str) -> int:
        rows = await self.backend.query(
            Query(
                "connections",
                eq={"mentor_id": mentor_id, "status": ConnectionStatus.pending.value},
                columns=("id",),
            )
        )
        return len(rows)
