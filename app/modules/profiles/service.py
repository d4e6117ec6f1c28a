from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

from loguru import logger

from app.backend.base import AuthUser, DataBackend, Query
from app.core.errors import AuthRequired, InvalidRequest, NotFound
from app.schemas.enums import UserType
from .schemas import MentorSummary, ProfileOut, ProfileUpdateIn

PROFILE_BUCKET = "profile-images"
CREDENTIAL_BUCKET = "credentials"

MENTOR_COLUMNS = ("id", "full_name", "profile_image", "expertise", "rating", "doubts_solved", "online")


class ProfileService:
    def __init__(self, backend: DataBackend):
        self.backend = backend

    def _url(self, bucket: str, path: Optional[str]) -> Optional[str]:
        return self.backend.get_public_url(bucket, path) if path else None

    def _present(self, row: Dict[str, Any]) -> ProfileOut:
        profile = ProfileOut.model_validate(row)
        profile.profile_image_url = self._url(PROFILE_BUCKET, profile.profile_image)
        profile.credential_urls = [self._url(CREDENTIAL_BUCKET, p) for p in profile.credentials]
        return profile

    def _summary(self, row: Dict[str, Any]) -> MentorSummary:
        mentor = MentorSummary.model_validate(row)
        mentor.profile_image_url = self._url(PROFILE_BUCKET, mentor.profile_image)
        return mentor

    async def _fetch(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await self.backend.fetch_one(Query("profiles", eq={"id": user_id}))

    async def get_profile(self, user_id: str) -> ProfileOut:
        row = await self._fetch(user_id)
        if not row:
            raise NotFound("Profile not found")
        return self._present(row)

    async def view_profile(self, viewer: AuthUser, user_id: str) -> ProfileOut:
        """Profile as seen by ``viewer``; contact details stay with the owner."""
        profile = await self.get_profile(user_id)
        if viewer.user_id != user_id:
            profile.email = None
        return profile

    async def _save_fields(self, actor: Optional[AuthUser], fields: Dict[str, Any]) -> ProfileOut:
        if actor is None:
            raise AuthRequired()

        existing = await self._fetch(actor.user_id)
        if existing:
            rows = await self.backend.update(
                Query("profiles", eq={"id": actor.user_id}),
                {**fields, "updated_at": datetime.now(timezone.utc)},
            )
            row = rows[0] if rows else existing
        else:
            user_type = fields.get("user_type") or actor.user_type
            if user_type not in (UserType.student.value, UserType.mentor.value):
                raise InvalidRequest("user_type required to create a profile")
            row = await self.backend.insert(
                "profiles",
                {"id": actor.user_id, "email": actor.email, **fields, "user_type": user_type},
            )
            logger.info(f"[profiles] created {user_type} profile for {actor.user_id}")
        return self._present(row)

    async def save_profile(self, actor: Optional[AuthUser], payload: ProfileUpdateIn) -> ProfileOut:
        return await self._save_fields(actor, payload.model_dump(exclude_unset=True, mode="json"))

    async def upload_profile_image(
        self, actor: Optional[AuthUser], data: bytes, filename: str, content_type: Optional[str] = None
    ) -> ProfileOut:
        if actor is None:
            raise AuthRequired()
        if not data:
            raise InvalidRequest("Empty upload")
        ext = PurePosixPath(filename or "").suffix.lower() or ".jpg"
        path = await self.backend.upload_object(
            PROFILE_BUCKET, f"{actor.user_id}/profile{ext}", data, content_type
        )
        return await self._save_fields(actor, {"profile_image": path})

    async def upload_credential(
        self, actor: Optional[AuthUser], data: bytes, filename: str, content_type: Optional[str] = None
    ) -> ProfileOut:
        if actor is None:
            raise AuthRequired()
        name = PurePosixPath(filename or "").name
        if not data or not name or name in (".", ".."):
            raise InvalidRequest("Credential file required")

        path = await self.backend.upload_object(
            CREDENTIAL_BUCKET, f"{actor.user_id}/{name}", data, content_type
        )
        existing = await self._fetch(actor.user_id)
        credentials = list((existing or {}).get("credentials") or [])
        if path not in credentials:
            credentials.append(path)
        return await self._save_fields(actor, {"credentials": credentials})

    # ---------- discovery ----------

    async def search_mentors(self, term: Optional[str] = None) -> List[MentorSummary]:
        query = Query("profiles", eq={"user_type": UserType.mentor.value}, columns=MENTOR_COLUMNS)
        if term and term.strip():
            query.contains_any = {"full_name": term.strip(), "expertise": term.strip()}
        rows = await self.backend.query(query.order_by("full_name"))
        logger.debug(f"[profiles] mentor search term={term!r} hits={len(rows)}")
        return [self._summary(row) for row in rows]

    async def top_mentors(self, limit: int = 3) -> List[MentorSummary]:
        mentors = await self.search_mentors()
        # unrated mentors rank as 0 rather than wherever the database puts NULLs
        mentors.sort(key=lambda m: m.rating, reverse=True)
        return mentors[:limit]
