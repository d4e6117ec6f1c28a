from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile

from app.backend.base import AuthUser, DataBackend
from app.core.auth import get_backend, get_current_user, http_error
from app.core.errors import MentorLinkError
from .schemas import MentorSummary, ProfileOut, ProfileUpdateIn
from .service import ProfileService

router = APIRouter(prefix="/v1", tags=["profiles"])


def get_profiles(backend: DataBackend = Depends(get_backend)) -> ProfileService:
    return ProfileService(backend)


# -------------------------------
# MENTOR DISCOVERY
# -------------------------------
@router.get("/mentors", response_model=List[MentorSummary])
async def list_mentors(
    q: Optional[str] = Query(default=None, max_length=100),
    profiles: ProfileService = Depends(get_profiles),
):
    try:
        return await profiles.search_mentors(q)
    except MentorLinkError as e:
        raise http_error(e)


@router.get("/mentors/top", response_model=List[MentorSummary])
async def top_mentors(
    limit: int = Query(default=3, ge=1, le=50),
    profiles: ProfileService = Depends(get_profiles),
):
    try:
        return await profiles.top_mentors(limit)
    except MentorLinkError as e:
        raise http_error(e)


# -------------------------------
# OWN PROFILE
# -------------------------------
@router.get("/profiles/me", response_model=ProfileOut)
async def my_profile(
    user: AuthUser = Depends(get_current_user),
    profiles: ProfileService = Depends(get_profiles),
):
    try:
        return await profiles.get_profile(user.user_id)
    except MentorLinkError as e:
        raise http_error(e)


@router.put("/profiles/me", response_model=ProfileOut)
async def save_my_profile(
    payload: ProfileUpdateIn,
    user: AuthUser = Depends(get_current_user),
    profiles: ProfileService = Depends(get_profiles),
):
    try:
        return await profiles.save_profile(user, payload)
    except MentorLinkError as e:
        raise http_error(e)


@router.post("/profiles/me/image", response_model=ProfileOut)
async def upload_profile_image(
    file: UploadFile = File(...),
    user: AuthUser = Depends(get_current_user),
    profiles: ProfileService = Depends(get_profiles),
):
    try:
        return await profiles.upload_profile_image(
            user, await file.read(), file.filename or "", file.content_type
        )
    except MentorLinkError as e:
        raise http_error(e)


@router.post("/profiles/me/credentials", response_model=ProfileOut)
async def upload_credential(
    file: UploadFile = File(...),
    user: AuthUser = Depends(get_current_user),
    profiles: ProfileService = Depends(get_profiles),
):
    try:
        return await profiles.upload_credential(
            user, await file.read(), file.filename or "", file.content_type
        )
    except MentorLinkError as e:
        raise http_error(e)


@router.get("/profiles/{user_id}", response_model=ProfileOut)
async def get_profile(
    user_id: str,
    user: AuthUser = Depends(get_current_user),
    profiles: ProfileService = Depends(get_profiles),
):
    try:
        return await profiles.view_profile(user, user_id)
    except MentorLinkError as e:
        raise http_error(e)
