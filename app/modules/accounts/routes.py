from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from app.backend.base import DataBackend
from app.core.auth import get_backend, http_error
from app.core.errors import MentorLinkError
from app.schemas.enums import UserType

router = APIRouter(prefix="/api/auth", tags=["auth"])


# ---------------------------
# Models
# ---------------------------

class SignupIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., alias="fullName")
    user_type: UserType = Field(..., alias="userType")


class LoginIn(BaseModel):
    email: str
    password: str


class SendOtpIn(BaseModel):
    email: str = ""


class VerifyOtpIn(BaseModel):
    email: str
    otp: str


def _user_out(user) -> dict:
    return {"id": user.user_id, "email": user.email, "user_metadata": user.attributes}


# ---------------------------
# Routes
# ---------------------------

@router.post("/signup", status_code=201)
async def signup(payload: SignupIn, backend: DataBackend = Depends(get_backend)):
    try:
        user = await backend.sign_up(
            payload.email,
            payload.password,
            {"full_name": payload.full_name, "user_type": payload.user_type.value},
        )
    except MentorLinkError as e:
        raise HTTPException(status_code=400 if e.status_code < 500 else e.status_code, detail=str(e))

    logger.info(f"[auth] signup user_id={user.user_id} type={payload.user_type.value}")
    return {"message": "Signup successful", "user": _user_out(user)}


@router.post("/login")
async def login(payload: LoginIn, backend: DataBackend = Depends(get_backend)):
    try:
        session = await backend.sign_in(payload.email, payload.password)
    except MentorLinkError as e:
        raise http_error(e)

    return {
        "message": "Login successful",
        "session": {"access_token": session.access_token, "token_type": "bearer"},
        "user": _user_out(session.user),
    }


@router.post("/send-otp")
async def send_otp(payload: SendOtpIn, backend: DataBackend = Depends(get_backend)):
    if not payload.email:
        raise HTTPException(status_code=400, detail="Email is required")

    try:
        await backend.send_otp(payload.email)
    except MentorLinkError as e:
        logger.error(f"[auth] sending otp failed: {e}")
        raise HTTPException(status_code=e.status_code, detail="Failed to send OTP")

    return {"message": "OTP sent successfully"}


@router.post("/verify-otp")
async def verify_otp(payload: VerifyOtpIn, backend: DataBackend = Depends(get_backend)):
    try:
        ok = await backend.verify_otp(payload.email, payload.otp)
    except MentorLinkError as e:
        raise http_error(e)

    if not ok:
        raise HTTPException(status_code=400, detail="Invalid or expired OTP")
    return {"message": "OTP verified successfully"}
