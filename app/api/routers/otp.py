from __future__ import annotations
import logging
from datetime import timedelta
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ...config import get_settings
from ...db import get_db
from ...domain.otp import (
    InvalidOrExpired,
    InvalidPurposeError,
    NotificationError,
    OtpPurpose,
    RandomSourceError,
    StorageError,
    TooManyActiveCodes,
)
from ...repos import users as users_repo
from ...repos.otps import SqlOtpStore
from ...services.otp_mailer import Notifier, build_notifier, send_otp_email
from ...services.otp_service import OtpService

router = APIRouter(tags=["otp"])
log = logging.getLogger("app.api.otp")


class SendOtpIn(BaseModel):
    email: EmailStr
    user_id: str = Field(min_length=1, max_length=64)
    purpose: str = Field(min_length=1, max_length=64)


class VerifyOtpIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    # any string; format is checked in OtpService.verify
    otp_code: str
    purpose: str = Field(min_length=1, max_length=64)


class MessageOut(BaseModel):
    message: str


# ---------- dependencies ----------
def get_otp_service(db: AsyncSession = Depends(get_db)) -> OtpService:
    S = get_settings()
    return OtpService(
        SqlOtpStore(db),
        ttl=timedelta(minutes=S.OTP_TTL_MINUTES),
        max_active=S.OTP_MAX_ACTIVE_PER_PURPOSE,
    )


@lru_cache(maxsize=1)
def _notifier() -> Notifier:
    return build_notifier()


def get_notifier() -> Notifier:
    try:
        return _notifier()
    except NotificationError as e:
        log.error("notifier_misconfigured: %s", e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send OTP email")


class AccountVerifier:
    """Flips users.verified once a signup code has been consumed."""

    def __init__(self, db: AsyncSession):
        self._db = db

    async def __call__(self, user_id: str) -> bool:
        try:
            ok = await users_repo.mark_verified(self._db, user_id)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            raise StorageError("failed to update user") from e
        return ok


def get_account_verifier(db: AsyncSession = Depends(get_db)) -> AccountVerifier:
    return AccountVerifier(db)


# ---------- routes ----------
@router.post("/send-otp", response_model=MessageOut)
async def send_otp(
    payload: SendOtpIn,
    svc: OtpService = Depends(get_otp_service),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        code = await svc.issue(payload.user_id, str(payload.email), payload.purpose)
    except InvalidPurposeError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid purpose")
    except TooManyActiveCodes:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many active codes; use one already sent or wait for it to expire",
        )
    except (StorageError, RandomSourceError) as e:
        log.error("otp_issue_failed user_id=%s: %s", payload.user_id, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to generate OTP")

    # stored code stays valid even if this fails; the client can ask for a new one
    try:
        await send_otp_email(
            notifier, to=str(payload.email), code=code, purpose=payload.purpose, ttl_minutes=svc.ttl_minutes
        )
    except NotificationError as e:
        log.error("otp_dispatch_failed user_id=%s: %s", payload.user_id, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send OTP email")

    return MessageOut(message="OTP sent successfully")


@router.post("/verify-otp", response_model=MessageOut)
async def verify_otp(
    payload: VerifyOtpIn,
    svc: OtpService = Depends(get_otp_service),
    mark_verified: AccountVerifier = Depends(get_account_verifier),
):
    try:
        await svc.verify(payload.user_id, payload.otp_code, payload.purpose)
    except InvalidOrExpired:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired OTP")
    except StorageError as e:
        log.error("otp_verify_storage_failed user_id=%s: %s", payload.user_id, e)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to verify OTP")

    if payload.purpose == OtpPurpose.SIGNUP_VERIFICATION.value:
        try:
            found = await mark_verified(payload.user_id)
        except StorageError as e:
            log.error("user_verify_failed user_id=%s: %s", payload.user_id, e)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to verify user")
        if not found:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="User not found")

    return MessageOut(message="OTP verified successfully")
