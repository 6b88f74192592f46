from __future__ import annotations
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.otp import OtpNotFound, OtpPurpose, OtpRecord, StorageError, TooManyActiveCodes
from ..models import User, UserOtp

log = logging.getLogger("app.repos.otps")


class OtpStore(Protocol):
    async def create(
        self,
        *,
        owner_id: str,
        email: str,
        purpose: OtpPurpose,
        code: str,
        expires_at: datetime,
        max_active: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> OtpRecord: ...

    async def find_active(self, *, owner_id: str, code: str, purpose: OtpPurpose) -> OtpRecord: ...

    async def mark_used(self, record: OtpRecord) -> None: ...

    async def delete_expired(self, *, now: datetime) -> int: ...


def as_utc(value: datetime | str) -> datetime:
    """Single temporal type past the storage boundary: tz-aware UTC datetime."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: UserOtp) -> OtpRecord:
    return OtpRecord(
        id=row.id,
        owner_id=row.user_id,
        email=row.email,
        code=row.otp_code,
        purpose=OtpPurpose(row.purpose),
        expires_at=as_utc(row.expires_at),
        used=row.used,
        created_at=as_utc(row.created_at) if row.created_at is not None else None,
        used_at=as_utc(row.used_at) if row.used_at is not None else None,
    )


def _live_count(owner_id: str, purpose: OtpPurpose, now: datetime):
    return select(func.count(UserOtp.id)).where(
        UserOtp.user_id == owner_id,
        UserOtp.purpose == purpose.value,
        UserOtp.used.is_(False),
        UserOtp.expires_at >= as_utc(now),
    )


class SqlOtpStore:
    """
    OtpStore over the `user_otps` table. Every write commits, so a returned
    call means the change is durable.
    """

    def __init__(self, db: AsyncSession):
        self._db = db

    async def create(
        self,
        *,
        owner_id: str,
        email: str,
        purpose: OtpPurpose,
        code: str,
        expires_at: datetime,
        max_active: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> OtpRecord:
        """
        Insert a new unused code. With max_active set, the owner's users row is
        locked FOR UPDATE before counting live codes, so concurrent issuers for
        the same owner queue up and the cap holds.
        """
        row = UserOtp(
            id=uuid.uuid4(),
            user_id=owner_id,
            email=email,
            otp_code=code,
            purpose=purpose.value,
            expires_at=as_utc(expires_at),
            used=False,
        )
        try:
            if max_active:
                await self._db.execute(select(User.id).where(User.id == owner_id).with_for_update())
                live = await self._db.execute(_live_count(owner_id, purpose, now or datetime.now(timezone.utc)))
                if live.scalar_one() >= max_active:
                    await self._db.rollback()
                    raise TooManyActiveCodes(max_active)
            self._db.add(row)
            await self._db.flush()
            await self._db.refresh(row)
            record = _to_record(row)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            log.error("otp_create_failed", extra={"extra": f"owner_id={owner_id} purpose={purpose.value}"})
            raise StorageError("failed to persist OTP") from e
        return record

    async def find_active(self, *, owner_id: str, code: str, purpose: OtpPurpose) -> OtpRecord:
        q = (
            select(UserOtp)
            .where(
                UserOtp.user_id == owner_id,
                UserOtp.otp_code == code,
                UserOtp.purpose == purpose.value,
                UserOtp.used.is_(False),
            )
            # ties are legal; newest first keeps the pick deterministic
            .order_by(UserOtp.created_at.desc(), UserOtp.id.desc())
            .limit(1)
        )
        try:
            row = (await self._db.execute(q)).scalar_one_or_none()
        except SQLAlchemyError as e:
            await self._db.rollback()
            raise StorageError("failed to look up OTP") from e
        if row is None:
            raise OtpNotFound()
        return _to_record(row)

    async def mark_used(self, record: OtpRecord) -> None:
        # conditional write: only one concurrent caller can flip used=false -> true
        stmt = (
            update(UserOtp)
            .where(UserOtp.id == record.id, UserOtp.used.is_(False))
            .values(used=True, used_at=func.now())
            .execution_options(synchronize_session=False)
        )
        try:
            res = await self._db.execute(stmt)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            log.error("otp_mark_used_failed", extra={"extra": f"otp_id={record.id}"})
            raise StorageError("failed to consume OTP") from e
        if res.rowcount != 1:
            raise OtpNotFound()

    async def delete_expired(self, *, now: datetime) -> int:
        stmt = delete(UserOtp).where(UserOtp.expires_at < as_utc(now)).execution_options(synchronize_session=False)
        try:
            res = await self._db.execute(stmt)
            await self._db.commit()
        except SQLAlchemyError as e:
            await self._db.rollback()
            raise StorageError("failed to delete expired OTPs") from e
        return int(res.rowcount or 0)
