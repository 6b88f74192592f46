from __future__ import annotations
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..domain.otp import (
    CODE_RE,
    InvalidOrExpired,
    InvalidPurposeError,
    OtpNotFound,
    OtpPurpose,
    StorageError,
    TooManyActiveCodes,
)
from ..observability.metrics import OTP_ISSUED, OTP_REJECTED, OTP_VERIFIED
from ..repos.otps import OtpStore
from .otp_codes import generate_code

log = logging.getLogger("app.otp")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class OtpService:
    """
    Issues and verifies one-time passcodes against an OtpStore.

    Lifecycle of a code: issued -> consumed (verify succeeded), or issued ->
    expired / rejected. Expiry is only checked lazily during verify; an expired
    record is left with used=false and simply never matches again.
    """

    def __init__(
        self,
        store: OtpStore,
        *,
        ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = _now_utc,
        generator: Callable[[], str] = generate_code,
        max_active: Optional[int] = None,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._generate = generator
        self._max_active = max_active or None

    @property
    def ttl_minutes(self) -> int:
        return max(1, int(self._ttl.total_seconds() // 60))

    async def issue(self, owner_id: str, email: str, purpose: str) -> str:
        """
        Create and persist a new code. Returns the code; dispatching it is the
        caller's job. StorageError / RandomSourceError propagate untouched.
        """
        p = OtpPurpose.parse(purpose)
        now = self._clock()

        code = self._generate()
        try:
            # the store checks the cap and inserts atomically
            record = await self._store.create(
                owner_id=owner_id,
                email=email,
                purpose=p,
                code=code,
                expires_at=now + self._ttl,
                max_active=self._max_active,
                now=now,
            )
        except TooManyActiveCodes:
            log.info("otp_issue_capped", extra={"extra": f"owner_id={owner_id} purpose={p.value}"})
            raise
        OTP_ISSUED.labels(purpose=p.value).inc()
        log.info("otp_issued", extra={"extra": f"owner_id={owner_id} purpose={p.value} otp_id={record.id}"})
        return code

    async def verify(self, owner_id: str, code: str, purpose: str) -> None:
        """
        Consume the matching code. Returns None on success, raises
        InvalidOrExpired for every kind of mismatch. A StorageError from the
        final write means the code was NOT consumed.
        """
        try:
            p = OtpPurpose.parse(purpose)
        except InvalidPurposeError:
            OTP_REJECTED.labels(purpose="unknown", reason="purpose").inc()
            raise InvalidOrExpired() from None

        code = (code or "").strip()
        if not CODE_RE.match(code):
            OTP_REJECTED.labels(purpose=p.value, reason="format").inc()
            raise InvalidOrExpired()

        try:
            record = await self._store.find_active(owner_id=owner_id, code=code, purpose=p)
        except OtpNotFound:
            OTP_REJECTED.labels(purpose=p.value, reason="no_match").inc()
            raise InvalidOrExpired() from None
        except StorageError as e:
            # lookup failures are indistinguishable from a wrong code
            log.warning("otp_lookup_failed", extra={"extra": f"owner_id={owner_id} purpose={p.value} error={e}"})
            OTP_REJECTED.labels(purpose=p.value, reason="lookup_error").inc()
            raise InvalidOrExpired() from None

        if record.is_expired(self._clock()):
            # not consumed on purpose; it stays unusable via the same check
            OTP_REJECTED.labels(purpose=p.value, reason="expired").inc()
            raise InvalidOrExpired()

        try:
            await self._store.mark_used(record)
        except OtpNotFound:
            # a concurrent verify got there first
            OTP_REJECTED.labels(purpose=p.value, reason="race").inc()
            raise InvalidOrExpired() from None

        OTP_VERIFIED.labels(purpose=p.value).inc()
        log.info("otp_verified", extra={"extra": f"owner_id={owner_id} purpose={p.value} otp_id={record.id}"})
