from __future__ import annotations
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from ..observability.metrics import OTP_PURGED
from ..repos.otps import OtpStore

log = logging.getLogger("app.otp_cleanup")


async def purge_expired_otps(store: OtpStore, *, now: Optional[datetime] = None) -> int:
    """
    Delete OTP rows whose expires_at is in the past. Housekeeping only; the
    verify path never depends on this having run.
    """
    now = now or datetime.now(timezone.utc)
    t0 = time.perf_counter()
    deleted = await store.delete_expired(now=now)
    OTP_PURGED.inc(deleted)
    log.info(
        "otp_cleanup_done",
        extra={"extra": f"deleted={deleted} ms={int((time.perf_counter() - t0) * 1000)}"},
    )
    return deleted
