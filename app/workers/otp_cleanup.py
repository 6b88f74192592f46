from __future__ import annotations
import asyncio
import logging

from ..config import get_settings
from ..db import SessionLocal
from ..observability.heartbeat import beat
from ..observability.logging import setup_logging
from ..redis_client import redis
from ..repos.otps import SqlOtpStore
from ..services.otp_cleanup import purge_expired_otps

S = get_settings()
log = logging.getLogger("worker.otp_cleanup")

def _lock_key() -> str: return "lock:otp_cleanup"

async def _acquire_lock() -> bool:
    # Only one instance performs the purge; others idle
    return await redis.set(_lock_key(), "1", ex=S.OTP_CLEANUP_LOCK_TTL_SEC, nx=True) is True

async def run_once() -> int:
    # Acquire short lock; if taken, just skip this tick
    if not await _acquire_lock():
        return 0
    async with SessionLocal() as db:
        return await purge_expired_otps(SqlOtpStore(db))

async def run_forever():
    hb = asyncio.create_task(beat("hb:otp_cleanup"))
    try:
        while True:
            try:
                await run_once()
            except Exception as e:
                log.exception("otp_cleanup error: %s", e)
            await asyncio.sleep(S.OTP_CLEANUP_INTERVAL_SEC)
    finally:
        hb.cancel()

def main():
    setup_logging()
    asyncio.run(run_forever())

if __name__ == "__main__":
    main()
