from __future__ import annotations
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from ..models import User


async def mark_verified(db: AsyncSession, user_id: str) -> bool:
    """Flip users.verified. Returns False when the user row does not exist."""
    res = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(verified=True)
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return res.rowcount == 1
