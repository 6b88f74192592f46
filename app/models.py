from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import CheckConstraint, ForeignKey, Index
from sqlalchemy.dialects import postgresql as pg
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .domain.otp import OTP_PURPOSES


def _new_record_id() -> str:
    return uuid.uuid4().hex[:15]


# ---------- Base & naming ----------
class Base(DeclarativeBase):
    # Keep index/constraint names stable for cleaner migrations
    metadata = sa.MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s",
        }
    )


# ---------- USERS ----------
# Owned by the record store; this core only reads the row and flips `verified`.
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(sa.Text, primary_key=True, default=_new_record_id)
    # CITEXT gives case-insensitive unique email
    email: Mapped[str] = mapped_column(pg.CITEXT, nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    verified: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.text("false"))

    created_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")
    )
    updated_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()"), onupdate=sa.func.now()
    )


# ---------- USER OTPS ----------
class UserOtp(Base):
    __tablename__ = "user_otps"

    id: Mapped[uuid.UUID] = mapped_column(pg.UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(sa.Text, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    otp_code: Mapped[str] = mapped_column(sa.String(6), nullable=False)
    purpose: Mapped[str] = mapped_column(sa.Text, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=False)
    used: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    used_at: Mapped[Optional[datetime]] = mapped_column(pg.TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        pg.TIMESTAMP(timezone=True), nullable=False, server_default=sa.text("now()")
    )

    __table_args__ = (
        CheckConstraint(
            "purpose in (" + ",".join(f"'{p}'" for p in OTP_PURPOSES) + ")",
            name="user_otps_purpose",
        ),
        CheckConstraint("otp_code ~ '^[0-9]{6}$'", name="user_otps_code_digits"),
        # lookup path of verify: (user, purpose) among unused rows
        Index(
            "ix_user_otps_active_lookup",
            "user_id",
            "purpose",
            "otp_code",
            postgresql_where=sa.text("used = false"),
        ),
        # cleanup scan
        Index("ix_user_otps_expires_at", "expires_at"),
    )
