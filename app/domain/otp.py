from __future__ import annotations
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class OtpPurpose(str, Enum):
    SIGNUP_VERIFICATION = "signup_verification"
    EMAIL_CHANGE = "email_change"
    PASSWORD_RESET = "password_reset"

    @classmethod
    def parse(cls, value: str) -> "OtpPurpose":
        try:
            return cls(value)
        except ValueError:
            raise InvalidPurposeError(value) from None


OTP_PURPOSES = tuple(p.value for p in OtpPurpose)
CODE_RE = re.compile(r"^[0-9]{6}$")


@dataclass(frozen=True)
class OtpRecord:
    id: uuid.UUID
    owner_id: str
    email: str
    code: str
    purpose: OtpPurpose
    expires_at: datetime
    used: bool = False
    created_at: Optional[datetime] = None
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        # valid up to and including expires_at
        return now > self.expires_at


# ---------- errors ----------
class OtpError(Exception):
    """Base for everything the OTP core raises."""


# client-side
class InvalidPurposeError(OtpError):
    def __init__(self, purpose: str):
        super().__init__(f"unsupported purpose: {purpose!r}")
        self.purpose = purpose


class InvalidOrExpired(OtpError):
    """
    Uniform verification failure. Covers wrong code, wrong owner, wrong purpose,
    already used and expired; callers must not be able to tell these apart.
    """

    def __init__(self) -> None:
        super().__init__("invalid or expired OTP")


class TooManyActiveCodes(OtpError):
    def __init__(self, limit: int):
        super().__init__(f"too many active codes (limit {limit})")
        self.limit = limit


# server-side
class StorageError(OtpError):
    pass


class RandomSourceError(OtpError):
    pass


class NotificationError(OtpError):
    pass


# store-internal; never leaves the engine
class OtpNotFound(OtpError):
    pass
