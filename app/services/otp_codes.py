from __future__ import annotations
import secrets

from ..domain.otp import RandomSourceError

CODE_MIN = 100_000
CODE_MAX = 999_999


def generate_code() -> str:
    """
    6-digit numeric code drawn uniformly from [100000, 999999] with the OS CSPRNG.
    randbelow() is unbiased over its range.
    """
    try:
        n = secrets.randbelow(CODE_MAX - CODE_MIN + 1)
    except (OSError, NotImplementedError) as e:
        raise RandomSourceError("secure random source unavailable") from e
    return f"{CODE_MIN + n:06d}"
