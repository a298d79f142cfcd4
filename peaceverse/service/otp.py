from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

OTP_LENGTH = 6
_OTP_MIN = 10 ** (OTP_LENGTH - 1)
_OTP_SPAN = 9 * _OTP_MIN


@dataclass(frozen=True)
class OneTimeCode:
    code: str
    expires_at: datetime


def generate_otp(now: datetime, ttl: timedelta = timedelta(minutes=5)) -> OneTimeCode:
    """Six-digit code drawn uniformly from 100000..999999."""
    code = str(_OTP_MIN + secrets.randbelow(_OTP_SPAN))
    return OneTimeCode(code=code, expires_at=now + ttl)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def verify_otp(
    submitted: str,
    stored: Optional[str],
    expires_at: Optional[datetime],
    now: datetime,
) -> bool:
    if not stored or expires_at is None or not submitted:
        return False
    if _aware(now) > _aware(expires_at):
        return False
    return hmac.compare_digest(submitted.encode("utf-8"), stored.encode("utf-8"))
