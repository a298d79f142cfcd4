from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of account roles. ``admin`` satisfies every role check."""

    USER = "user"
    EDITOR = "editor"
    ADMIN = "admin"

    def satisfies(self, allowed: Iterable["Role"]) -> bool:
        if self is Role.ADMIN:
            return True
        return self in {Role(r) for r in allowed}


@dataclass
class UserAccount:
    id: str
    email: str
    password_hash: str
    phone_number: str
    role: Role = Role.USER
    is_active: bool = True
    is_email_verified: bool = False
    is_phone_verified: bool = False
    email_otp: Optional[str] = None
    email_otp_expiry: Optional[datetime] = None
    phone_otp: Optional[str] = None
    phone_otp_expiry: Optional[datetime] = None
    is_logged_in: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        phone_number: str,
        *,
        role: Role = Role.USER,
        now: Optional[datetime] = None,
    ) -> "UserAccount":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            phone_number=phone_number,
            role=role,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_verified(self) -> bool:
        return self.is_email_verified and self.is_phone_verified

    def public_view(self) -> Dict[str, Any]:
        """Fields that may be returned to clients; never hashes or codes."""
        return {
            "id": self.id,
            "email": self.email,
            "phone_number": self.phone_number,
            "role": self.role.value,
            "is_active": self.is_active,
            "is_email_verified": self.is_email_verified,
            "is_phone_verified": self.is_phone_verified,
            "last_login": self.last_login,
            "created_at": self.created_at,
        }


@dataclass
class UserPage:
    items: list[UserAccount]
    total: int
