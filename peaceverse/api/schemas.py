from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, field_validator

from peaceverse.logging import get_correlation_id

ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "service_unavailable",
    }
)

# zero-width joiners, BOM and bidi embedding/override/isolate controls
_INVISIBLE = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)

_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_DIGITS = re.compile(r"^\+?[0-9]{9,15}$")
_PHONE_SEPARATORS = re.compile(r"[\s()-]")
_SIX_DIGITS = re.compile(r"^[0-9]{6}$")


def _strip_invisible(value: str) -> str:
    visible = "".join(ch for ch in value if ch not in _INVISIBLE)
    return unicodedata.normalize("NFKC", visible)


def normalize_email(value: str) -> str:
    """Lower-case, trim and syntax-check an email address."""
    address = _strip_invisible(value.strip().lower())
    if not 3 <= len(address) <= 254:
        raise ValueError("email address length is out of range")
    local, _, domain = address.partition("@")
    if not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return address


def normalize_phone(value: str) -> str:
    number = _PHONE_SEPARATORS.sub("", value)
    if not 10 <= len(number) <= 15:
        raise ValueError("phone number must be 10 to 15 characters")
    if not _PHONE_DIGITS.match(number):
        raise ValueError("phone number may contain only digits and a leading +")
    return number


def _check_otp(value: str) -> str:
    code = value.strip()
    if not _SIX_DIGITS.match(code):
        raise ValueError("OTP must be exactly 6 digits")
    return code


Email = Annotated[str, AfterValidator(normalize_email)]
PhoneNumber = Annotated[str, AfterValidator(normalize_phone)]
OtpCode = Annotated[str, AfterValidator(_check_otp)]
NewPassword = Annotated[str, Field(min_length=6, max_length=128)]


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable coarse error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _known_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(
        default_factory=lambda: get_correlation_id() or str(uuid4())
    )


class SignupRequest(BaseModel):
    email: Email
    phone_number: PhoneNumber
    password: NewPassword


class VerifyOtpRequest(BaseModel):
    email: Email
    otp: OtpCode


class ResendOtpRequest(BaseModel):
    email: Email
    channel: Literal["email", "phone"] = "email"


class LoginRequest(BaseModel):
    email: Email
    password: str = Field(..., min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    email: Email


class ResetPasswordRequest(BaseModel):
    email: Email
    otp: OtpCode
    new_password: NewPassword


class UserResponse(BaseModel):
    id: str
    email: str
    phone_number: str
    role: str
    is_active: bool
    is_email_verified: bool
    is_phone_verified: bool
    last_login: Optional[datetime] = None
    created_at: datetime


class SignupResponse(BaseModel):
    user_id: str
    email: str
    email_sent: bool
    sms_sent: bool
    message: str = "User registered. Verify the codes sent to your email and phone."


class SessionResponse(BaseModel):
    user: UserResponse
    access_expires_at: datetime
    refresh_expires_at: datetime


class ProfileResponse(BaseModel):
    email: str
    role: str
    last_login: Optional[datetime] = None


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class UserListResponse(BaseModel):
    items: List[UserResponse]
    pagination: Pagination


class UpdateUserRequest(BaseModel):
    email: Optional[Email] = None
    role: Optional[Literal["user", "editor", "admin"]] = None
    is_active: Optional[bool] = None


class BatchDeleteRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1, max_length=500)
