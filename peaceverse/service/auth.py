from __future__ import annotations

import asyncio
import math
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from peaceverse.config import Settings
from peaceverse.logging import get_logger, hash_identifier
from peaceverse.service.email import PURPOSE_RESET, PURPOSE_VERIFY
from peaceverse.service.errors import (
    AdminImmutable,
    AlreadyVerified,
    AuthenticationError,
    EmailAlreadyRegistered,
    InsufficientRole,
    InvalidOrExpiredOtp,
    InvalidPassword,
    NoRefreshToken,
    NotActive,
    NotAuthenticated,
    NotVerified,
    RateLimitedError,
    RefreshRevoked,
    TokenInvalid,
    UserNotFound,
    ValidationError,
)
from peaceverse.service.otp import generate_otp, verify_otp
from peaceverse.service.tokens import TokenPair, TokenService
from peaceverse.storage.errors import ConstraintViolation
from peaceverse.storage.models import Role, UserAccount, UserPage, utcnow

logger = get_logger(__name__)

CHANNEL_EMAIL = "email"
CHANNEL_PHONE = "phone"
RATE_LIMIT_WINDOW_SECONDS = 60


class CredentialStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def create_user(self, user: UserAccount) -> UserAccount: ...

    def save_user(self, user: UserAccount) -> UserAccount: ...

    def delete_user(self, user_id: str) -> bool: ...

    def delete_users(self, user_ids: Iterable[str]) -> int: ...

    def list_users(
        self, *, search: Optional[str] = None, offset: int = 0, limit: int = 10
    ) -> UserPage: ...

    def list_unverified_before(self, cutoff: datetime) -> List[UserAccount]: ...


class RevocationStore(Protocol):
    async def store_refresh_session(
        self, jti: str, user_id: str, ttl_seconds: int
    ) -> None: ...

    async def get_refresh_session(self, jti: str) -> Optional[str]: ...

    async def revoke_refresh_session(self, jti: str) -> bool: ...

    async def pop_refresh_session(self, jti: str) -> Optional[str]: ...

    async def revoke_user_refresh_sessions(
        self, user_id: str, except_jti: Optional[str] = None
    ) -> int: ...

    async def hit_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...


class EmailSender(Protocol):
    def send_otp(self, to_email: str, code: str, purpose: str = PURPOSE_VERIFY) -> bool: ...


class SmsSender(Protocol):
    async def send_otp(self, phone_number: str, code: str) -> bool: ...


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email).strip().lower()


@dataclass
class AuthContext:
    user_id: str
    role: Role
    email: str


@dataclass
class SignupResult:
    user: UserAccount
    email_sent: bool
    sms_sent: bool


@dataclass
class SessionGrant:
    """Account plus the token pair whose refresh jti is already whitelisted."""

    user: UserAccount
    tokens: TokenPair


@dataclass
class UserListing:
    items: List[UserAccount]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class AuthService:
    """Account lifecycle and session state machine.

    signup -> verify email OTP -> verify phone OTP -> login -> refresh* -> logout,
    plus password reset, the ``authenticate``/``authorize`` gate used by every
    protected route, and the admin account-management operations.
    """

    def __init__(
        self,
        store: CredentialStore,
        revocation: RevocationStore,
        tokens: TokenService,
        settings: Settings,
        *,
        email: EmailSender,
        sms: SmsSender,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.revocation = revocation
        self.tokens = tokens
        self.settings = settings
        self.email = email
        self.sms = sms
        self.clock = clock
        self.otp_ttl = timedelta(minutes=settings.otp_ttl_minutes)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock()

    # passwords
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: UserAccount, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _require_user(self, email: str) -> UserAccount:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            raise UserNotFound()
        return user

    async def _dispatch_email_otp(self, user: UserAccount, purpose: str) -> bool:
        sent = await asyncio.to_thread(
            self.email.send_otp, user.email, user.email_otp, purpose
        )
        if not sent:
            self.logger.warning(
                "otp_email_dispatch_failed", user_id=user.id, purpose=purpose
            )
        return sent

    async def _dispatch_phone_otp(self, user: UserAccount) -> bool:
        sent = await self.sms.send_otp(user.phone_number, user.phone_otp)
        if not sent:
            self.logger.warning("otp_sms_dispatch_failed", user_id=user.id)
        return sent

    async def enforce_rate_limit(self, action: str, subject: str) -> None:
        limit = self.settings.auth_rate_limit_per_minute
        if limit <= 0:
            return
        key = f"{action}:{normalize_email(subject)}"
        allowed = await self.revocation.hit_rate_limit(
            key, limit, RATE_LIMIT_WINDOW_SECONDS
        )
        if not allowed:
            self.logger.warning(
                "auth_rate_limited", action=action, subject_hash=hash_identifier(subject)
            )
            raise RateLimitedError(detail={"retry_after": RATE_LIMIT_WINDOW_SECONDS})

    # signup and verification
    async def signup(
        self, email: str, phone_number: str, password: str
    ) -> SignupResult:
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise EmailAlreadyRegistered()
        now = self._now()
        user = UserAccount.new(
            email, self._hash_password(password), phone_number.strip(), now=now
        )
        email_code = generate_otp(now, self.otp_ttl)
        phone_code = generate_otp(now, self.otp_ttl)
        user.email_otp, user.email_otp_expiry = email_code.code, email_code.expires_at
        user.phone_otp, user.phone_otp_expiry = phone_code.code, phone_code.expires_at
        try:
            user = self.store.create_user(user)
        except ConstraintViolation as exc:
            # lost a race with a concurrent signup for the same address
            raise EmailAlreadyRegistered() from exc
        self.logger.info(
            "signup_created", user_id=user.id, email_hash=hash_identifier(email)
        )
        email_sent = await self._dispatch_email_otp(user, PURPOSE_VERIFY)
        sms_sent = await self._dispatch_phone_otp(user)
        return SignupResult(user=user, email_sent=email_sent, sms_sent=sms_sent)

    async def verify_email_otp(self, email: str, code: str) -> UserAccount:
        user = self._require_user(email)
        if not verify_otp(code, user.email_otp, user.email_otp_expiry, self._now()):
            self.logger.info("otp_rejected", user_id=user.id, channel=CHANNEL_EMAIL)
            raise InvalidOrExpiredOtp()
        user.is_email_verified = True
        user.email_otp = None
        user.email_otp_expiry = None
        user = self.store.save_user(user)
        self.logger.info("email_verified", user_id=user.id)
        return user

    async def verify_phone_otp(self, email: str, code: str) -> UserAccount:
        user = self._require_user(email)
        if not verify_otp(code, user.phone_otp, user.phone_otp_expiry, self._now()):
            self.logger.info("otp_rejected", user_id=user.id, channel=CHANNEL_PHONE)
            raise InvalidOrExpiredOtp()
        user.is_phone_verified = True
        user.phone_otp = None
        user.phone_otp_expiry = None
        user = self.store.save_user(user)
        self.logger.info("phone_verified", user_id=user.id)
        return user

    async def resend_otp(self, email: str, channel: str) -> bool:
        """Issue a fresh code on one channel; returns whether it was dispatched."""
        user = self._require_user(email)
        fresh = generate_otp(self._now(), self.otp_ttl)
        if channel == CHANNEL_EMAIL:
            if user.is_email_verified:
                raise AlreadyVerified("email already verified")
            user.email_otp, user.email_otp_expiry = fresh.code, fresh.expires_at
            user = self.store.save_user(user)
            return await self._dispatch_email_otp(user, PURPOSE_VERIFY)
        if channel == CHANNEL_PHONE:
            if user.is_phone_verified:
                raise AlreadyVerified("phone already verified")
            user.phone_otp, user.phone_otp_expiry = fresh.code, fresh.expires_at
            user = self.store.save_user(user)
            return await self._dispatch_phone_otp(user)
        raise ValidationError("unknown channel", detail={"field": "channel"})

    # sessions
    async def _open_session(self, user: UserAccount) -> TokenPair:
        pair = self.tokens.issue_pair(user.id, user.role)
        ttl = (pair.refresh_expires_at - self.tokens.clock()).total_seconds()
        await self.revocation.store_refresh_session(pair.refresh_jti, user.id, int(ttl))
        return pair

    async def login(self, email: str, password: str) -> SessionGrant:
        """Verify credentials and open a refresh session.

        Under ``single_session`` the new session is stored first and every other
        session of the user is revoked afterwards, so concurrent logins leave at
        most one live session. Two racing logins may revoke each other, in which
        case both clients must log in again.
        """
        user = self._require_user(email)
        if not user.is_verified:
            raise NotVerified()
        if not self._verify_password(user, password):
            self.logger.info("login_rejected", user_id=user.id, reason="password")
            raise InvalidPassword()
        if not user.is_active:
            raise NotActive()
        pair = await self._open_session(user)
        if self.settings.single_session:
            revoked = await self.revocation.revoke_user_refresh_sessions(
                user.id, except_jti=pair.refresh_jti
            )
            if revoked:
                self.logger.info(
                    "single_session_prior_revoked", user_id=user.id, revoked=revoked
                )
        user.is_logged_in = True
        user.last_login = self._now()
        user = self.store.save_user(user)
        self.logger.info("login_succeeded", user_id=user.id, jti=pair.refresh_jti)
        return SessionGrant(user=user, tokens=pair)

    async def refresh(self, refresh_token: Optional[str]) -> SessionGrant:
        """Rotate a refresh token.

        The old jti is consumed with an atomic pop, so of several concurrent
        callers presenting the same token exactly one gets a new pair.
        """
        if not refresh_token:
            raise NoRefreshToken()
        claims = self.tokens.verify_refresh_token(refresh_token)
        owner = await self.revocation.pop_refresh_session(claims.jti)
        if owner is None:
            self.logger.warning("refresh_reuse_rejected", user_id=claims.sub, jti=claims.jti)
            raise RefreshRevoked()
        if owner != claims.sub:
            self.logger.warning(
                "refresh_subject_mismatch", user_id=claims.sub, jti=claims.jti
            )
            raise RefreshRevoked()
        user = self.store.get_user(claims.sub)
        if not user:
            raise TokenInvalid("user no longer exists")
        if not user.is_active:
            raise NotActive()
        pair = await self._open_session(user)
        self.logger.info(
            "refresh_rotated", user_id=user.id, old_jti=claims.jti, jti=pair.refresh_jti
        )
        return SessionGrant(user=user, tokens=pair)

    async def logout(self, ctx: AuthContext, refresh_token: Optional[str]) -> bool:
        """End the caller's session; returns whether a refresh entry was removed.

        An absent, expired or forged refresh token is tolerated: the caller is
        already authenticated and the cookies are cleared either way.
        """
        revoked = False
        if refresh_token:
            try:
                claims = self.tokens.verify_refresh_token(refresh_token)
            except AuthenticationError as exc:
                self.logger.info(
                    "logout_refresh_ignored", user_id=ctx.user_id, reason=exc.kind
                )
            else:
                if claims.sub == ctx.user_id:
                    revoked = await self.revocation.revoke_refresh_session(claims.jti)
        user = self.store.get_user(ctx.user_id)
        if user and user.is_logged_in:
            user.is_logged_in = False
            self.store.save_user(user)
        self.logger.info("logout", user_id=ctx.user_id, revoked=revoked)
        return revoked

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        revoked = await self.revocation.revoke_user_refresh_sessions(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    # password reset
    async def forgot_password(self, email: str) -> bool:
        user = self._require_user(email)
        fresh = generate_otp(self._now(), self.otp_ttl)
        user.email_otp, user.email_otp_expiry = fresh.code, fresh.expires_at
        user = self.store.save_user(user)
        self.logger.info("password_reset_requested", user_id=user.id)
        return await self._dispatch_email_otp(user, PURPOSE_RESET)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        user = self._require_user(email)
        if not verify_otp(code, user.email_otp, user.email_otp_expiry, self._now()):
            self.logger.info("password_reset_rejected", user_id=user.id)
            raise InvalidOrExpiredOtp()
        user.password_hash = self._hash_password(new_password)
        user.email_otp = None
        user.email_otp_expiry = None
        user.is_logged_in = False
        self.store.save_user(user)
        await self.revoke_all_user_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    # authorization gate
    def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise NotAuthenticated()
        claims = self.tokens.verify_access_token(access_token)
        user = self.store.get_user(claims.sub)
        if not user:
            raise TokenInvalid("user no longer exists")
        if not user.is_active:
            raise NotActive()
        return AuthContext(user_id=user.id, role=user.role, email=user.email)

    def authorize(self, ctx: AuthContext, allowed: Iterable[Role]) -> None:
        allowed = tuple(allowed)
        if not ctx.role.satisfies(allowed):
            self.logger.info(
                "authorization_denied",
                user_id=ctx.user_id,
                role=ctx.role.value,
                required=[Role(r).value for r in allowed],
            )
            raise InsufficientRole()

    def get_account(self, user_id: str) -> UserAccount:
        user = self.store.get_user(user_id)
        if not user:
            raise UserNotFound()
        return user

    # admin account management
    def list_users(
        self, *, search: Optional[str] = None, page: int = 1, limit: int = 10
    ) -> UserListing:
        page = max(1, page)
        limit = max(1, limit)
        result = self.store.list_users(
            search=search, offset=(page - 1) * limit, limit=limit
        )
        return UserListing(items=result.items, total=result.total, page=page, limit=limit)

    async def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        role: Optional[Role] = None,
        is_active: Optional[bool] = None,
    ) -> UserAccount:
        user = self.get_account(user_id)
        if user.role is Role.ADMIN and (role is not None or is_active is not None):
            raise AdminImmutable()
        privileges_changed = False
        if email is not None:
            user.email = normalize_email(email)
        if role is not None and Role(role) is not user.role:
            user.role = Role(role)
            privileges_changed = True
        if is_active is not None and is_active != user.is_active:
            user.is_active = is_active
            privileges_changed = True
        try:
            user = self.store.save_user(user)
        except ConstraintViolation as exc:
            raise EmailAlreadyRegistered() from exc
        if privileges_changed:
            await self.revoke_all_user_sessions(user.id)
        self.logger.info(
            "admin_user_updated",
            user_id=user.id,
            role=user.role.value,
            is_active=user.is_active,
        )
        return user

    async def delete_user(self, user_id: str) -> None:
        user = self.get_account(user_id)
        if user.role is Role.ADMIN:
            raise AdminImmutable("admin accounts cannot be deleted")
        self.store.delete_user(user.id)
        await self.revoke_all_user_sessions(user.id)
        self.logger.info("admin_user_deleted", user_id=user.id)

    async def delete_users(self, user_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            raise ValidationError("no user ids given", detail={"field": "ids"})
        targets = [u for u in (self.store.get_user(i) for i in ids) if u]
        admins = [u.id for u in targets if u.role is Role.ADMIN]
        if admins:
            raise AdminImmutable(
                "admin accounts cannot be deleted", detail={"admin_ids": admins}
            )
        deleted = self.store.delete_users([u.id for u in targets])
        for user in targets:
            await self.revoke_all_user_sessions(user.id)
        self.logger.info("admin_users_deleted", requested=len(ids), deleted=deleted)
        return deleted

    def provision_account(
        self, email: str, phone_number: str, password: str, role: Role
    ) -> tuple[UserAccount, str]:
        """Create a verified, active account with ``role``, or fix up an existing one.

        Existing accounts keep their password. Returns the account and one of
        ``created``, ``updated`` or ``unchanged``.
        """
        email = normalize_email(email)
        existing = self.store.get_user_by_email(email)
        if existing:
            if existing.role is role and existing.is_verified and existing.is_active:
                return existing, "unchanged"
            existing.role = role
            existing.is_email_verified = True
            existing.is_phone_verified = True
            existing.is_active = True
            self.logger.info(
                "account_provisioned",
                user_id=existing.id,
                role=role.value,
                status="updated",
            )
            return self.store.save_user(existing), "updated"
        user = UserAccount.new(
            email,
            self._hash_password(password),
            phone_number.strip(),
            role=role,
            now=self._now(),
        )
        user.is_email_verified = True
        user.is_phone_verified = True
        user = self.store.create_user(user)
        self.logger.info(
            "account_provisioned", user_id=user.id, role=role.value, status="created"
        )
        return user, "created"

    # housekeeping
    def purge_unverified_accounts(self, now: Optional[datetime] = None) -> int:
        """Delete accounts that never verified either channel within the retention window."""
        cutoff = (now or self._now()) - timedelta(
            minutes=self.settings.unverified_retention_minutes
        )
        stale = self.store.list_unverified_before(cutoff)
        if not stale:
            return 0
        deleted = self.store.delete_users([u.id for u in stale])
        self.logger.info("unverified_accounts_purged", deleted=deleted)
        return deleted
