"""Unit tests for the auth state machine.

Covers:
- Signup and dual OTP verification
- Login gating and single-session enforcement
- Refresh rotation, replay and concurrency
- Logout tolerance of bad refresh tokens
- Password reset
- Role gate and admin account management
- Unverified-account housekeeping
"""

import asyncio
from datetime import timedelta

import pytest

from peaceverse.config import Settings
from peaceverse.service.auth import AuthService
from peaceverse.service.errors import (
    AdminImmutable,
    AlreadyVerified,
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
from peaceverse.service.tokens import TokenService
from peaceverse.storage.errors import StorageUnavailable
from peaceverse.storage.memory import MemoryRevocationStore, MemoryStore
from peaceverse.storage.models import Role, utcnow

EMAIL = "a@x.com"
PHONE = "+15550001111"
PASSWORD = "pw123456"


class FakeClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeEmail:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send_otp(self, to_email, code, purpose="verify"):
        self.sent.append((to_email, code, purpose))
        return self.ok


class FakeSms:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    async def send_otp(self, phone_number, code):
        self.sent.append((phone_number, code))
        return self.ok


class UnavailableRevocationStore(MemoryRevocationStore):
    async def pop_refresh_session(self, jti):
        raise StorageUnavailable("connection refused", backend="redis")


class InterleavingRevocationStore(MemoryRevocationStore):
    """Yields to the event loop before each write, like a networked store."""

    async def store_refresh_session(self, jti, user_id, ttl_seconds):
        await asyncio.sleep(0)
        await super().store_refresh_session(jti, user_id, ttl_seconds)

    async def revoke_user_refresh_sessions(self, user_id, except_jti=None):
        await asyncio.sleep(0)
        return await super().revoke_user_refresh_sessions(user_id, except_jti)


@pytest.fixture
def settings():
    return Settings(
        access_token_secret="unit-access-secret",
        refresh_token_secret="unit-refresh-secret",
        auth_rate_limit_per_minute=3,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def revocation():
    return MemoryRevocationStore()


@pytest.fixture
def email():
    return FakeEmail()


@pytest.fixture
def sms():
    return FakeSms()


@pytest.fixture
def auth(store, revocation, settings, email, sms, clock):
    return AuthService(
        store,
        revocation,
        TokenService(settings),
        settings,
        email=email,
        sms=sms,
        clock=clock,
    )


async def _verified_user(auth, store, email_addr=EMAIL, role=Role.USER):
    await auth.signup(email_addr, PHONE, PASSWORD)
    user = store.get_user_by_email(email_addr)
    await auth.verify_email_otp(email_addr, user.email_otp)
    await auth.verify_phone_otp(email_addr, user.phone_otp)
    if role is not Role.USER:
        user = store.get_user_by_email(email_addr)
        user.role = role
        store.save_user(user)
    return store.get_user_by_email(email_addr)


class TestSignup:
    """Tests for signup and OTP verification."""

    async def test_signup_stores_hashed_password_and_two_codes(self, auth, store, email, sms):
        result = await auth.signup("A@X.com ", PHONE, PASSWORD)

        user = store.get_user_by_email(EMAIL)
        assert result.user.id == user.id
        assert result.email_sent and result.sms_sent
        assert user.password_hash != PASSWORD
        assert user.password_hash.startswith("$argon2id$")
        assert user.email_otp and user.phone_otp
        assert user.email_otp_expiry == user.created_at + timedelta(minutes=5)
        assert user.phone_otp_expiry == user.created_at + timedelta(minutes=5)
        assert not user.is_email_verified and not user.is_phone_verified
        assert user.role is Role.USER and user.is_active
        assert email.sent == [(EMAIL, user.email_otp, "verify")]
        assert sms.sent == [(PHONE, user.phone_otp)]

    async def test_duplicate_email_rejected(self, auth):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        with pytest.raises(EmailAlreadyRegistered):
            await auth.signup(EMAIL.upper(), PHONE, PASSWORD)

    async def test_dispatch_failure_keeps_account(self, store, revocation, settings, clock):
        auth = AuthService(
            store,
            revocation,
            TokenService(settings),
            settings,
            email=FakeEmail(ok=False),
            sms=FakeSms(ok=False),
            clock=clock,
        )
        result = await auth.signup(EMAIL, PHONE, PASSWORD)
        assert result.email_sent is False
        assert result.sms_sent is False
        assert store.get_user_by_email(EMAIL).email_otp is not None

    async def test_verification_sets_flags_and_clears_codes(self, auth, store):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        user = store.get_user_by_email(EMAIL)

        verified = await auth.verify_email_otp(EMAIL, user.email_otp)
        assert verified.is_email_verified
        assert verified.email_otp is None and verified.email_otp_expiry is None
        assert not verified.is_phone_verified

        verified = await auth.verify_phone_otp(EMAIL, user.phone_otp)
        assert verified.is_phone_verified
        assert verified.phone_otp is None

    async def test_code_is_single_use(self, auth, store):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        code = store.get_user_by_email(EMAIL).email_otp
        await auth.verify_email_otp(EMAIL, code)
        with pytest.raises(InvalidOrExpiredOtp):
            await auth.verify_email_otp(EMAIL, code)

    async def test_expired_code_rejected(self, auth, store, clock):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        code = store.get_user_by_email(EMAIL).email_otp
        clock.advance(minutes=5, seconds=1)
        with pytest.raises(InvalidOrExpiredOtp):
            await auth.verify_email_otp(EMAIL, code)
        assert not store.get_user_by_email(EMAIL).is_email_verified

    async def test_channels_do_not_share_codes(self, auth, store):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        user = store.get_user_by_email(EMAIL)
        if user.email_otp != user.phone_otp:
            with pytest.raises(InvalidOrExpiredOtp):
                await auth.verify_phone_otp(EMAIL, user.email_otp)

    async def test_unknown_email(self, auth):
        with pytest.raises(UserNotFound):
            await auth.verify_email_otp("nobody@x.com", "123456")

    async def test_resend_replaces_code(self, auth, store, sms):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        old = store.get_user_by_email(EMAIL).phone_otp
        assert await auth.resend_otp(EMAIL, "phone") is True
        new = store.get_user_by_email(EMAIL).phone_otp
        assert sms.sent[-1] == (PHONE, new)
        if old != new:
            with pytest.raises(InvalidOrExpiredOtp):
                await auth.verify_phone_otp(EMAIL, old)
        await auth.verify_phone_otp(EMAIL, new)

    async def test_resend_for_verified_channel_rejected(self, auth, store):
        await _verified_user(auth, store)
        with pytest.raises(AlreadyVerified):
            await auth.resend_otp(EMAIL, "email")

    async def test_resend_unknown_channel(self, auth, store):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        with pytest.raises(ValidationError):
            await auth.resend_otp(EMAIL, "fax")


class TestLogin:
    """Tests for login gating and session creation."""

    async def test_login_requires_both_channels(self, auth, store):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        with pytest.raises(NotVerified):
            await auth.login(EMAIL, PASSWORD)
        await auth.verify_email_otp(EMAIL, store.get_user_by_email(EMAIL).email_otp)
        with pytest.raises(NotVerified):
            await auth.login(EMAIL, PASSWORD)
        # gating does not depend on the password
        with pytest.raises(NotVerified):
            await auth.login(EMAIL, "wrong-password")

    async def test_login_issues_session(self, auth, store, revocation):
        user = await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)

        assert grant.user.is_logged_in
        assert grant.user.last_login is not None
        assert await revocation.get_refresh_session(grant.tokens.refresh_jti) == user.id
        claims = auth.tokens.verify_access_token(grant.tokens.access_token)
        assert claims.sub == user.id and claims.role is Role.USER

    async def test_wrong_password(self, auth, store):
        await _verified_user(auth, store)
        with pytest.raises(InvalidPassword):
            await auth.login(EMAIL, "wrong-password")

    async def test_unknown_user(self, auth):
        with pytest.raises(UserNotFound):
            await auth.login("nobody@x.com", PASSWORD)

    async def test_inactive_user(self, auth, store):
        user = await _verified_user(auth, store)
        user.is_active = False
        store.save_user(user)
        with pytest.raises(NotActive):
            await auth.login(EMAIL, PASSWORD)

    async def test_second_login_revokes_first_session(self, auth, store, revocation):
        user = await _verified_user(auth, store)
        first = await auth.login(EMAIL, PASSWORD)
        second = await auth.login(EMAIL, PASSWORD)
        assert revocation.live_sessions(user.id) == [second.tokens.refresh_jti]
        with pytest.raises(RefreshRevoked):
            await auth.refresh(first.tokens.refresh_token)

    async def test_concurrent_logins_leave_one_session_at_most(
        self, store, settings, email, sms, clock
    ):
        revocation = InterleavingRevocationStore()
        auth = AuthService(
            store,
            revocation,
            TokenService(settings),
            settings,
            email=email,
            sms=sms,
            clock=clock,
        )
        user = await _verified_user(auth, store)
        await asyncio.gather(*(auth.login(EMAIL, PASSWORD) for _ in range(3)))
        assert len(revocation.live_sessions(user.id)) <= 1

    async def test_rate_limit(self, auth):
        for _ in range(3):
            await auth.enforce_rate_limit("login", EMAIL)
        with pytest.raises(RateLimitedError) as excinfo:
            await auth.enforce_rate_limit("login", EMAIL.upper())
        assert excinfo.value.status_code == 429
        # other actions and subjects have their own windows
        await auth.enforce_rate_limit("signup", EMAIL)
        await auth.enforce_rate_limit("login", "other@x.com")


class TestRefresh:
    """Tests for refresh-token rotation."""

    async def test_rotation_replaces_session(self, auth, store, revocation):
        user = await _verified_user(auth, store)
        first = await auth.login(EMAIL, PASSWORD)
        second = await auth.refresh(first.tokens.refresh_token)

        assert second.tokens.refresh_jti != first.tokens.refresh_jti
        assert await revocation.get_refresh_session(first.tokens.refresh_jti) is None
        assert await revocation.get_refresh_session(second.tokens.refresh_jti) == user.id

    async def test_replayed_token_revoked(self, auth, store):
        await _verified_user(auth, store)
        first = await auth.login(EMAIL, PASSWORD)
        await auth.refresh(first.tokens.refresh_token)
        with pytest.raises(RefreshRevoked):
            await auth.refresh(first.tokens.refresh_token)

    async def test_concurrent_refresh_has_one_winner(self, auth, store):
        await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        results = await asyncio.gather(
            *(auth.refresh(grant.tokens.refresh_token) for _ in range(8)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(r, RefreshRevoked) for r in losers)

    async def test_missing_token(self, auth):
        with pytest.raises(NoRefreshToken):
            await auth.refresh(None)

    async def test_access_token_cannot_refresh(self, auth, store):
        await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        with pytest.raises(TokenInvalid):
            await auth.refresh(grant.tokens.access_token)

    async def test_store_outage_is_not_revocation(self, store, settings, email, sms, clock):
        auth = AuthService(
            store,
            UnavailableRevocationStore(),
            TokenService(settings),
            settings,
            email=email,
            sms=sms,
            clock=clock,
        )
        await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        with pytest.raises(StorageUnavailable):
            await auth.refresh(grant.tokens.refresh_token)

    async def test_deactivated_user_cannot_refresh(self, auth, store):
        user = await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        user = store.get_user(user.id)
        user.is_active = False
        store.save_user(user)
        with pytest.raises(NotActive):
            await auth.refresh(grant.tokens.refresh_token)


class TestLogout:
    """Tests for logout."""

    async def test_logout_revokes_session(self, auth, store, revocation):
        user = await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        ctx = auth.authenticate(grant.tokens.access_token)

        assert await auth.logout(ctx, grant.tokens.refresh_token) is True
        assert revocation.live_sessions(user.id) == []
        assert not store.get_user(user.id).is_logged_in

    async def test_logout_twice_is_harmless(self, auth, store):
        await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        ctx = auth.authenticate(grant.tokens.access_token)

        assert await auth.logout(ctx, grant.tokens.refresh_token) is True
        assert await auth.logout(ctx, grant.tokens.refresh_token) is False
        assert await auth.logout(ctx, None) is False
        assert await auth.logout(ctx, "garbage") is False

    async def test_logout_ignores_other_users_token(self, auth, store, revocation):
        await _verified_user(auth, store)
        other = await _verified_user(auth, store, email_addr="b@x.com")
        mine = await auth.login(EMAIL, PASSWORD)
        theirs = await auth.login("b@x.com", PASSWORD)
        ctx = auth.authenticate(mine.tokens.access_token)

        assert await auth.logout(ctx, theirs.tokens.refresh_token) is False
        assert revocation.live_sessions(other.id) == [theirs.tokens.refresh_jti]


class TestPasswordReset:
    """Tests for forgot/reset password."""

    async def test_reset_hashes_new_password(self, auth, store, email):
        await _verified_user(auth, store)
        assert await auth.forgot_password(EMAIL) is True
        code = store.get_user_by_email(EMAIL).email_otp
        assert email.sent[-1] == (EMAIL, code, "reset")

        await auth.reset_password(EMAIL, code, "new-pass-123")

        user = store.get_user_by_email(EMAIL)
        assert user.password_hash != "new-pass-123"
        assert user.password_hash.startswith("$argon2id$")
        assert user.email_otp is None
        with pytest.raises(InvalidPassword):
            await auth.login(EMAIL, PASSWORD)
        await auth.login(EMAIL, "new-pass-123")

    async def test_reset_code_single_use(self, auth, store):
        await _verified_user(auth, store)
        await auth.forgot_password(EMAIL)
        code = store.get_user_by_email(EMAIL).email_otp
        await auth.reset_password(EMAIL, code, "new-pass-123")
        with pytest.raises(InvalidOrExpiredOtp):
            await auth.reset_password(EMAIL, code, "another-pass")

    async def test_reset_revokes_sessions(self, auth, store, revocation):
        user = await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        await auth.forgot_password(EMAIL)
        await auth.reset_password(EMAIL, store.get_user(user.id).email_otp, "new-pass-123")
        with pytest.raises(RefreshRevoked):
            await auth.refresh(grant.tokens.refresh_token)

    async def test_expired_reset_code(self, auth, store, clock):
        await _verified_user(auth, store)
        await auth.forgot_password(EMAIL)
        code = store.get_user_by_email(EMAIL).email_otp
        clock.advance(minutes=6)
        with pytest.raises(InvalidOrExpiredOtp):
            await auth.reset_password(EMAIL, code, "new-pass-123")

    async def test_forgot_for_unknown_email(self, auth):
        with pytest.raises(UserNotFound):
            await auth.forgot_password("nobody@x.com")


class TestAuthorization:
    """Tests for authenticate/authorize."""

    async def test_missing_token(self, auth):
        with pytest.raises(NotAuthenticated):
            auth.authenticate(None)

    async def test_role_read_from_store(self, auth, store):
        user = await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        user.role = Role.EDITOR
        store.save_user(user)
        assert auth.authenticate(grant.tokens.access_token).role is Role.EDITOR

    async def test_deleted_user_token_rejected(self, auth, store):
        user = await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        store.delete_user(user.id)
        with pytest.raises(TokenInvalid):
            auth.authenticate(grant.tokens.access_token)

    @pytest.mark.parametrize(
        "role,allowed,permitted",
        [
            (Role.USER, [Role.USER], True),
            (Role.USER, [Role.EDITOR], False),
            (Role.EDITOR, [Role.EDITOR], True),
            (Role.EDITOR, [Role.ADMIN], False),
            (Role.ADMIN, [Role.EDITOR], True),
            (Role.ADMIN, [Role.USER], True),
        ],
    )
    async def test_role_gate(self, auth, store, role, allowed, permitted):
        await _verified_user(auth, store, role=role)
        grant = await auth.login(EMAIL, PASSWORD)
        ctx = auth.authenticate(grant.tokens.access_token)
        if permitted:
            auth.authorize(ctx, allowed)
        else:
            with pytest.raises(InsufficientRole):
                auth.authorize(ctx, allowed)


class TestAdminManagement:
    """Tests for admin account management."""

    async def test_admin_role_and_status_are_immutable(self, auth, store):
        admin = await _verified_user(auth, store, email_addr="boss@x.com", role=Role.ADMIN)
        before = store.get_user(admin.id)
        with pytest.raises(AdminImmutable):
            await auth.update_user(admin.id, role=Role.USER)
        with pytest.raises(AdminImmutable):
            await auth.update_user(admin.id, is_active=False)
        with pytest.raises(AdminImmutable):
            await auth.delete_user(admin.id)
        after = store.get_user(admin.id)
        assert after.role is Role.ADMIN
        assert after.is_active
        assert after.updated_at == before.updated_at

    async def test_role_change_revokes_sessions(self, auth, store, revocation):
        user = await _verified_user(auth, store)
        await auth.login(EMAIL, PASSWORD)
        updated = await auth.update_user(user.id, role=Role.EDITOR)
        assert updated.role is Role.EDITOR
        assert revocation.live_sessions(user.id) == []

    async def test_email_change_keeps_sessions(self, auth, store, revocation):
        user = await _verified_user(auth, store)
        grant = await auth.login(EMAIL, PASSWORD)
        updated = await auth.update_user(user.id, email="New@X.com")
        assert updated.email == "new@x.com"
        assert revocation.live_sessions(user.id) == [grant.tokens.refresh_jti]

    async def test_email_change_to_taken_address(self, auth, store):
        user = await _verified_user(auth, store)
        await _verified_user(auth, store, email_addr="b@x.com")
        with pytest.raises(EmailAlreadyRegistered):
            await auth.update_user(user.id, email="b@x.com")

    async def test_batch_delete_rejects_admin_targets(self, auth, store):
        user = await _verified_user(auth, store)
        admin = await _verified_user(auth, store, email_addr="boss@x.com", role=Role.ADMIN)
        with pytest.raises(AdminImmutable) as excinfo:
            await auth.delete_users([user.id, admin.id])
        assert excinfo.value.detail["admin_ids"] == [admin.id]
        assert store.get_user(user.id) is not None

    async def test_batch_delete(self, auth, store):
        first = await _verified_user(auth, store)
        second = await _verified_user(auth, store, email_addr="b@x.com")
        assert await auth.delete_users([first.id, second.id, "missing"]) == 2
        assert store.get_user(first.id) is None

    async def test_batch_delete_requires_ids(self, auth):
        with pytest.raises(ValidationError):
            await auth.delete_users([])

    async def test_list_users_paginates_and_searches(self, auth, store, clock):
        for i in range(12):
            await auth.signup(f"user{i}@x.com", PHONE, PASSWORD)
            clock.advance(seconds=1)
        listing = auth.list_users(page=2, limit=5)
        assert listing.total == 12
        assert listing.total_pages == 3
        assert len(listing.items) == 5
        assert auth.list_users(search="USER11").total == 1
        assert auth.list_users(search="editor").total == 0

    async def test_provision_account(self, auth, store):
        user, status = auth.provision_account("Boss@X.com", PHONE, PASSWORD, Role.ADMIN)
        assert status == "created"
        assert user.role is Role.ADMIN and user.is_verified
        _, status = auth.provision_account("boss@x.com", PHONE, "ignored", Role.ADMIN)
        assert status == "unchanged"
        await auth.login("boss@x.com", PASSWORD)


class TestUnverifiedSweep:
    """Tests for unverified-account housekeeping."""

    async def test_sweep_removes_only_stale_unverified(self, auth, store, clock):
        await auth.signup("stale@x.com", PHONE, PASSWORD)
        await auth.signup("half@x.com", PHONE, PASSWORD)
        half = store.get_user_by_email("half@x.com")
        await auth.verify_email_otp("half@x.com", half.email_otp)
        clock.advance(minutes=31)
        await auth.signup("fresh@x.com", PHONE, PASSWORD)

        assert auth.purge_unverified_accounts() == 1
        assert store.get_user_by_email("stale@x.com") is None
        assert store.get_user_by_email("half@x.com") is not None
        assert store.get_user_by_email("fresh@x.com") is not None

    async def test_sweep_keeps_accounts_inside_window(self, auth, store, clock):
        await auth.signup(EMAIL, PHONE, PASSWORD)
        clock.advance(minutes=29)
        assert auth.purge_unverified_accounts() == 0
