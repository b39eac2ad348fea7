"""Unit tests for the admin login ceremony.

Tests for:
- Credential validation
- Pending session state machine (setup and MFA)
- Attempt cap on code checks
- Backup code redemption
- Refresh token rotation
- Password reset protocol
- Profile reads and updates
"""

from datetime import timedelta

import pytest

from rimadmin.config import Settings
from rimadmin.service.auth import (
    RESET_LINK_EXPIRED,
    RESET_LINK_INVALID,
    RESET_LINK_USED,
    STATUS_MFA_REQUIRED,
    STATUS_MFA_SETUP_REQUIRED,
    AuthService,
    format_role_name,
    hash_reset_token,
)
from rimadmin.service.errors import (
    AccountInactive,
    BadRequestError,
    ExpiredResetToken,
    InvalidAccountState,
    InvalidBackupCode,
    InvalidCode,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidResetToken,
    InvalidSession,
    NotFoundError,
    ResetTokenAlreadyUsed,
    SessionAlreadyUsed,
    SessionExpired,
    SessionNotFound,
    TwoFactorRequired,
    Unauthorized,
)
from rimadmin.service.totp import OneTimeCodeEngine
from rimadmin.storage.memory import MemoryStore
from rimadmin.storage.models import AdminUserStatus, PendingSessionType, utcnow

PASSWORD = "CorrectHorse42!"


def _wrong_code(secret: str) -> str:
    """A six digit code outside the accepted drift window."""
    now = utcnow()
    accepted = {
        OneTimeCodeEngine.current_code(secret, at=now + timedelta(seconds=offset))
        for offset in (-60, -30, 0, 30, 60)
    }
    return next(c for c in ("000000", "111111", "222222", "333333", "444444", "555555", "666666") if c not in accepted)


class RecordingEmail:
    def __init__(self):
        self.sent = []

    @property
    def is_configured(self):
        return False

    def send_password_reset(self, to_email, token, expires_at):
        self.sent.append((to_email, token, expires_at))
        return True


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Access-Secret_for-Automation-Only-987654321!",
        jwt_refresh_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
        shared_fs_root=str(tmp_path),
        mfa_max_attempts=3,
        backup_code_count=4,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def email_outbox():
    return RecordingEmail()


@pytest.fixture
def auth_service(memory_store, settings, email_outbox):
    """Create auth service for testing."""
    return AuthService(memory_store, settings, email=email_outbox)


@pytest.fixture
def admin(auth_service):
    """An active admin who has not enrolled an authenticator yet."""
    return auth_service.create_admin("ops.lead", "Ops.Lead@Example.com", PASSWORD, role="super_admin")


async def _enroll(auth_service, admin):
    """Run the setup ceremony and return (secret, backup_codes, tokens)."""
    login = await auth_service.login(admin.email, PASSWORD)
    setup = await auth_service.start_two_factor_setup(login["sessionToken"])
    secret = setup["manualKey"]
    tokens = await auth_service.verify_two_factor_setup(
        login["sessionToken"], OneTimeCodeEngine.current_code(secret)
    )
    return secret, setup["backupCodes"], tokens


class TestCredentials:
    """Tests for email/password validation."""

    def test_create_admin_lowercases_email(self, admin):
        """Stored emails are normalized to lower case."""
        assert admin.email == "ops.lead@example.com"
        assert admin.password_hash != PASSWORD

    def test_valid_credentials_update_last_login(self, auth_service, admin, memory_store):
        user = auth_service.validate_credentials("OPS.LEAD@example.com", PASSWORD)

        assert user.id == admin.id
        assert memory_store.get_admin_user(admin.id).last_login is not None

    def test_unknown_email_and_wrong_password_look_the_same(self, auth_service, admin):
        with pytest.raises(InvalidCredentials) as unknown:
            auth_service.validate_credentials("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            auth_service.validate_credentials(admin.email, "not-the-password")

        assert unknown.value.message == wrong.value.message == "Invalid credentials"

    def test_inactive_account_rejected(self, auth_service, admin, memory_store):
        memory_store.users[admin.id].status = AdminUserStatus.SUSPENDED

        with pytest.raises(AccountInactive):
            auth_service.validate_credentials(admin.email, PASSWORD)

    def test_login_cleans_up_stale_sessions(self, auth_service, admin, memory_store):
        first = auth_service.create_pending_session(admin.id, PendingSessionType.SETUP)
        memory_store.mark_pending_session_used(first.id)

        auth_service.validate_credentials(admin.email, PASSWORD)

        assert memory_store.get_pending_session_by_hash(first.hash) is None


class TestLogin:
    """Tests for the login branch between setup and MFA."""

    async def test_login_without_two_factor_opens_setup_session(self, auth_service, admin):
        result = await auth_service.login(admin.email, PASSWORD, ip="10.0.0.7", user_agent="pytest")

        assert result["status"] == STATUS_MFA_SETUP_REQUIRED
        assert len(result["sessionToken"]) == 64
        assert "temporaryHash" not in result
        assert result["user"] == {
            "id": admin.id,
            "email": admin.email,
            "name": "ops.lead",
            "role": "Super Admin",
        }
        session = auth_service.store.get_pending_session_by_hash(result["sessionToken"])
        assert session.type == PendingSessionType.SETUP
        assert session.ip == "10.0.0.7"
        assert session.user_agent == "pytest"

    async def test_login_with_two_factor_opens_mfa_session(self, auth_service, admin):
        await _enroll(auth_service, admin)

        result = await auth_service.login(admin.email, PASSWORD)

        assert result["status"] == STATUS_MFA_REQUIRED
        assert "sessionToken" not in result
        session = auth_service.store.get_pending_session_by_hash(result["temporaryHash"])
        assert session.type == PendingSessionType.MFA

    async def test_new_login_retires_previous_session(self, auth_service, admin, memory_store):
        secret, _, _ = await _enroll(auth_service, admin)
        first = await auth_service.login(admin.email, PASSWORD)
        second = await auth_service.login(admin.email, PASSWORD)

        active = memory_store.active_pending_sessions(admin.id, PendingSessionType.MFA)
        assert [s.hash for s in active] == [second["temporaryHash"]]
        with pytest.raises(SessionAlreadyUsed):
            await auth_service.verify_mfa(first["temporaryHash"], OneTimeCodeEngine.current_code(secret))
        assert await auth_service.verify_mfa(second["temporaryHash"], OneTimeCodeEngine.current_code(secret))

    async def test_session_expires_after_ttl(self, auth_service, admin):
        result = await auth_service.login(admin.email, PASSWORD)

        expected = utcnow() + timedelta(minutes=10)
        assert abs((result["expiresAt"] - expected).total_seconds()) < 5


class TestTwoFactorSetup:
    """Tests for authenticator enrollment."""

    async def test_setup_returns_enrollment_material(self, auth_service, admin, memory_store):
        login = await auth_service.login(admin.email, PASSWORD)

        setup = await auth_service.start_two_factor_setup(login["sessionToken"])

        assert setup["otpauthUrl"].startswith("otpauth://totp/")
        assert "RIM%20Admin" in setup["otpauthUrl"]
        assert setup["qrCodeDataUrl"].startswith("data:image/png;base64,")
        assert len(setup["backupCodes"]) == 4
        assert all(len(code) == 16 for code in setup["backupCodes"])
        session = memory_store.get_pending_session_by_hash(login["sessionToken"])
        assert session.secret == setup["manualKey"]
        assert session.used is False

    async def test_verify_setup_enables_two_factor_and_issues_tokens(self, auth_service, admin, memory_store):
        secret, backup_codes, tokens = await _enroll(auth_service, admin)

        user = memory_store.get_admin_user(admin.id)
        assert user.two_factor_enabled is True
        assert user.otp_secret == secret
        assert user.refresh_token == tokens["refreshToken"]
        assert tokens["expiresIn"] == "1h"
        # Codes shown during setup stay valid
        assert len(memory_store.list_unused_backup_codes(admin.id)) == len(backup_codes)

    async def test_verify_setup_without_secret_is_invalid_session(self, auth_service, admin):
        login = await auth_service.login(admin.email, PASSWORD)

        with pytest.raises(InvalidSession):
            await auth_service.verify_two_factor_setup(login["sessionToken"], "123456")

    async def test_verify_setup_with_wrong_code_leaves_session_usable(self, auth_service, admin, memory_store):
        login = await auth_service.login(admin.email, PASSWORD)
        setup = await auth_service.start_two_factor_setup(login["sessionToken"])

        with pytest.raises(InvalidCode):
            await auth_service.verify_two_factor_setup(login["sessionToken"], _wrong_code(setup["manualKey"]))

        session = memory_store.get_pending_session_by_hash(login["sessionToken"])
        assert session.used is False
        assert session.attempts == 1
        assert memory_store.get_admin_user(admin.id).two_factor_enabled is False

    async def test_setup_session_is_single_use(self, auth_service, admin):
        login = await auth_service.login(admin.email, PASSWORD)
        setup = await auth_service.start_two_factor_setup(login["sessionToken"])
        code = OneTimeCodeEngine.current_code(setup["manualKey"])
        await auth_service.verify_two_factor_setup(login["sessionToken"], code)

        with pytest.raises(SessionAlreadyUsed):
            await auth_service.verify_two_factor_setup(login["sessionToken"], code)

    async def test_mfa_session_cannot_drive_setup(self, auth_service, admin):
        await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)

        with pytest.raises(InvalidSession):
            await auth_service.start_two_factor_setup(login["temporaryHash"])


class TestMfaVerification:
    """Tests for the second-factor check on MFA sessions."""

    async def test_valid_code_issues_tokens(self, auth_service, admin):
        secret, _, _ = await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)

        tokens = await auth_service.verify_mfa(login["temporaryHash"], OneTimeCodeEngine.current_code(secret))

        assert auth_service.tokens.verify_access(tokens["token"])["sub"] == admin.id

    async def test_unknown_hash(self, auth_service):
        with pytest.raises(SessionNotFound):
            await auth_service.verify_mfa("f" * 64, "123456")

    async def test_expired_session_is_consumed(self, auth_service, admin, memory_store):
        secret, _, _ = await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)
        session = memory_store.get_pending_session_by_hash(login["temporaryHash"])
        memory_store.pending_sessions[session.id].expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(SessionExpired):
            await auth_service.verify_mfa(login["temporaryHash"], OneTimeCodeEngine.current_code(secret))
        with pytest.raises(SessionAlreadyUsed):
            await auth_service.verify_mfa(login["temporaryHash"], OneTimeCodeEngine.current_code(secret))

    async def test_setup_session_rejected_for_mfa(self, auth_service, admin):
        login = await auth_service.login(admin.email, PASSWORD)

        with pytest.raises(InvalidSession):
            await auth_service.verify_mfa(login["sessionToken"], "123456")

    async def test_missing_otp_secret_is_invalid_account_state(self, auth_service, admin, memory_store):
        await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)
        memory_store.users[admin.id].otp_secret = None

        with pytest.raises(InvalidAccountState):
            await auth_service.verify_mfa(login["temporaryHash"], "123456")
        with pytest.raises(SessionAlreadyUsed):
            await auth_service.verify_mfa(login["temporaryHash"], "123456")

    async def test_attempt_cap_consumes_session(self, auth_service, admin):
        secret, _, _ = await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)
        wrong = _wrong_code(secret)

        for _ in range(3):
            with pytest.raises(InvalidCode):
                await auth_service.verify_mfa(login["temporaryHash"], wrong)

        with pytest.raises(SessionAlreadyUsed):
            await auth_service.verify_mfa(login["temporaryHash"], OneTimeCodeEngine.current_code(secret))

    async def test_zero_cap_disables_lockout(self, memory_store, email_outbox, tmp_path):
        settings = Settings(
            jwt_secret="Test-Access-Secret_for-Automation-Only-987654321!",
            jwt_refresh_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
            shared_fs_root=str(tmp_path),
            mfa_max_attempts=0,
        )
        service = AuthService(memory_store, settings, email=email_outbox)
        admin = service.create_admin("night.shift", "night@example.com", PASSWORD)
        secret, _, _ = await _enroll(service, admin)
        login = await service.login(admin.email, PASSWORD)

        for _ in range(8):
            with pytest.raises(InvalidCode):
                await service.verify_mfa(login["temporaryHash"], _wrong_code(secret))

        tokens = await service.verify_mfa(login["temporaryHash"], OneTimeCodeEngine.current_code(secret))
        assert tokens["token"]


class TestBackupCodes:
    """Tests for backup code redemption and regeneration."""

    async def test_backup_code_is_single_use(self, auth_service, admin, memory_store):
        _, backup_codes, _ = await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)

        tokens = await auth_service.consume_backup_code(login["temporaryHash"], backup_codes[0])

        assert tokens["refreshToken"] == memory_store.get_admin_user(admin.id).refresh_token
        assert len(memory_store.list_unused_backup_codes(admin.id)) == len(backup_codes) - 1

        again = await auth_service.login(admin.email, PASSWORD)
        with pytest.raises(InvalidBackupCode):
            await auth_service.consume_backup_code(again["temporaryHash"], backup_codes[0])

    async def test_unknown_backup_code_counts_as_attempt(self, auth_service, admin, memory_store):
        await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)

        with pytest.raises(InvalidBackupCode) as exc_info:
            await auth_service.consume_backup_code(login["temporaryHash"], "deadbeefdeadbeef")

        assert isinstance(exc_info.value, InvalidCode)
        session = memory_store.get_pending_session_by_hash(login["temporaryHash"])
        assert session.attempts == 1
        assert session.used is False

    async def test_backup_code_requires_enabled_two_factor(self, auth_service, admin, memory_store):
        _, backup_codes, _ = await _enroll(auth_service, admin)
        login = await auth_service.login(admin.email, PASSWORD)
        memory_store.users[admin.id].two_factor_enabled = False

        with pytest.raises(InvalidAccountState):
            await auth_service.consume_backup_code(login["temporaryHash"], backup_codes[1])

    async def test_regenerate_replaces_all_codes(self, auth_service, admin, memory_store):
        _, old_codes, _ = await _enroll(auth_service, admin)

        result = await auth_service.regenerate_backup_codes(admin.id)

        assert len(result["codes"]) == 4
        assert not set(result["codes"]) & set(old_codes)
        login = await auth_service.login(admin.email, PASSWORD)
        with pytest.raises(InvalidBackupCode):
            await auth_service.consume_backup_code(login["temporaryHash"], old_codes[0])

    async def test_regenerate_for_unknown_admin(self, auth_service):
        with pytest.raises(Unauthorized):
            await auth_service.regenerate_backup_codes("missing")


class TestTokens:
    """Tests for refresh rotation and bearer authentication."""

    async def test_refresh_rotates_pair(self, auth_service, admin):
        _, _, tokens = await _enroll(auth_service, admin)

        rotated = await auth_service.refresh(tokens["refreshToken"])

        assert rotated["refreshToken"] != tokens["refreshToken"]
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens["refreshToken"])

    async def test_access_token_is_not_a_refresh_token(self, auth_service, admin):
        _, _, tokens = await _enroll(auth_service, admin)

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens["token"])

    async def test_refresh_rejected_for_suspended_admin(self, auth_service, admin, memory_store):
        _, _, tokens = await _enroll(auth_service, admin)
        memory_store.users[admin.id].status = AdminUserStatus.INACTIVE

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens["refreshToken"])

    async def test_authenticate_bearer(self, auth_service, admin):
        _, _, tokens = await _enroll(auth_service, admin)

        ctx = await auth_service.authenticate(f"Bearer {tokens['token']}")

        assert ctx.user_id == admin.id
        assert ctx.two_factor_enabled and ctx.otp_configured
        assert AuthService.require_two_factor(ctx) is ctx

    async def test_authenticate_rejects_refresh_and_garbage(self, auth_service, admin):
        _, _, tokens = await _enroll(auth_service, admin)

        for header in (None, "", "Basic abc", f"Bearer {tokens['refreshToken']}", "Bearer a.b.c"):
            with pytest.raises(Unauthorized):
                await auth_service.authenticate(header)

    async def test_non_ascii_signature_is_rejected(self, auth_service, admin):
        await _enroll(auth_service, admin)
        forged = "eyJhbGciOiJIUzI1NiJ9.e30.\u00e9"

        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(forged)
        with pytest.raises(Unauthorized):
            await auth_service.authenticate(f"Bearer {forged}")

    async def test_two_factor_guard(self, auth_service, admin):
        tokens = auth_service.issue_tokens(admin)
        ctx = await auth_service.authenticate(f"Bearer {tokens['token']}")

        with pytest.raises(TwoFactorRequired):
            AuthService.require_two_factor(ctx)


class TestPasswordReset:
    """Tests for the forgot/verify/reset protocol."""

    async def test_request_for_admin_without_two_factor_sends_link(self, auth_service, admin, email_outbox, memory_store):
        result = await auth_service.request_password_reset(admin.email, "")

        assert result == {"ok": True}
        assert len(email_outbox.sent) == 1
        to_email, token, _ = email_outbox.sent[0]
        assert to_email == admin.email
        assert memory_store.get_admin_user(admin.id).password_reset_token_hash == hash_reset_token(token)

    async def test_unknown_email_reports_success_without_mail(self, auth_service, email_outbox):
        assert await auth_service.request_password_reset("ghost@example.com", "") == {"ok": True}
        assert email_outbox.sent == []

    async def test_two_factor_admin_needs_valid_code(self, auth_service, admin, email_outbox):
        secret, _, _ = await _enroll(auth_service, admin)

        await auth_service.request_password_reset(admin.email, _wrong_code(secret))
        assert email_outbox.sent == []

        await auth_service.request_password_reset(admin.email, OneTimeCodeEngine.current_code(secret))
        assert len(email_outbox.sent) == 1

    async def test_reset_flow_changes_password_once(self, auth_service, admin, email_outbox, memory_store):
        secret, _, tokens = await _enroll(auth_service, admin)
        await auth_service.request_password_reset(admin.email, OneTimeCodeEngine.current_code(secret))
        token = email_outbox.sent[0][1]

        assert await auth_service.verify_reset_token(token) == {"valid": True}
        assert await auth_service.reset_password(token, "BrandNewPass99!") == {"ok": True}

        assert await auth_service.verify_reset_token(token) == {"valid": False, "message": RESET_LINK_USED}
        with pytest.raises(ResetTokenAlreadyUsed):
            await auth_service.reset_password(token, "AnotherPass99!")
        auth_service.validate_credentials(admin.email, "BrandNewPass99!")
        assert memory_store.get_admin_user(admin.id).refresh_token is None
        with pytest.raises(InvalidRefreshToken):
            await auth_service.refresh(tokens["refreshToken"])

    async def test_expired_and_unknown_tokens(self, auth_service, admin, email_outbox, memory_store):
        await auth_service.request_password_reset(admin.email, "")
        token = email_outbox.sent[0][1]
        memory_store.users[admin.id].password_reset_token_expires_at = utcnow() - timedelta(minutes=1)

        assert await auth_service.verify_reset_token(token) == {"valid": False, "message": RESET_LINK_EXPIRED}
        assert await auth_service.verify_reset_token("nope") == {"valid": False, "message": RESET_LINK_INVALID}
        with pytest.raises(ExpiredResetToken):
            await auth_service.reset_password(token, "BrandNewPass99!")
        with pytest.raises(InvalidResetToken):
            await auth_service.reset_password("nope", "BrandNewPass99!")

    async def test_new_request_supersedes_old_token(self, auth_service, admin, email_outbox):
        await auth_service.request_password_reset(admin.email, "")
        await auth_service.request_password_reset(admin.email, "")
        old_token, new_token = email_outbox.sent[0][1], email_outbox.sent[1][1]

        assert (await auth_service.verify_reset_token(old_token))["valid"] is False
        assert (await auth_service.verify_reset_token(new_token))["valid"] is True


class TestProfile:
    """Tests for profile reads and updates."""

    def test_format_role_name(self):
        assert format_role_name("super_admin") == "Super Admin"
        assert format_role_name("loan_officer") == "Loan Officer"
        assert format_role_name(None) == ""

    async def test_get_profile(self, auth_service, admin):
        profile = await auth_service.get_profile(admin.id)

        assert profile["username"] == "ops.lead"
        assert profile["role"] == "Super Admin"
        assert profile["twoFactorEnabled"] is False
        assert profile["status"] == "active"

    async def test_get_profile_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.get_profile("missing")

    async def test_update_username_and_email(self, auth_service, admin):
        profile = await auth_service.update_profile(admin.id, username="ops.chief", email="Chief@Example.com")

        assert profile["username"] == "ops.chief"
        assert profile["email"] == "chief@example.com"

    async def test_duplicate_username_and_email(self, auth_service, admin):
        auth_service.create_admin("credit.desk", "credit@example.com", PASSWORD)

        with pytest.raises(BadRequestError, match="Username is already taken"):
            await auth_service.update_profile(admin.id, username="credit.desk")
        with pytest.raises(BadRequestError, match="Email is already taken"):
            await auth_service.update_profile(admin.id, email="credit@example.com")

    async def test_password_change_requires_current_password(self, auth_service, admin):
        with pytest.raises(BadRequestError, match="Current password is required"):
            await auth_service.update_profile(admin.id, new_password="BrandNewPass99!")
        with pytest.raises(BadRequestError, match="Current password is incorrect"):
            await auth_service.update_profile(
                admin.id, current_password="wrong-password", new_password="BrandNewPass99!"
            )

        await auth_service.update_profile(admin.id, current_password=PASSWORD, new_password="BrandNewPass99!")

        auth_service.validate_credentials(admin.email, "BrandNewPass99!")
