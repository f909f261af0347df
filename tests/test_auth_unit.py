from datetime import timedelta

import pytest

from coursegate.service.errors import (
    AccountDeactivatedError,
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
)
from coursegate.storage.models import utcnow


class TestRegisterAndLogin:
    async def test_register_then_login_requires_verified_email(self, runtime):
        user = await runtime.auth.register("meera@example.com", "CorrectHorse9!", "Meera")
        assert user.role == "student"
        assert not user.email_verified

        with pytest.raises(ForbiddenError) as excinfo:
            await runtime.auth.login("meera@example.com", "CorrectHorse9!")
        assert excinfo.value.error_code == "email_not_verified"

        token = await runtime.auth.request_email_verification(user)
        assert await runtime.auth.complete_email_verification(token) is True
        # single use
        assert await runtime.auth.complete_email_verification(token) is False

        result = await runtime.auth.login("meera@example.com", "CorrectHorse9!")
        assert result.user.id == user.id
        assert result.tokens.refresh_token

    async def test_duplicate_registration_conflicts(self, runtime):
        await runtime.auth.register("dup@example.com", "CorrectHorse9!")
        with pytest.raises(ConflictError):
            await runtime.auth.register("DUP@example.com", "CorrectHorse9!")

    async def test_wrong_password_and_unknown_email_look_alike(self, runtime, make_user):
        make_user("kiran@example.com", "CorrectHorse9!")
        with pytest.raises(AuthenticationError) as wrong:
            await runtime.auth.login("kiran@example.com", "nope-nope-nope")
        with pytest.raises(AuthenticationError) as unknown:
            await runtime.auth.login("ghost@example.com", "nope-nope-nope")
        assert wrong.value.message == unknown.value.message

    async def test_deactivated_account_cannot_login(self, runtime, make_user):
        make_user("off@example.com", "CorrectHorse9!", is_active=False)
        with pytest.raises(AccountDeactivatedError):
            await runtime.auth.login("off@example.com", "CorrectHorse9!")

    async def test_login_hints_unverified_institution(self, runtime, make_user, campus):
        make_user("ravi@ncu.edu", "CorrectHorse9!")
        result = await runtime.auth.login("ravi@ncu.edu", "CorrectHorse9!")
        assert result.requires_institution_verification is True
        assert result.organization_slug == "north-campus"

    async def test_login_no_hint_for_consumer_domain(self, runtime, make_user, campus):
        make_user("ravi@gmail.com", "CorrectHorse9!")
        result = await runtime.auth.login("ravi@gmail.com", "CorrectHorse9!")
        assert result.requires_institution_verification is False
        assert result.organization_slug is None

    async def test_registration_can_be_disabled(self, runtime, monkeypatch):
        monkeypatch.setattr(runtime.settings, "allow_registration", False)
        with pytest.raises(ForbiddenError):
            await runtime.auth.register("late@example.com", "CorrectHorse9!")


class TestPasswordReset:
    async def test_reset_changes_password_and_revokes_sessions(self, runtime, make_user):
        user = make_user("reset@example.com", "OldPassword9!")
        login = await runtime.auth.login("reset@example.com", "OldPassword9!")

        token = await runtime.auth.initiate_password_reset("reset@example.com")
        assert token
        assert await runtime.auth.complete_password_reset(token, "NewPassword9!") is True

        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(login.tokens.refresh_token)
        with pytest.raises(AuthenticationError):
            await runtime.auth.login("reset@example.com", "OldPassword9!")
        result = await runtime.auth.login("reset@example.com", "NewPassword9!")
        assert result.user.id == user.id
        # token is single use
        assert await runtime.auth.complete_password_reset(token, "Another9!pass") is False

    async def test_unknown_email_yields_no_token(self, runtime):
        assert await runtime.auth.initiate_password_reset("nobody@example.com") is None

    async def test_expired_one_time_token_rejected_and_cleaned(self, runtime, make_user):
        make_user("late@example.com")
        token = await runtime.auth.initiate_password_reset("late@example.com")
        key = ("reset", token)
        user_id, _ = runtime.auth._one_time_tokens[key]
        runtime.auth._one_time_tokens[key] = (user_id, utcnow() - timedelta(seconds=1))

        assert runtime.auth.cleanup_expired_tokens() == 1
        assert await runtime.auth.complete_password_reset(token, "NewPassword9!") is False

    async def test_tokens_are_purpose_bound(self, runtime, make_user):
        user = make_user("purpose@example.com")
        verify_token = await runtime.auth.request_email_verification(user)
        assert await runtime.auth.complete_password_reset(verify_token, "NewPassword9!") is False


class TestUserStatus:
    async def test_deactivation_revokes_tokens(self, runtime, make_user, store):
        user = make_user("bye@example.com")
        pair = runtime.sessions.issue(user)

        updated = await runtime.auth.set_user_status(user.id, is_active=False)
        assert updated.is_active is False
        assert all(t.revoked for t in store.list_rotation_tokens(user.id))
        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(pair.refresh_token)

    async def test_unknown_role_rejected(self, runtime, make_user):
        user = make_user("role@example.com")
        with pytest.raises(BadRequestError):
            await runtime.auth.set_user_status(user.id, role="superuser")
