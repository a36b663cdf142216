"""Unit tests for the authentication orchestrator.

Tests for:
- Registration and mandatory two-factor
- Login never minting a token
- Code verification, lockout and expiry
- Resend eligibility and reset
- Session token checks
- Infrastructure failures
"""

from unittest.mock import AsyncMock, patch

import pytest

from reflective_auth.service.errors import (
    AccountDeactivated,
    ChallengeNotFound,
    ConflictError,
    DeliveryFailed,
    InvalidCode,
    InvalidCredentials,
    NotEligible,
    RateLimitedError,
    StoreUnavailable,
    TokenExpired,
    TokenInvalid,
    ValidationError,
)
from reflective_auth.service.auth import ChallengeIssued
from reflective_auth.storage.errors import StoreError
from reflective_auth.storage.models import Identity


@pytest.fixture
def auth(runtime):
    return runtime.auth


async def _register(auth, email="alice@example.com", password="Secret123", name="Alice"):
    return await auth.register(name, email, password)


def _legacy_identity(runtime, email="legacy@example.com", password="Secret123"):
    return runtime.store.create_identity(
        Identity.new(email, runtime.credentials.hash_password(password), name="Legacy")
    )


class TestRegistration:
    async def test_scenario_a_register_returns_pending_challenge(self, auth, runtime, sender):
        result = await _register(auth)

        assert isinstance(result, ChallengeIssued)
        assert not hasattr(result, "token")
        assert result.email == "alice@example.com"
        assert result.expires_in_seconds == 600
        identity = runtime.store.get_identity_by_email("alice@example.com")
        assert identity.two_factor_enabled is True
        assert identity.two_factor_prompted is True
        assert sender.welcomed == ["alice@example.com"]
        assert sender.last_code("alice@example.com")

    async def test_duplicate_email_is_conflict(self, auth):
        await _register(auth)

        with pytest.raises(ConflictError):
            await _register(auth, email="ALICE@example.com")

    @pytest.mark.parametrize(
        "name,email,password",
        [
            ("A", "alice@example.com", "Secret123"),
            ("Alice", "not-an-email", "Secret123"),
            ("Alice", "alice@example.com", "short"),
        ],
    )
    async def test_invalid_input(self, auth, name, email, password):
        with pytest.raises(ValidationError):
            await auth.register(name, email, password)


class TestLogin:
    async def test_login_issues_challenge_never_token(self, auth, sender):
        await _register(auth)
        sender.codes.clear()

        result = await auth.login("alice@example.com", "Secret123")

        assert isinstance(result, ChallengeIssued)
        assert len(sender.codes) == 1

    async def test_scenario_b_wrong_password_issues_nothing(
        self, auth, runtime, sender, challenge_store
    ):
        await _register(auth)
        await challenge_store.delete("2fa:alice@example.com")
        sender.codes.clear()

        with patch.object(
            challenge_store, "set", wraps=challenge_store.set
        ) as store_set, patch.object(
            challenge_store, "delete", wraps=challenge_store.delete
        ) as store_delete, patch.object(
            challenge_store, "increment_field", wraps=challenge_store.increment_field
        ) as store_increment, patch.object(
            challenge_store, "check_rate_limit", wraps=challenge_store.check_rate_limit
        ) as rate_limit:
            with pytest.raises(InvalidCredentials):
                await auth.login("alice@example.com", "WrongPassword")

        store_set.assert_not_called()
        store_delete.assert_not_called()
        store_increment.assert_not_called()
        # Only the login bucket, which is kept apart from challenge records
        rate_limit.assert_called_once()
        assert not rate_limit.call_args.args[0].startswith("2fa:")
        assert sender.codes == []
        assert await challenge_store.get("2fa:alice@example.com") is None

    async def test_unknown_email_is_invalid_credentials(self, auth):
        with pytest.raises(InvalidCredentials):
            await auth.login("nobody@example.com", "Secret123")

    async def test_legacy_identity_is_enrolled_on_login(self, auth, runtime, sender):
        identity = _legacy_identity(runtime)
        assert identity.two_factor_enabled is False

        await auth.login("legacy@example.com", "Secret123")

        stored = runtime.store.get_identity(identity.id)
        assert stored.two_factor_enabled is True
        assert stored.two_factor_prompted is True
        assert sender.last_code("legacy@example.com")

    async def test_deactivated_identity(self, auth, runtime):
        await _register(auth)
        identity = runtime.store.get_identity_by_email("alice@example.com")
        identity.is_active = False
        runtime.store.save_identity(identity)

        with pytest.raises(AccountDeactivated):
            await auth.login("alice@example.com", "Secret123")

    async def test_delivery_failure_surfaces_and_leaves_no_challenge(
        self, auth, sender, challenge_store
    ):
        await _register(auth)
        await challenge_store.delete("2fa:alice@example.com")
        sender.fail_codes = True

        with pytest.raises(DeliveryFailed):
            await auth.login("alice@example.com", "Secret123")

        assert await challenge_store.get("2fa:alice@example.com") is None

    async def test_challenge_store_down(self, auth, challenge_store):
        await _register(auth)

        with patch.object(
            challenge_store, "set", AsyncMock(side_effect=StoreError("down", backend="redis"))
        ):
            with pytest.raises(StoreUnavailable):
                await auth.login("alice@example.com", "Secret123")


class TestVerifyChallenge:
    async def test_full_login_returns_summary_and_token(self, auth, sender):
        await _register(auth)
        await auth.login("alice@example.com", "Secret123")

        summary, token = await auth.verify_challenge(
            "alice@example.com", sender.last_code("alice@example.com")
        )

        assert summary["email"] == "alice@example.com"
        assert summary["last_login_at"] is not None
        assert "password_hash" not in summary
        assert (await auth.verify_token(token)).email == "alice@example.com"

    async def test_code_is_one_time(self, auth, sender):
        await _register(auth)
        code = sender.last_code("alice@example.com")
        await auth.verify_challenge("alice@example.com", code)

        with pytest.raises(ChallengeNotFound):
            await auth.verify_challenge("alice@example.com", code)

    async def test_scenario_c_lockout_then_not_found(self, auth, runtime, sender):
        await _register(auth)
        with patch.object(runtime.auth.issuer, "_code_factory", lambda: "123456"):
            await auth.resend_challenge("alice@example.com")

        outcomes = []
        for _ in range(3):
            with pytest.raises(InvalidCode) as exc_info:
                await auth.verify_challenge("alice@example.com", "000000")
            outcomes.append(exc_info.value.kind)

        assert outcomes == ["InvalidCode", "InvalidCode", "InvalidCode"]
        with pytest.raises(ChallengeNotFound):
            await auth.verify_challenge("alice@example.com", "123456")

    async def test_scenario_d_expired_code(self, auth, sender, clock):
        await _register(auth)
        code = sender.last_code("alice@example.com")
        clock.advance(601)

        with pytest.raises(ChallengeNotFound):
            await auth.verify_challenge("alice@example.com", code)

    async def test_resend_resets_failed_attempts(self, auth, sender, challenge_store):
        await _register(auth)
        for _ in range(2):
            with pytest.raises(InvalidCode):
                await auth.verify_challenge("alice@example.com", "000000")

        await auth.resend_challenge("alice@example.com")

        record = await challenge_store.get("2fa:alice@example.com")
        assert int(record["failed_attempts"]) == 0
        summary, _ = await auth.verify_challenge(
            "alice@example.com", sender.last_code("alice@example.com")
        )
        assert summary["email"] == "alice@example.com"

    async def test_resend_after_lockout_allows_new_code(self, auth, sender):
        await _register(auth)
        for _ in range(3):
            with pytest.raises(InvalidCode):
                await auth.verify_challenge("alice@example.com", "000000")

        await auth.resend_challenge("alice@example.com")

        summary, token = await auth.verify_challenge(
            "alice@example.com", sender.last_code("alice@example.com")
        )
        assert token

    @pytest.mark.parametrize("code", ["12345", "1234567", "12a456", "", " 12345", "١٢٣٤٥٦"])
    async def test_code_shape_is_validated(self, auth, code):
        await _register(auth)

        with pytest.raises(ValidationError):
            await auth.verify_challenge("alice@example.com", code)

    async def test_inactive_identity_gets_no_token(self, auth, runtime, sender):
        await _register(auth)
        identity = runtime.store.get_identity_by_email("alice@example.com")
        identity.is_active = False
        runtime.store.save_identity(identity)

        with pytest.raises(AccountDeactivated):
            await auth.verify_challenge("alice@example.com", sender.last_code("alice@example.com"))


class TestResend:
    async def test_unknown_identity_is_not_eligible(self, auth):
        with pytest.raises(NotEligible):
            await auth.resend_challenge("nobody@example.com")

    async def test_identity_without_two_factor_is_not_eligible(self, auth, runtime):
        _legacy_identity(runtime)

        with pytest.raises(NotEligible):
            await auth.resend_challenge("legacy@example.com")

    async def test_resend_does_not_need_live_challenge(self, auth, sender, challenge_store):
        await _register(auth)
        await challenge_store.delete("2fa:alice@example.com")

        await auth.resend_challenge("alice@example.com")

        assert await challenge_store.get("2fa:alice@example.com") is not None
        assert len(sender.codes) == 2


class TestVerifyToken:
    async def _login(self, auth, sender):
        await _register(auth)
        _, token = await auth.verify_challenge(
            "alice@example.com", sender.last_code("alice@example.com")
        )
        return token

    async def test_expired_token(self, auth, sender, clock, runtime):
        token = await self._login(auth, sender)
        clock.advance(runtime.settings.token_ttl_minutes * 60 + 60)

        with pytest.raises(TokenExpired):
            await auth.verify_token(token)

    async def test_unknown_subject(self, auth, runtime):
        token = runtime.tokens.issue(Identity.new("ghost@example.com", "hash"))

        with pytest.raises(TokenInvalid):
            await auth.verify_token(token)

    async def test_deactivated_after_login(self, auth, sender, runtime):
        token = await self._login(auth, sender)
        identity = runtime.store.get_identity_by_email("alice@example.com")
        identity.is_active = False
        runtime.store.save_identity(identity)

        with pytest.raises(AccountDeactivated):
            await auth.verify_token(token)


class TestProfile:
    async def test_two_factor_status_and_profile_update(self, auth, runtime):
        await _register(auth)
        identity = runtime.store.get_identity_by_email("alice@example.com")

        assert await auth.two_factor_status(identity) == {
            "two_factor_enabled": True,
            "two_factor_prompted": True,
        }
        summary = await auth.update_profile(identity, "  Alice Liddell ")
        assert summary["name"] == "Alice Liddell"
        assert runtime.store.get_identity(identity.id).name == "Alice Liddell"

    async def test_profile_name_too_short(self, auth, runtime):
        await _register(auth)
        identity = runtime.store.get_identity_by_email("alice@example.com")

        with pytest.raises(ValidationError):
            await auth.update_profile(identity, "A")


class TestRateLimits:
    async def test_resend_is_rate_limited_per_email(self, auth, runtime):
        await _register(auth)
        auth.rate_limits["resend"] = 2

        await auth.resend_challenge("alice@example.com")
        await auth.resend_challenge("alice@example.com")
        with pytest.raises(RateLimitedError):
            await auth.resend_challenge("alice@example.com")
