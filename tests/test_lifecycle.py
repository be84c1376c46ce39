"""
Tests for the account lifecycle service
"""
import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from app.config import settings
from app.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    DuplicateError,
    InvalidTransitionError,
    PartialFailureError,
    ProviderError,
    TokenError,
    ValidationError,
)
from app.core.permissions import Capability, UserRole
from app.core.security import mask_token
from app.models.identity import Identity
from app.models.user import UserStatus
from app.providers.base import OneTimeTokenType
from app.services.access_guard import Route, check_route, is_allowed
from app.services.lifecycle_service import ALLOWED_TRANSITIONS, AccountLifecycleService
from app.services.session_store import USERS_TABLE, SessionState

NURSE_EMAIL = "nurse@stmarys-clinic.org"


async def load_identity(session_factory, email):
    async with session_factory() as db:
        result = await db.execute(select(Identity).where(Identity.email == email))
        return result.scalar_one_or_none()


class FailingInsertTables:
    """Table provider that cannot write profiles"""

    def __init__(self, inner):
        self.inner = inner

    async def fetch_row(self, table, row_id):
        return await self.inner.fetch_row(table, row_id)

    async def insert_row(self, table, row):
        raise ProviderError("Could not save record")


class FailingDeleteIdentity:
    """Wraps an identity provider so identity removal always fails"""

    def __init__(self, inner):
        self.inner = inner

    async def admin_invite_by_email(self, email, redirect_to):
        return await self.inner.admin_invite_by_email(email, redirect_to)

    async def admin_delete_identity(self, identity_id):
        raise ProviderError("Identity provider unavailable")


class FlakyUpdateTables:
    """Table provider whose next profile update fails once"""

    def __init__(self, inner):
        self.inner = inner
        self.fail_next_update = True

    async def fetch_row(self, table, row_id):
        return await self.inner.fetch_row(table, row_id)

    async def update_row(self, table, row_id, patch, match=None):
        if self.fail_next_update:
            self.fail_next_update = False
            raise ProviderError("Could not update record")
        return await self.inner.update_row(table, row_id, patch, match=match)


class RacingUpdateTables:
    """Table provider where another writer changes the status just before each update lands"""

    def __init__(self, inner, competing_status):
        self.inner = inner
        self.competing_status = competing_status

    async def fetch_row(self, table, row_id):
        return await self.inner.fetch_row(table, row_id)

    async def update_row(self, table, row_id, patch, match=None):
        await self.inner.update_row(table, row_id, {"status": self.competing_status})
        return await self.inner.update_row(table, row_id, patch, match=match)


class FailingDeleteRowTables:
    """Table provider whose next row delete fails once"""

    def __init__(self, inner):
        self.inner = inner
        self.fail_next_delete = True

    async def fetch_row(self, table, row_id):
        return await self.inner.fetch_row(table, row_id)

    async def delete_row(self, table, row_id):
        if self.fail_next_delete:
            self.fail_next_delete = False
            raise ProviderError("Could not delete record")
        return await self.inner.delete_row(table, row_id)


class TestTransitionTable:

    def test_nothing_enters_terminated(self):
        assert all(UserStatus.TERMINATED not in targets for targets in ALLOWED_TRANSITIONS.values())
        assert ALLOWED_TRANSITIONS[UserStatus.TERMINATED] == frozenset()


class TestInvite:
    """Test inviting staff"""

    async def test_invite_creates_pending_profile(self, services, admin_session, redis, session_factory):
        profile = await services.lifecycle.invite(admin_session, "Nurse@StMarys-Clinic.org", "nurse")

        assert profile.email == NURSE_EMAIL
        assert profile.role == UserRole.NURSE
        assert profile.status == UserStatus.PENDING
        assert profile.invited_by == admin_session.user_id
        assert profile.activated_at is None

        identity = await load_identity(session_factory, NURSE_EMAIL)
        assert identity.id == profile.id
        assert identity.password_hash is None
        assert redis.link_token(OneTimeTokenType.INVITE, profile.id) is not None

    async def test_invite_link_token_is_masked_in_logs(self, services, admin_session, redis, caplog, monkeypatch):
        monkeypatch.setattr(settings, "DEBUG", True)
        with caplog.at_level(logging.DEBUG):
            profile = await services.lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")

        token = redis.link_token(OneTimeTokenType.INVITE, profile.id)
        assert token not in caplog.text
        assert mask_token(token) in caplog.text
        assert "http://clinic.test/activate" in caplog.text

    async def test_invite_with_token_store_down_can_be_retried(self, services, admin_session, redis,
                                                               session_factory, monkeypatch):
        async def refuse_connection(*args, **kwargs):
            raise RedisConnectionError("Connection refused")

        real_set = redis.set
        monkeypatch.setattr(redis, "set", refuse_connection)
        with pytest.raises(ProviderError):
            await services.lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")
        assert await load_identity(session_factory, NURSE_EMAIL) is None

        monkeypatch.setattr(redis, "set", real_set)
        profile = await services.lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")
        assert profile.status == UserStatus.PENDING

    async def test_invite_requires_super_admin(self, services, create_account, session_factory):
        """Test a doctor cannot invite and no identity is created"""
        await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        store = await services.registry.sign_in("doc@stmarys-clinic.org", "password-123")

        with pytest.raises(AuthorizationError):
            await services.lifecycle.invite(store.session, NURSE_EMAIL, "nurse")
        assert await load_identity(session_factory, NURSE_EMAIL) is None

    async def test_invite_signed_out(self, services):
        with pytest.raises(AuthenticationError):
            await services.lifecycle.invite(None, NURSE_EMAIL, "nurse")

    async def test_invite_invalid_role(self, services, admin_session, session_factory):
        with pytest.raises(ValidationError):
            await services.lifecycle.invite(admin_session, NURSE_EMAIL, "surgeon")
        assert await load_identity(session_factory, NURSE_EMAIL) is None

    async def test_invite_duplicate_email(self, services, admin_session):
        await services.lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")
        with pytest.raises(DuplicateError):
            await services.lifecycle.invite(admin_session, NURSE_EMAIL, "doctor")

    async def test_role_is_checked_against_fresh_profile(self, services, admin_session, admin_id, session_factory):
        """Test an admin demoted by someone else cannot keep inviting"""
        await services.tables.update_row(USERS_TABLE, admin_id, {"role": UserRole.DOCTOR})

        # admin_session was captured before the demotion and still says super_admin
        assert admin_session.profile.role == UserRole.SUPER_ADMIN
        with pytest.raises(AuthorizationError):
            await services.lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")
        assert await load_identity(session_factory, NURSE_EMAIL) is None

    async def test_failed_profile_insert_removes_identity(self, services, admin_session, session_factory):
        """Test the identity is withdrawn when the profile cannot be stored"""
        lifecycle = AccountLifecycleService(services.identity, FailingInsertTables(services.tables))
        with pytest.raises(ProviderError):
            await lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")

        assert await load_identity(session_factory, NURSE_EMAIL) is None

    async def test_failed_compensation_is_partial_failure(self, services, admin_session, session_factory):
        lifecycle = AccountLifecycleService(
            FailingDeleteIdentity(services.identity), FailingInsertTables(services.tables)
        )
        with pytest.raises(PartialFailureError) as exc_info:
            await lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")

        assert exc_info.value.retryable
        assert await load_identity(session_factory, NURSE_EMAIL) is not None


class TestActivation:
    """Test the invitation to activation flow end to end"""

    @pytest.fixture
    async def invited(self, services, admin_session, redis):
        profile = await services.lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")
        token = redis.link_token(OneTimeTokenType.INVITE, profile.id)
        store = await services.registry.exchange_token(token, OneTimeTokenType.INVITE)
        return profile, token, store

    async def test_invited_session_is_gated(self, invited):
        _, _, store = invited
        assert store.state == SessionState.AUTHENTICATED
        assert store.session.needs_activation

        decision = check_route(store.session, Route.DASHBOARD)
        assert decision.redirect_to == Route.ACTIVATE
        assert check_route(store.session, Route.ACTIVATE).allowed

    async def test_short_password_changes_nothing(self, services, invited, session_factory):
        profile, _, store = invited

        with pytest.raises(ValidationError) as exc_info:
            await services.lifecycle.activate(store.session, "Jane Doe", "short")
        assert exc_info.value.message == "Password must be at least 8 characters long"

        identity = await load_identity(session_factory, NURSE_EMAIL)
        assert identity.password_hash is None
        row = await services.tables.fetch_row(USERS_TABLE, profile.id)
        assert row["status"] == UserStatus.PENDING
        assert row["full_name"] is None

    async def test_missing_name_rejected(self, services, invited):
        _, _, store = invited
        with pytest.raises(ValidationError):
            await services.lifecycle.activate(store.session, "   ", "longenough1")

    async def test_activation_completes(self, services, invited):
        profile, _, store = invited

        activated = await services.lifecycle.activate(
            store.session, "Jane Doe", "longenough1", "+15550100", "https://cdn.stmarys-clinic.org/jane.png"
        )

        assert activated.status == UserStatus.ACTIVE
        assert activated.full_name == "Jane Doe"
        assert activated.phone == "+15550100"
        assert activated.profile_picture == "https://cdn.stmarys-clinic.org/jane.png"
        assert activated.activated_at is not None
        assert activated.role == UserRole.NURSE
        # The open session sees the change and is no longer gated
        assert not store.session.needs_activation
        assert check_route(store.session, Route.DASHBOARD).allowed

        signed_in = await services.registry.sign_in(NURSE_EMAIL, "longenough1")
        assert signed_in.session.user_id == profile.id

    async def test_activate_twice_is_rejected(self, services, invited):
        _, _, store = invited
        await services.lifecycle.activate(store.session, "Jane Doe", "longenough1")
        with pytest.raises(InvalidTransitionError):
            await services.lifecycle.activate(store.session, "Jane Doe", "anotherpass1")

    async def test_activation_can_be_retried_after_partial_failure(self, services, invited):
        """Test a profile write failure after the password was set can be re-run"""
        profile, _, store = invited
        flaky = FlakyUpdateTables(services.tables)
        lifecycle = AccountLifecycleService(services.identity, flaky)

        with pytest.raises(PartialFailureError):
            await lifecycle.activate(store.session, "Jane Doe", "longenough1")
        row = await services.tables.fetch_row(USERS_TABLE, profile.id)
        assert row["status"] == UserStatus.PENDING

        activated = await lifecycle.activate(store.session, "Jane Doe", "longenough1")
        assert activated.status == UserStatus.ACTIVE

    async def test_activation_loses_race(self, services, invited):
        """Test activation does not overwrite a profile moved on by someone else"""
        profile, _, store = invited
        lifecycle = AccountLifecycleService(
            services.identity, RacingUpdateTables(services.tables, UserStatus.ACTIVE)
        )

        with pytest.raises(InvalidTransitionError) as exc_info:
            await lifecycle.activate(store.session, "Jane Doe", "longenough1")

        assert exc_info.value.status_code == 409
        row = await services.tables.fetch_row(USERS_TABLE, profile.id)
        assert row["full_name"] is None

    async def test_invite_token_is_single_use(self, services, invited):
        _, token, _ = invited
        with pytest.raises(TokenError):
            await services.registry.exchange_token(token, OneTimeTokenType.INVITE)

    async def test_pending_user_cannot_edit_profile(self, services, invited):
        _, _, store = invited
        with pytest.raises(InvalidTransitionError):
            await services.lifecycle.update_own_profile(store.session, full_name="Jane")


class TestStatusAndRole:
    """Test deactivation, reactivation and role changes"""

    async def test_role_change_applies_to_open_session(self, services, admin_session, create_account):
        """Test a doctor demoted to receptionist loses chart editing without re-login"""
        doctor_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        doctor = await services.registry.sign_in("doc@stmarys-clinic.org", "password-123")
        assert is_allowed(doctor.session, Capability.EDIT_MEDICAL_CHART)

        updated = await services.lifecycle.change_role(admin_session, doctor_id, "receptionist")

        assert updated.role == UserRole.RECEPTIONIST
        assert not is_allowed(doctor.session, Capability.EDIT_MEDICAL_CHART)
        assert is_allowed(doctor.session, Capability.MANAGE_PATIENT_PROFILES)

    async def test_change_role_invalid(self, services, admin_session, create_account):
        doctor_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        with pytest.raises(ValidationError):
            await services.lifecycle.change_role(admin_session, doctor_id, "owner")

    async def test_deactivate_then_reactivate_keeps_activated_at(self, services, admin_session, create_account):
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        before = await services.tables.fetch_row(USERS_TABLE, user_id)

        inactive = await services.lifecycle.deactivate(admin_session, user_id)
        assert inactive.status == UserStatus.INACTIVE
        active = await services.lifecycle.reactivate(admin_session, user_id)
        assert active.status == UserStatus.ACTIVE

        assert active.activated_at == before["activated_at"]
        assert inactive.activated_at == before["activated_at"]

    async def test_reactivate_pending_is_rejected(self, services, admin_session, create_account):
        user_id = await create_account("new@stmarys-clinic.org", UserRole.NURSE, UserStatus.PENDING)
        with pytest.raises(InvalidTransitionError):
            await services.lifecycle.reactivate(admin_session, user_id)

    async def test_concurrent_status_change_conflicts(self, services, admin_session, create_account):
        """Test a status change racing another one fails instead of skipping a transition"""
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        lifecycle = AccountLifecycleService(
            services.identity, RacingUpdateTables(services.tables, UserStatus.INACTIVE)
        )

        with pytest.raises(InvalidTransitionError) as exc_info:
            await lifecycle.deactivate(admin_session, user_id)

        assert exc_info.value.status_code == 409
        row = await services.tables.fetch_row(USERS_TABLE, user_id)
        assert row["status"] == UserStatus.INACTIVE

    async def test_repeated_status_is_unchanged(self, services, admin_session, create_account):
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR, UserStatus.INACTIVE)
        profile = await services.lifecycle.deactivate(admin_session, user_id)
        assert profile.status == UserStatus.INACTIVE

    async def test_deactivate_requires_super_admin(self, services, create_account):
        await create_account("nurse2@stmarys-clinic.org", UserRole.NURSE)
        target = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        nurse = await services.registry.sign_in("nurse2@stmarys-clinic.org", "password-123")
        with pytest.raises(AuthorizationError):
            await services.lifecycle.deactivate(nurse.session, target)

    async def test_list_users_newest_first(self, services, admin_session, create_account):
        await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        await services.lifecycle.invite(admin_session, NURSE_EMAIL, "nurse")

        users = await services.lifecycle.list_users(admin_session)
        assert [u.email for u in users][0] == NURSE_EMAIL
        assert len(users) == 3


class TestPasswords:
    """Test password reset and change"""

    async def test_admin_reset_then_recovery_exchange(self, services, admin_session, create_account, redis):
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        await services.lifecycle.reset_password(admin_session, user_id)

        token = redis.link_token(OneTimeTokenType.RECOVERY, user_id)
        store = await services.registry.exchange_token(token, OneTimeTokenType.RECOVERY)
        await services.lifecycle.complete_password_reset(store.session, "brand-new-pass")

        signed_in = await services.registry.sign_in("doc@stmarys-clinic.org", "brand-new-pass")
        assert signed_in.session.user_id == user_id

    async def test_recovery_token_cannot_activate_invite(self, services, admin_session, create_account, redis):
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        await services.lifecycle.reset_password(admin_session, user_id)
        token = redis.link_token(OneTimeTokenType.RECOVERY, user_id)

        with pytest.raises(TokenError):
            await services.registry.exchange_token(token, OneTimeTokenType.INVITE)

    async def test_self_service_recovery_is_rate_limited(self, services, create_account, redis):
        from app.core.exceptions import RateLimitError

        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        await services.lifecycle.request_password_reset("doc@stmarys-clinic.org")
        assert redis.link_token(OneTimeTokenType.RECOVERY, user_id) is not None

        with pytest.raises(RateLimitError):
            await services.lifecycle.request_password_reset("doc@stmarys-clinic.org")

    async def test_self_service_recovery_unknown_email_is_silent(self, services):
        await services.lifecycle.request_password_reset("nobody@stmarys-clinic.org")

    async def test_change_own_password_length(self, services, admin_session):
        with pytest.raises(ValidationError):
            await services.lifecycle.change_own_password(admin_session, "1234567")
        await services.lifecycle.change_own_password(admin_session, "12345678")

    async def test_reset_password_requires_super_admin(self, services, create_account):
        target = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        await create_account("desk@stmarys-clinic.org", UserRole.RECEPTIONIST)
        desk = await services.registry.sign_in("desk@stmarys-clinic.org", "password-123")
        with pytest.raises(AuthorizationError):
            await services.lifecycle.reset_password(desk.session, target)


class TestDelete:
    """Test permanent deletion"""

    async def test_delete_requires_confirmation(self, services, admin_session, create_account):
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        with pytest.raises(ValidationError):
            await services.lifecycle.delete_user(admin_session, user_id)
        assert await services.tables.fetch_row(USERS_TABLE, user_id) is not None

    async def test_delete_removes_identity_profile_and_sessions(self, services, admin_session,
                                                                create_account, session_factory):
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        doctor = await services.registry.sign_in("doc@stmarys-clinic.org", "password-123")

        await services.lifecycle.delete_user(admin_session, user_id, confirm=True)

        assert await services.tables.fetch_row(USERS_TABLE, user_id) is None
        assert await load_identity(session_factory, "doc@stmarys-clinic.org") is None
        assert doctor.state == SessionState.ANONYMOUS

    async def test_partial_delete_can_be_finished(self, services, admin_session, create_account, session_factory):
        """Test a failed row delete after the identity went is reported and can be re-run"""
        user_id = await create_account("doc@stmarys-clinic.org", UserRole.DOCTOR)
        lifecycle = AccountLifecycleService(services.identity, FailingDeleteRowTables(services.tables))

        with pytest.raises(PartialFailureError) as exc_info:
            await lifecycle.delete_user(admin_session, user_id, confirm=True)

        assert exc_info.value.retryable
        assert await load_identity(session_factory, "doc@stmarys-clinic.org") is None
        assert await services.tables.fetch_row(USERS_TABLE, user_id) is not None

        await lifecycle.delete_user(admin_session, user_id, confirm=True)
        assert await services.tables.fetch_row(USERS_TABLE, user_id) is None
