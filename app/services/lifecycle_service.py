"""
Account lifecycle service: invitation, activation, status, role and removal
"""
import logging
from typing import Any, Dict, FrozenSet, List, Optional

from app.config import settings
from app.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ClinicException,
    InvalidTransitionError,
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from app.core.permissions import Capability, UserRole, parse_role
from app.core.security import validate_password_strength
from app.models.user import UserStatus, utcnow
from app.providers.base import IdentityProvider, TableProvider
from app.schemas.user import UserProfile
from app.services.access_guard import require_capability
from app.services.session_store import USERS_TABLE, Session

logger = logging.getLogger(__name__)

# pending -> active -> inactive <-> active; nothing enters terminated
ALLOWED_TRANSITIONS: Dict[UserStatus, FrozenSet[UserStatus]] = {
    UserStatus.PENDING: frozenset({UserStatus.ACTIVE}),
    UserStatus.ACTIVE: frozenset({UserStatus.INACTIVE}),
    UserStatus.INACTIVE: frozenset({UserStatus.ACTIVE}),
    UserStatus.TERMINATED: frozenset(),
}


def can_transition(current: UserStatus, target: UserStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class AccountLifecycleService:
    """
    Service for staff account lifecycle operations

    Privileged operations re-read the acting user's profile from storage and
    check it with the access guard before touching the identity provider, so
    a stale session cannot act with a role it no longer holds.
    """

    def __init__(self, identity: IdentityProvider, tables: TableProvider,
                 activation_url: Optional[str] = None, reset_password_url: Optional[str] = None):
        self.identity = identity
        self.tables = tables
        self.activation_url = activation_url or settings.activation_url
        self.reset_password_url = reset_password_url or settings.reset_password_url

    async def _fetch_profile(self, user_id: str) -> Optional[UserProfile]:
        row = await self.tables.fetch_row(USERS_TABLE, user_id)
        return UserProfile.model_validate(row) if row else None

    async def _require_profile(self, user_id: str) -> UserProfile:
        profile = await self._fetch_profile(user_id)
        if profile is None:
            raise NotFoundError("User not found")
        return profile

    async def _authorize(self, session: Optional[Session], capability: Capability) -> UserProfile:
        """Check ``capability`` against the actor's freshly read profile"""
        if session is None:
            raise AuthenticationError("Not signed in")
        actor = await self._fetch_profile(session.user_id)
        if actor is None:
            raise AuthorizationError("No user profile for this account")
        require_capability(Session(session.auth, actor), capability, super_admin_only=True)
        return actor

    @staticmethod
    def _check_password(password: str):
        is_valid, error_msg = validate_password_strength(password)
        if not is_valid:
            logger.error(f"❌ [VALIDATION] {error_msg}")
            raise ValidationError(error_msg)

    @staticmethod
    def _parse_role(role: Any) -> UserRole:
        parsed = parse_role(role)
        if parsed is None:
            raise ValidationError("Invalid role")
        return parsed

    async def list_users(self, session: Optional[Session]) -> List[UserProfile]:
        await self._authorize(session, Capability.MANAGE_USERS)
        rows = await self.tables.list_rows(USERS_TABLE, order_by="created_at", descending=True)
        return [UserProfile.model_validate(row) for row in rows]

    async def invite(self, session: Optional[Session], email: str, role: Any) -> UserProfile:
        """
        Invite a staff member

        Creates the identity through the provider's invite mechanism, then the
        pending profile. If the profile cannot be written the identity is
        removed again.

        Raises:
            DuplicateError: email already has an identity or profile
            PartialFailureError: profile failed and the identity could not be removed
        """
        actor = await self._authorize(session, Capability.MANAGE_USERS)
        role = self._parse_role(role)
        email = email.strip().lower()
        if not email:
            raise ValidationError("Missing required fields: email and role")

        logger.info(f"🔄 [LIFECYCLE] {actor.email} inviting {email} as {role.value}")
        identity_id = await self.identity.admin_invite_by_email(email, self.activation_url)
        logger.info(f"✅ [LIFECYCLE] Identity created: {identity_id}")

        try:
            row = await self.tables.insert_row(USERS_TABLE, {
                "id": identity_id,
                "email": email,
                "role": role,
                "status": UserStatus.PENDING,
                "invited_by": actor.id,
                "activated_at": None,
            })
        except ClinicException as exc:
            logger.error(f"❌ [LIFECYCLE] Profile creation failed for {email}: {exc.message}")
            try:
                await self.identity.admin_delete_identity(identity_id)
            except ClinicException as cleanup_exc:
                logger.error(
                    f"❌ [LIFECYCLE] Orphaned identity {identity_id} ({email}) left behind: {cleanup_exc.message}"
                )
                raise PartialFailureError(
                    "The invitation was sent but the user profile could not be created. "
                    "Remove the account from the identity provider before inviting again."
                ) from exc
            logger.info(f"[LIFECYCLE] Invitation for {email} withdrawn")
            raise

        logger.info(f"✅ [LIFECYCLE] {email} invited")
        return UserProfile.model_validate(row)

    async def activate(self, session: Optional[Session], full_name: str, password: str,
                       phone: Optional[str] = None, profile_picture: Optional[str] = None) -> UserProfile:
        """
        Complete an invitation: set the password and mark the profile active

        Safe to re-run after a failure between the two steps.

        Raises:
            ValidationError: missing name or password too short, nothing changed
            InvalidTransitionError: account is not pending
            PartialFailureError: password set but profile still pending
        """
        if session is None:
            raise AuthenticationError("Not signed in")

        full_name = (full_name or "").strip()
        if not full_name:
            raise ValidationError("Full name is required")
        self._check_password(password)

        profile = await self._require_profile(session.user_id)
        if profile.status != UserStatus.PENDING:
            raise InvalidTransitionError(f"Account is already {profile.status.value}")

        logger.info(f"🔄 [LIFECYCLE] Activating {profile.email}")
        await self.identity.update_own_credential(session.auth, password)

        patch = {
            "full_name": full_name,
            "phone": (phone or "").strip() or None,
            "profile_picture": (profile_picture or "").strip() or None,
            "status": UserStatus.ACTIVE,
            "activated_at": profile.activated_at or utcnow(),
        }
        try:
            row = await self.tables.update_row(
                USERS_TABLE, profile.id, patch, match={"status": UserStatus.PENDING},
            )
        except ClinicException as exc:
            logger.error(f"❌ [LIFECYCLE] Password set but activation failed for {profile.email}: {exc.message}")
            raise PartialFailureError(
                "Your password was saved but the account could not be activated. Please try again."
            ) from exc

        if row is None:
            # Someone else moved the profile on in the meantime
            current = await self._require_profile(profile.id)
            raise InvalidTransitionError(f"Account is already {current.status.value}")

        logger.info(f"✅ [LIFECYCLE] {profile.email} activated")
        return UserProfile.model_validate(row)

    async def _change_status(self, session: Optional[Session], user_id: str,
                             source: UserStatus, target: UserStatus) -> UserProfile:
        actor = await self._authorize(session, Capability.MANAGE_USERS)
        profile = await self._require_profile(user_id)
        if profile.status == target:
            return profile
        if profile.status != source or not can_transition(profile.status, target):
            raise InvalidTransitionError(
                f"Cannot change status from {profile.status.value} to {target.value}"
            )

        row = await self.tables.update_row(
            USERS_TABLE, user_id, {"status": target}, match={"status": profile.status},
        )
        if row is None:
            raise InvalidTransitionError("The account was changed by someone else. Reload and try again.")

        logger.info(f"✅ [LIFECYCLE] {actor.email} set {profile.email} to {target.value}")
        return UserProfile.model_validate(row)

    async def deactivate(self, session: Optional[Session], user_id: str) -> UserProfile:
        # Sessions already issued to the user stay valid until they expire
        return await self._change_status(session, user_id, UserStatus.ACTIVE, UserStatus.INACTIVE)

    async def reactivate(self, session: Optional[Session], user_id: str) -> UserProfile:
        # Pending accounts only become active through activation
        return await self._change_status(session, user_id, UserStatus.INACTIVE, UserStatus.ACTIVE)

    async def change_role(self, session: Optional[Session], user_id: str, role: Any) -> UserProfile:
        actor = await self._authorize(session, Capability.MANAGE_USERS)
        role = self._parse_role(role)
        profile = await self._require_profile(user_id)

        if actor.id == profile.id and role != UserRole.SUPER_ADMIN:
            logger.warning(f"⚠️  [LIFECYCLE] {actor.email} is removing their own super admin role")

        row = await self.tables.update_row(USERS_TABLE, user_id, {"role": role})
        logger.info(f"✅ [LIFECYCLE] {profile.email} role {profile.role.value} -> {role.value}")
        return UserProfile.model_validate(row)

    async def reset_password(self, session: Optional[Session], user_id: str):
        """Send a recovery link to another user"""
        actor = await self._authorize(session, Capability.RESET_PASSWORDS)
        profile = await self._require_profile(user_id)
        await self.identity.admin_generate_recovery_link(profile.email, self.reset_password_url)
        logger.info(f"✅ [LIFECYCLE] {actor.email} sent a password reset to {profile.email}")

    async def request_password_reset(self, email: str):
        """Self-service recovery, available without a session"""
        await self.identity.request_recovery(email.strip().lower(), self.reset_password_url)

    async def complete_password_reset(self, session: Optional[Session], password: str):
        """Set a new password from the session a recovery link produced"""
        if session is None:
            raise AuthenticationError("The password reset link is invalid or has expired")
        self._check_password(password)
        await self.identity.update_own_credential(session.auth, password)
        logger.info(f"✅ [LIFECYCLE] Password reset completed for {session.auth.email}")

    async def change_own_password(self, session: Optional[Session], password: str):
        if session is None:
            raise AuthenticationError("Not signed in")
        self._check_password(password)
        await self.identity.update_own_credential(session.auth, password)

    async def update_own_profile(self, session: Optional[Session], full_name: Optional[str] = None,
                                 phone: Optional[str] = None,
                                 profile_picture: Optional[str] = None) -> UserProfile:
        """Edit contact details; only active accounts may do this"""
        if session is None:
            raise AuthenticationError("Not signed in")
        profile = await self._require_profile(session.user_id)
        if profile.status != UserStatus.ACTIVE:
            raise InvalidTransitionError("Activate your account before editing your profile")

        patch = {}
        if full_name is not None:
            if not full_name.strip():
                raise ValidationError("Full name cannot be empty")
            patch["full_name"] = full_name.strip()
        if phone is not None:
            patch["phone"] = phone.strip() or None
        if profile_picture is not None:
            patch["profile_picture"] = profile_picture.strip() or None
        if not patch:
            return profile

        row = await self.tables.update_row(USERS_TABLE, profile.id, patch)
        return UserProfile.model_validate(row)

    async def delete_user(self, session: Optional[Session], user_id: str, confirm: bool = False):
        """
        Remove a user's identity and profile. Irreversible.

        The identity goes first so a half-finished delete never leaves a
        working login behind; re-running finishes the job.
        """
        actor = await self._authorize(session, Capability.DELETE_USERS)
        if not confirm:
            raise ValidationError("Deletion must be explicitly confirmed")
        profile = await self._require_profile(user_id)

        logger.info(f"🗑️  [LIFECYCLE] {actor.email} deleting {profile.email}")
        await self.identity.admin_delete_identity(profile.id)
        try:
            await self.tables.delete_row(USERS_TABLE, profile.id)
        except ClinicException as exc:
            logger.error(f"❌ [LIFECYCLE] Identity removed but profile {profile.id} remains: {exc.message}")
            raise PartialFailureError(
                "The login was removed but the user record could not be deleted. Please try again."
            ) from exc
        logger.info(f"✅ [LIFECYCLE] {profile.email} deleted")
