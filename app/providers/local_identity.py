"""
Built-in identity provider

Identities live in our own database, sessions are signed JWTs and one-time
link tokens are kept in Redis with a TTL, the same way verification codes
are stored.
"""
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.exceptions import (
    AuthenticationError,
    DuplicateError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    TokenError,
)
from app.core.security import (
    create_access_token,
    decode_access_token,
    generate_link_token,
    hash_password,
    mask_token,
    new_session_id,
    verify_password,
)
from app.models.identity import Identity
from app.models.user import utcnow
from app.providers.base import (
    AuthSession,
    IdentityProvider,
    OneTimeTokenType,
    SessionEvent,
    SessionEventType,
)
from app.utils.redis_client import RedisClient

logger = logging.getLogger(__name__)


class LocalIdentityProvider(IdentityProvider):
    """IdentityProvider backed by the identities table and Redis"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], redis_client: RedisClient):
        super().__init__()
        self.session_factory = session_factory
        self.redis = redis_client
        self.invite_ttl = settings.INVITE_TOKEN_EXPIRE_HOURS * 3600
        self.recovery_ttl = settings.RECOVERY_TOKEN_EXPIRE_MINUTES * 60
        self.recovery_cooldown = settings.RECOVERY_RESEND_COOLDOWN_SECONDS

    def _get_token_key(self, token_type: OneTimeTokenType, token: str) -> str:
        """Get Redis key for a one-time link token"""
        return f"otp:{token_type.value}:{token}"

    def _get_revoked_key(self, session_id: str) -> str:
        """Get Redis key marking a signed-out session"""
        return f"revoked_session:{session_id}"

    def _get_resend_key(self, email: str) -> str:
        """Get Redis key for the recovery resend cooldown"""
        return f"recovery_resend:{email}"

    async def _load_identity(self, db: AsyncSession, *, identity_id: Optional[str] = None,
                             email: Optional[str] = None) -> Optional[Identity]:
        stmt = select(Identity)
        if identity_id is not None:
            stmt = stmt.where(Identity.id == identity_id)
        else:
            stmt = stmt.where(Identity.email == email)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _issue_session(self, db: AsyncSession, identity: Identity) -> AuthSession:
        access_token, expires_at = create_access_token(identity.id, identity.email, new_session_id())
        identity.last_sign_in_at = utcnow()
        await db.commit()
        return AuthSession(
            access_token=access_token,
            identity_id=identity.id,
            email=identity.email,
            expires_at=expires_at,
        )

    async def _issue_link(self, identity: Identity, token_type: OneTimeTokenType,
                          redirect_to: str, ttl: int) -> str:
        token = generate_link_token()
        try:
            await self.redis.set(self._get_token_key(token_type, token), identity.id, ex=ttl)
        except RedisError as e:
            raise ProviderError("Could not issue link") from e
        link = f"{redirect_to}?{urlencode({'token': token, 'type': token_type.value})}"

        # Outbound email is delivered by the mail relay; the token itself never reaches the log
        logger.info(
            f"📧 [IDENTITY] {token_type.value} link issued for {identity.email}: "
            f"{redirect_to} ({mask_token(token)})"
        )
        return link

    async def get_current_session(self, access_token: str) -> Optional[AuthSession]:
        payload = decode_access_token(access_token)
        if not payload:
            return None

        try:
            if await self.redis.exists(self._get_revoked_key(payload["sid"])):
                return None
        except RedisError as e:
            raise ProviderError("Could not verify session") from e

        try:
            async with self.session_factory() as db:
                identity = await self._load_identity(db, identity_id=payload["sub"])
        except SQLAlchemyError as e:
            raise ProviderError("Could not verify session") from e

        if identity is None:
            return None

        return AuthSession(
            access_token=access_token,
            identity_id=identity.id,
            email=identity.email,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc).replace(tzinfo=None),
        )

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        email = email.strip().lower()
        try:
            async with self.session_factory() as db:
                identity = await self._load_identity(db, email=email)
                if identity is None or not identity.password_hash:
                    logger.warning(f"❌ [IDENTITY] Sign-in refused for {email}")
                    raise AuthenticationError("Invalid credentials")
                if not verify_password(password, identity.password_hash):
                    logger.warning(f"❌ [IDENTITY] Invalid password for {email}")
                    raise AuthenticationError("Invalid credentials")
                session = await self._issue_session(db, identity)
        except SQLAlchemyError as e:
            raise ProviderError("Sign-in is temporarily unavailable") from e

        logger.info(f"✅ [IDENTITY] Signed in: {email}")
        await self._notify(SessionEvent(SessionEventType.SIGNED_IN, session.identity_id,
                                        session.access_token, session))
        return session

    async def sign_out(self, session: AuthSession):
        payload = decode_access_token(session.access_token)
        if payload:
            remaining = int((session.expires_at - utcnow()).total_seconds())
            if remaining > 0:
                try:
                    await self.redis.set(self._get_revoked_key(payload["sid"]), "1", ex=remaining)
                except RedisError as e:
                    raise ProviderError("Sign-out is temporarily unavailable") from e
        logger.info(f"[IDENTITY] Signed out: {session.email}")
        await self._notify(SessionEvent(SessionEventType.SIGNED_OUT, session.identity_id,
                                        session.access_token))

    async def update_own_credential(self, session: AuthSession, new_password: str):
        if await self.get_current_session(session.access_token) is None:
            raise AuthenticationError("Session expired. Please sign in again")

        try:
            async with self.session_factory() as db:
                identity = await self._load_identity(db, identity_id=session.identity_id)
                if identity is None:
                    raise AuthenticationError("Session expired. Please sign in again")
                identity.password_hash = hash_password(new_password)
                await db.commit()
        except SQLAlchemyError as e:
            raise ProviderError("Could not update password") from e

        logger.info(f"✅ [IDENTITY] Credential updated for {session.email}")
        await self._notify(SessionEvent(SessionEventType.USER_UPDATED, session.identity_id,
                                        session.access_token, session))

    async def admin_invite_by_email(self, email: str, redirect_to: str) -> str:
        email = email.strip().lower()
        try:
            async with self.session_factory() as db:
                if await self._load_identity(db, email=email) is not None:
                    raise DuplicateError("A user with this email address has already been registered")
                identity = Identity(email=email)
                db.add(identity)
                await db.commit()
                await db.refresh(identity)
        except IntegrityError as e:
            raise DuplicateError("A user with this email address has already been registered") from e
        except SQLAlchemyError as e:
            raise ProviderError("Could not create identity") from e

        try:
            await self._issue_link(identity, OneTimeTokenType.INVITE, redirect_to, self.invite_ttl)
        except ProviderError:
            # Without a link the identity is unusable; withdraw it so the invite can be retried
            await self.admin_delete_identity(identity.id)
            raise
        return identity.id

    async def admin_generate_recovery_link(self, email: str, redirect_to: str):
        email = email.strip().lower()
        try:
            async with self.session_factory() as db:
                identity = await self._load_identity(db, email=email)
        except SQLAlchemyError as e:
            raise ProviderError("Could not look up identity") from e
        if identity is None:
            raise NotFoundError("No identity registered for this email")
        await self._issue_link(identity, OneTimeTokenType.RECOVERY, redirect_to, self.recovery_ttl)

    async def request_recovery(self, email: str, redirect_to: str):
        email = email.strip().lower()
        resend_key = self._get_resend_key(email)
        try:
            if await self.redis.exists(resend_key):
                ttl = await self.redis.ttl(resend_key)
                raise RateLimitError(f"Please wait {ttl} seconds before requesting another reset link")
            await self.redis.set(resend_key, "1", ex=self.recovery_cooldown)
        except RedisError as e:
            raise ProviderError("Password recovery is temporarily unavailable") from e

        try:
            async with self.session_factory() as db:
                identity = await self._load_identity(db, email=email)
        except SQLAlchemyError as e:
            raise ProviderError("Could not look up identity") from e

        # Unknown addresses get the same response as known ones
        if identity is None:
            logger.info(f"[IDENTITY] Recovery requested for unknown email {email}")
            return
        await self._issue_link(identity, OneTimeTokenType.RECOVERY, redirect_to, self.recovery_ttl)

    async def admin_delete_identity(self, identity_id: str):
        try:
            async with self.session_factory() as db:
                outcome = await db.execute(delete(Identity).where(Identity.id == identity_id))
                await db.commit()
        except SQLAlchemyError as e:
            raise ProviderError("Could not delete identity") from e

        if outcome.rowcount:
            logger.info(f"🗑️  [IDENTITY] Identity deleted: {identity_id}")
            await self._notify(SessionEvent(SessionEventType.USER_DELETED, identity_id))

    async def exchange_one_time_token(self, token: str, token_type: OneTimeTokenType) -> AuthSession:
        if not token:
            raise TokenError("The link is missing its token")

        # getdel makes the token single-use even under concurrent requests
        try:
            identity_id = await self.redis.getdel(self._get_token_key(token_type, token))
        except RedisError as e:
            raise ProviderError("Could not verify link") from e
        if identity_id is None:
            logger.warning(f"❌ [TOKEN] {token_type.value} token rejected ({mask_token(token)})")
            raise TokenError("The link is invalid or has expired. Please request a new one.")

        try:
            async with self.session_factory() as db:
                identity = await self._load_identity(db, identity_id=identity_id)
                if identity is None:
                    raise TokenError("The account for this link no longer exists")
                if identity.email_confirmed_at is None:
                    identity.email_confirmed_at = utcnow()
                session = await self._issue_session(db, identity)
        except SQLAlchemyError as e:
            raise ProviderError("Could not verify link") from e

        logger.info(f"✅ [TOKEN] {token_type.value} token exchanged for {identity.email}")
        await self._notify(SessionEvent(SessionEventType.SIGNED_IN, session.identity_id,
                                        session.access_token, session))
        return session
