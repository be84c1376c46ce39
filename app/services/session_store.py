"""
Session store: the live pairing of a provider session with its user profile
"""
import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import AuthenticationError, ClinicException
from app.models.user import UserStatus, utcnow
from app.providers.base import (
    AuthSession,
    IdentityProvider,
    ListenerSet,
    OneTimeTokenType,
    RowChange,
    RowChangeType,
    SessionEvent,
    SessionEventType,
    Subscription,
    TableProvider,
)
from app.schemas.user import UserProfile

logger = logging.getLogger(__name__)

USERS_TABLE = "users"


class SessionState(str, enum.Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class Session:
    """
    Provider session plus the profile it maps to

    ``profile`` is None when the identity has no users row; such a session
    carries no permissions.
    """
    auth: AuthSession
    profile: Optional[UserProfile]

    @property
    def user_id(self) -> str:
        return self.auth.identity_id

    @property
    def needs_activation(self) -> bool:
        return self.profile is not None and self.profile.status == UserStatus.PENDING


class SessionStore:
    """
    Holds one client's session and keeps it current

    Profile edits made elsewhere reach the store through a row-change
    subscription that lives exactly as long as the provider session.
    Call ``close`` when the store is discarded.
    """

    def __init__(self, identity: IdentityProvider, tables: TableProvider):
        self.identity = identity
        self.tables = tables
        self._state = SessionState.LOADING
        self._auth: Optional[AuthSession] = None
        self._profile: Optional[UserProfile] = None
        # Bumped on every session replacement; late profile loads compare against it
        self._generation = 0
        self._resolved = asyncio.Event()
        self._listeners = ListenerSet("session-store")
        self._profile_subscription: Optional[Subscription] = None
        self._auth_subscription: Optional[Subscription] = identity.on_session_change(self._on_session_event)
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        if self._state != SessionState.AUTHENTICATED or self._auth is None:
            return None
        return Session(self._auth, self._profile)

    @property
    def access_token(self) -> Optional[str]:
        return self._auth.access_token if self._auth else None

    def subscribe(self, listener: Callable[["SessionStore"], Any]) -> Subscription:
        """Get notified after every state or profile change"""
        return self._listeners.add(listener)

    async def wait_until_resolved(self, timeout: float) -> Optional[Session]:
        """Wait for the initial loading phase to end, at most ``timeout`` seconds"""
        if self._state == SessionState.LOADING:
            try:
                await asyncio.wait_for(self._resolved.wait(), timeout)
            except asyncio.TimeoutError:
                logger.warning("⚠️  [SESSION] Session did not resolve in time")
                return None
        return self.session

    async def initialize(self, access_token: Optional[str]) -> Optional[Session]:
        """
        Resume a previously issued token

        Any failure while checking the token resolves to "no session".
        """
        auth = None
        if access_token:
            try:
                auth = await self.identity.get_current_session(access_token)
            except ClinicException as e:
                logger.warning(f"⚠️  [SESSION] Session check failed, continuing signed out: {e.message}")
        await self._apply(auth)
        return self.session

    async def sign_in(self, email: str, password: str) -> Session:
        auth = await self.identity.sign_in_with_password(email, password)
        await self._apply(auth)
        return self.session

    async def exchange_token(self, token: str, token_type: OneTimeTokenType) -> Session:
        auth = await self.identity.exchange_one_time_token(token, token_type)
        await self._apply(auth)
        return self.session

    async def sign_out(self):
        auth = self._auth
        try:
            if auth is not None:
                await self.identity.sign_out(auth)
        finally:
            await self._apply(None)

    async def refresh_profile(self) -> Optional[UserProfile]:
        """Re-read the profile row, bypassing whatever the store holds"""
        if self._auth is None:
            raise AuthenticationError("Not signed in")
        generation = self._generation
        profile = await self._load_profile(self._auth.identity_id)
        if generation == self._generation:
            self._profile = profile
            await self._listeners.emit(self)
        return profile

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._generation += 1
        self._drop_profile_subscription()
        if self._auth_subscription is not None:
            self._auth_subscription.unsubscribe()
            self._auth_subscription = None
        self._auth = None
        self._profile = None
        self._set_state(SessionState.ANONYMOUS)
        self._listeners.clear()

    def is_expired(self) -> bool:
        return self._auth is not None and self._auth.is_expired(utcnow())

    def _set_state(self, state: SessionState):
        self._state = state
        if state != SessionState.LOADING:
            self._resolved.set()

    def _drop_profile_subscription(self):
        if self._profile_subscription is not None:
            self._profile_subscription.unsubscribe()
            self._profile_subscription = None

    async def _apply(self, auth: Optional[AuthSession]):
        if self._closed:
            return
        self._generation += 1
        generation = self._generation
        self._drop_profile_subscription()
        self._auth = auth

        if auth is None:
            self._profile = None
            self._set_state(SessionState.ANONYMOUS)
            await self._listeners.emit(self)
            return

        self._set_state(SessionState.LOADING)
        profile = await self._load_profile(auth.identity_id)
        if generation != self._generation:
            logger.info("[SESSION] Discarding profile load for a superseded session")
            return

        self._profile = profile
        self._profile_subscription = self.tables.subscribe_to_row_change(
            USERS_TABLE, auth.identity_id, self._on_profile_change
        )
        self._set_state(SessionState.AUTHENTICATED)
        logger.info(
            f"✅ [SESSION] Session ready for {auth.email} "
            f"(role={profile.role.value if profile else None}, status={profile.status.value if profile else None})"
        )
        await self._listeners.emit(self)

    async def _load_profile(self, identity_id: str) -> Optional[UserProfile]:
        try:
            row = await self.tables.fetch_row(USERS_TABLE, identity_id)
        except ClinicException as e:
            logger.error(f"❌ [SESSION] Could not load profile {identity_id}: {e.message}")
            return None
        return self._parse_profile(row)

    @staticmethod
    def _parse_profile(row: Optional[Dict[str, Any]]) -> Optional[UserProfile]:
        if row is None:
            return None
        try:
            return UserProfile.model_validate(row)
        except PydanticValidationError as e:
            logger.error(f"❌ [SESSION] Unreadable profile row {row.get('id')}: {e}")
            return None

    async def _on_profile_change(self, change: RowChange):
        if self._auth is None or change.row_id != self._auth.identity_id:
            return
        if change.type == RowChangeType.DELETE:
            self._profile = None
        else:
            self._profile = self._parse_profile(change.new)
        logger.info(f"🔄 [SESSION] Profile pushed for {self._auth.email}")
        await self._listeners.emit(self)

    async def _on_session_event(self, event: SessionEvent):
        auth = self._auth
        if auth is None or event.identity_id != auth.identity_id:
            return

        if event.type == SessionEventType.USER_DELETED:
            await self._apply(None)
        elif event.type == SessionEventType.SIGNED_OUT and event.access_token in (None, auth.access_token):
            await self._apply(None)
        elif event.type == SessionEventType.USER_UPDATED:
            await self.refresh_profile()


class SessionRegistry:
    """
    One SessionStore per live access token

    Stores are created on sign-in or when an unknown token is first seen,
    and are closed on sign-out, expiry or when the identity goes away.
    Expired stores are swept whenever a session is resolved or opened.
    """

    def __init__(self, identity: IdentityProvider, tables: TableProvider):
        self.identity = identity
        self.tables = tables
        self._stores: Dict[str, SessionStore] = {}

    def __len__(self):
        return len(self._stores)

    def _new_store(self) -> SessionStore:
        return SessionStore(self.identity, self.tables)

    def _track(self, store: SessionStore) -> SessionStore:
        """Register an authenticated store; a store already held for the token wins"""
        token = store.access_token
        if token is None:
            return store
        existing = self._stores.get(token)
        if existing is not None and existing is not store:
            return existing

        def on_change(changed: SessionStore):
            if changed.state == SessionState.ANONYMOUS and self._stores.get(token) is changed:
                del self._stores[token]
                return changed.close()

        store.subscribe(on_change)
        self._stores[token] = store
        return store

    async def sweep(self) -> int:
        """Close every store whose provider session has expired"""
        expired = [(token, store) for token, store in self._stores.items() if store.is_expired()]
        for token, store in expired:
            if self._stores.get(token) is store:
                del self._stores[token]
            await store.close()
        if expired:
            logger.info(f"[SESSION] Dropped {len(expired)} expired session(s)")
        return len(expired)

    async def resolve(self, access_token: Optional[str]) -> SessionStore:
        """Return the store for a token, resuming it if needed"""
        await self.sweep()
        store = self._stores.get(access_token) if access_token else None
        if store is not None:
            return store

        store = self._new_store()
        await store.initialize(access_token)
        if store.state != SessionState.AUTHENTICATED:
            # Nothing to keep alive for an unusable token
            await store.close()
            return store

        tracked = self._track(store)
        if tracked is not store:
            # A concurrent resolve of the same token finished first
            await store.close()
        return tracked

    async def _open(self, store: SessionStore, opening: Awaitable[Any]) -> SessionStore:
        try:
            await opening
        except Exception:
            await store.close()
            raise
        await self.sweep()
        tracked = self._track(store)
        if tracked is not store:
            await store.close()
        return tracked

    async def sign_in(self, email: str, password: str) -> SessionStore:
        store = self._new_store()
        return await self._open(store, store.sign_in(email, password))

    async def exchange_token(self, token: str, token_type: OneTimeTokenType) -> SessionStore:
        store = self._new_store()
        return await self._open(store, store.exchange_token(token, token_type))

    async def sign_out(self, access_token: str):
        store = self._stores.pop(access_token, None)
        if store is None:
            store = self._new_store()
            await store.initialize(access_token)
        try:
            await store.sign_out()
        finally:
            await store.close()

    async def close(self):
        stores = list(self._stores.values())
        self._stores.clear()
        for store in stores:
            await store.close()
