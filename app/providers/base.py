"""
Identity & table provider interface

Everything the access layer needs from the backend platform goes through
these two abstract classes. Privileged ``admin_*`` calls must only ever be
made from server-side code holding elevated provider credentials.
"""
import enum
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class Subscription:
    """Cancellable handle returned by every subscribe call"""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        """Stop delivery; safe to call more than once"""
        if not self._active:
            return
        self._active = False
        self._cancel()


Listener = Callable[..., Union[None, Awaitable[None]]]


class ListenerSet:
    """Ordered set of callbacks, sync or async, fed by ``emit``"""

    def __init__(self, name: str = "listeners"):
        self.name = name
        self._listeners: Dict[int, Listener] = {}
        self._next_key = 0

    def __len__(self):
        return len(self._listeners)

    def add(self, listener: Listener) -> Subscription:
        key = self._next_key
        self._next_key += 1
        self._listeners[key] = listener
        return Subscription(lambda: self._listeners.pop(key, None))

    def clear(self):
        self._listeners.clear()

    async def emit(self, *args: Any):
        # Snapshot: listeners may unsubscribe while being notified
        for listener in list(self._listeners.values()):
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener failed while handling {self.name} event")


@dataclass(frozen=True)
class AuthSession:
    """A live provider-issued credential session"""
    access_token: str
    identity_id: str
    email: str
    expires_at: datetime
    token_type: str = "bearer"

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class SessionEventType(str, enum.Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    USER_UPDATED = "USER_UPDATED"
    USER_DELETED = "USER_DELETED"


@dataclass(frozen=True)
class SessionEvent:
    """
    Session-change notification

    ``access_token`` is None when the event applies to every session of the
    identity (for example after the identity was deleted).
    """
    type: SessionEventType
    identity_id: str
    access_token: Optional[str] = None
    session: Optional[AuthSession] = None


class OneTimeTokenType(str, enum.Enum):
    INVITE = "invite"
    RECOVERY = "recovery"


class IdentityProvider(ABC):
    """Credential authority: sessions, passwords and one-time link tokens"""

    def __init__(self):
        self._session_listeners = ListenerSet("session")

    def on_session_change(self, callback: Callable[[SessionEvent], Any]) -> Subscription:
        """Register for session-change notifications"""
        return self._session_listeners.add(callback)

    async def _notify(self, event: SessionEvent):
        await self._session_listeners.emit(event)

    @abstractmethod
    async def get_current_session(self, access_token: str) -> Optional[AuthSession]:
        """Resolve a previously issued token, None if it is no longer valid"""

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        """Raises AuthenticationError on bad credentials"""

    @abstractmethod
    async def sign_out(self, session: AuthSession):
        ...

    @abstractmethod
    async def update_own_credential(self, session: AuthSession, new_password: str):
        ...

    @abstractmethod
    async def admin_invite_by_email(self, email: str, redirect_to: str) -> str:
        """Create an identity and send its invitation link, returns the identity id"""

    @abstractmethod
    async def admin_generate_recovery_link(self, email: str, redirect_to: str):
        """Issue a recovery token for an existing identity and send it by email"""

    @abstractmethod
    async def request_recovery(self, email: str, redirect_to: str):
        """Self-service recovery; silent when the email is unknown"""

    @abstractmethod
    async def admin_delete_identity(self, identity_id: str):
        """Remove an identity; removing a missing identity is not an error"""

    @abstractmethod
    async def exchange_one_time_token(self, token: str, token_type: OneTimeTokenType) -> AuthSession:
        """Trade a link token for a session, raises TokenError if unusable"""

    async def close(self):
        self._session_listeners.clear()


class RowChangeType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class RowChange:
    table: str
    row_id: str
    type: RowChangeType
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = field(default=None, repr=False)


class TableProvider(ABC):
    """Generic row storage with push notifications on change"""

    @abstractmethod
    async def fetch_row(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_rows(self, table: str, order_by: str = "created_at",
                        descending: bool = True) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert_row(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Raises DuplicateError on a unique-key clash"""

    @abstractmethod
    async def update_row(self, table: str, row_id: str, patch: Dict[str, Any],
                         match: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Apply ``patch`` and advance ``updated_at``

        When ``match`` is given the update only applies if those columns
        still hold the given values; None is returned otherwise. Raises
        NotFoundError if the row does not exist.
        """

    @abstractmethod
    async def delete_row(self, table: str, row_id: str) -> bool:
        ...

    @abstractmethod
    def subscribe_to_row_change(self, table: str, row_id: str,
                                callback: Callable[[RowChange], Any]) -> Subscription:
        ...
