"""
Invitation and recovery link handling

Landing on /activate or /reset-password runs a small state machine that
turns the link's one-time token into a session before any form is shown.
Tokens are single use; a reload after a successful exchange must rely on
the session it produced, not on the token.
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import List, Mapping, Optional
from urllib.parse import parse_qsl, urlsplit

from app.core.exceptions import ClinicException, TokenError
from app.core.security import mask_token
from app.providers.base import OneTimeTokenType
from app.services.session_store import SessionRegistry, SessionState, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_WAIT_SECONDS = 5.0

INVALID_ACTIVATION_LINK = "This invitation link is invalid or has expired. Ask an administrator to send a new one."
ACTIVATION_SESSION_REQUIRED = "Open the invitation link from your email to activate your account."
INVALID_RECOVERY_LINK = "The password reset link is invalid or has expired. Please request a new one."


class ActivationState(str, enum.Enum):
    VERIFYING = "verifying"
    AWAITING_SESSION = "awaiting_session"
    READY = "ready"
    TOKEN_ERROR = "token_error"
    SESSION_REQUIRED = "session_required"


class RecoveryState(str, enum.Enum):
    VERIFYING = "verifying"
    VALID = "valid"
    INVALID = "invalid"


@dataclass(frozen=True)
class LinkParams:
    """Parameters carried by an emailed link, from its query or fragment"""
    token: Optional[str] = None
    token_type: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def from_mapping(cls, params: Mapping[str, str]) -> "LinkParams":
        return cls(
            token=params.get("token") or params.get("token_hash") or None,
            token_type=params.get("type") or None,
            error=params.get("error") or params.get("error_code") or None,
            error_description=params.get("error_description") or None,
        )

    @classmethod
    def from_url(cls, url: str) -> "LinkParams":
        parts = urlsplit(url)
        # Providers put results in the fragment; it wins over the query string
        params = dict(parse_qsl(parts.query))
        params.update(parse_qsl(parts.fragment))
        return cls.from_mapping(params)


@dataclass
class LinkOutcome:
    state: enum.Enum
    store: Optional[SessionStore] = None
    message: Optional[str] = None
    trail: List[str] = field(default_factory=list)

    def move(self, state: enum.Enum, message: Optional[str] = None) -> "LinkOutcome":
        self.state = state
        self.trail.append(state.value)
        if message is not None:
            self.message = message
        return self


class ActivationLinkHandler:
    """State machine behind the activation route"""

    def __init__(self, registry: SessionRegistry, session_wait_seconds: float = DEFAULT_SESSION_WAIT_SECONDS):
        self.registry = registry
        self.session_wait_seconds = session_wait_seconds

    async def resolve(self, params: LinkParams, current: Optional[SessionStore] = None) -> LinkOutcome:
        outcome = LinkOutcome(ActivationState.VERIFYING, trail=[ActivationState.VERIFYING.value])

        if params.error:
            logger.warning(f"❌ [TOKEN] Activation link carried error: {params.error}")
            return outcome.move(ActivationState.TOKEN_ERROR, params.error_description or INVALID_ACTIVATION_LINK)

        if params.token:
            if params.token_type not in (None, OneTimeTokenType.INVITE.value):
                return outcome.move(ActivationState.TOKEN_ERROR, INVALID_ACTIVATION_LINK)
            try:
                outcome.store = await self.registry.exchange_token(params.token, OneTimeTokenType.INVITE)
            except TokenError as e:
                return outcome.move(ActivationState.TOKEN_ERROR, e.message)
            except ClinicException as e:
                logger.error(f"❌ [TOKEN] Invitation exchange failed ({mask_token(params.token)}): {e.message}")
                return outcome.move(ActivationState.TOKEN_ERROR, e.message)
            return outcome.move(ActivationState.READY)

        outcome.move(ActivationState.AWAITING_SESSION)
        if current is not None:
            await current.wait_until_resolved(self.session_wait_seconds)
            if current.state == SessionState.AUTHENTICATED:
                outcome.store = current
                return outcome.move(ActivationState.READY)
        return outcome.move(ActivationState.SESSION_REQUIRED, ACTIVATION_SESSION_REQUIRED)


class RecoveryLinkHandler:
    """State machine behind the password-reset route"""

    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def resolve(self, params: LinkParams, current: Optional[SessionStore] = None) -> LinkOutcome:
        outcome = LinkOutcome(RecoveryState.VERIFYING, trail=[RecoveryState.VERIFYING.value])

        if params.error:
            return outcome.move(RecoveryState.INVALID, params.error_description or INVALID_RECOVERY_LINK)

        if params.token:
            if params.token_type not in (None, OneTimeTokenType.RECOVERY.value):
                return outcome.move(RecoveryState.INVALID, INVALID_RECOVERY_LINK)
            try:
                outcome.store = await self.registry.exchange_token(params.token, OneTimeTokenType.RECOVERY)
            except ClinicException as e:
                logger.warning(f"❌ [TOKEN] Recovery exchange failed: {e.message}")
                return outcome.move(RecoveryState.INVALID, e.message)
            return outcome.move(RecoveryState.VALID)

        if current is not None and current.state == SessionState.AUTHENTICATED:
            outcome.store = current
            return outcome.move(RecoveryState.VALID)
        return outcome.move(RecoveryState.INVALID, INVALID_RECOVERY_LINK)
