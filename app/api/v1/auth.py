"""
Authentication API endpoints
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.security import HTTPAuthorizationCredentials

from app.core.exceptions import AuthenticationError, AuthorizationError
from app.dependencies import (
    Services,
    get_current_session,
    get_pending_session,
    get_services,
    get_session_store,
    security,
)
from app.models.user import UserStatus
from app.schemas.auth import (
    ActivateAccountRequest,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LinkStateResponse,
    MessageResponse,
    ProfileUpdateRequest,
    ResetPasswordRequest,
    SessionResponse,
    SignInRequest,
    TokenResponse,
    VerifyLinkRequest,
)
from app.schemas.user import UserResponse
from app.services.session_store import Session, SessionStore
from app.services.token_service import LinkParams

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])

RECOVERY_REQUESTED_MESSAGE = "If an account exists for this email, a password reset link has been sent."


def session_response(store: Optional[SessionStore], include_tokens: bool = False) -> SessionResponse:
    """Describe a session store to the client"""
    if store is None:
        return SessionResponse(state="anonymous")

    session = store.session
    if session is None:
        return SessionResponse(state=store.state.value)

    tokens = None
    if include_tokens:
        tokens = TokenResponse(access_token=session.auth.access_token, expires_at=session.auth.expires_at)
    return SessionResponse(
        state=store.state.value,
        user=UserResponse.from_profile(session.profile) if session.profile else None,
        tokens=tokens,
        activation_required=session.needs_activation,
    )


@router.post("/sign-in", response_model=SessionResponse)
async def sign_in(
    data: SignInRequest,
    services: Services = Depends(get_services),
):
    """
    Sign in with email and password

    - Deactivated accounts are refused
    - Pending accounts get a session flagged ``activation_required``
    """
    logger.info(f"🔐 [AUTH] Sign-in attempt: {data.email}")
    store = await services.registry.sign_in(data.email, data.password)

    profile = store.session.profile if store.session else None
    if profile is not None and profile.status in (UserStatus.INACTIVE, UserStatus.TERMINATED):
        logger.warning(f"⛔ [AUTH] Sign-in refused for {profile.status.value} account {data.email}")
        await services.registry.sign_out(store.access_token)
        raise AuthorizationError("This account has been deactivated. Contact an administrator.")

    logger.info(f"✅ [AUTH] Signed in: {data.email}")
    return session_response(store, include_tokens=True)


@router.post("/sign-out", response_model=MessageResponse)
async def sign_out(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
):
    """Sign out the bearer token's session"""
    if not credentials:
        raise AuthenticationError("Invalid or expired token")
    await services.registry.sign_out(credentials.credentials)
    return MessageResponse(message="Signed out successfully")


@router.get("/session", response_model=SessionResponse)
async def get_session(store: Optional[SessionStore] = Depends(get_session_store)):
    """
    Current session state

    Never fails: an unknown or expired token reports ``anonymous``.
    """
    return session_response(store)


@router.post("/verify", response_model=LinkStateResponse)
async def verify_link(
    data: VerifyLinkRequest,
    current: Optional[SessionStore] = Depends(get_session_store),
    services: Services = Depends(get_services),
):
    """
    Process the parameters of an invitation or password-reset link

    - Exchanges the one-time token for a session
    - Without a token, falls back to the caller's existing session
    - Returns the page state; tokens are included when a new session was created
    """
    if data.url:
        params = LinkParams.from_url(data.url)
    else:
        params = LinkParams(
            token=data.token,
            token_type=data.type,
            error=data.error,
            error_description=data.error_description,
        )

    if data.route == "activate":
        outcome = await services.activation_links.resolve(params, current)
    else:
        outcome = await services.recovery_links.resolve(params, current)

    logger.info(f"🔗 [TOKEN] {data.route} link: {' -> '.join(outcome.trail)}")
    return LinkStateResponse(
        route=data.route,
        state=outcome.state.value,
        message=outcome.message,
        trail=outcome.trail,
        session=session_response(outcome.store, include_tokens=outcome.store is not current)
        if outcome.store is not None else None,
    )


@router.post("/recover", response_model=MessageResponse)
async def request_password_reset(
    data: ForgotPasswordRequest,
    services: Services = Depends(get_services),
):
    """Email a password reset link; the response does not reveal whether the account exists"""
    await services.lifecycle.request_password_reset(data.email)
    return MessageResponse(message=RECOVERY_REQUESTED_MESSAGE)


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    data: ResetPasswordRequest,
    session: Session = Depends(get_pending_session),
    services: Services = Depends(get_services),
):
    """Set a new password using the session a recovery link produced"""
    await services.lifecycle.complete_password_reset(session, data.password)
    return MessageResponse(message="Password has been reset successfully")


@router.post("/activate", response_model=UserResponse)
async def activate_account(
    data: ActivateAccountRequest,
    session: Session = Depends(get_pending_session),
    services: Services = Depends(get_services),
):
    """
    Complete an invitation

    - Sets the account password
    - Records name and phone and marks the account active
    """
    profile = await services.lifecycle.activate(
        session, data.full_name, data.password, data.phone, data.profile_picture
    )
    return UserResponse.from_profile(profile)


@router.patch("/profile", response_model=UserResponse)
async def update_profile(
    data: ProfileUpdateRequest,
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    """Update the caller's own name and phone"""
    profile = await services.lifecycle.update_own_profile(
        session, data.full_name, data.phone, data.profile_picture
    )
    return UserResponse.from_profile(profile)


@router.post("/change-password", response_model=MessageResponse, status_code=status.HTTP_200_OK)
async def change_password(
    data: ChangePasswordRequest,
    session: Session = Depends(get_current_session),
    services: Services = Depends(get_services),
):
    """Change the caller's password"""
    await services.lifecycle.change_own_password(session, data.password)
    return MessageResponse(message="Password changed successfully")
