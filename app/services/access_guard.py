"""
Access control guard

Every permission question, from route gating to privileged mutations,
goes through the functions in this module.
"""
import enum
import logging
from dataclasses import dataclass
from typing import FrozenSet, Optional

from app.core.exceptions import AuthenticationError, AuthorizationError
from app.core.permissions import (
    NO_PERMISSIONS,
    Capability,
    PermissionSet,
    UserRole,
    get_permissions,
)
from app.services.session_store import Session

logger = logging.getLogger(__name__)


class Route(str, enum.Enum):
    """Logical front-end routes"""
    SIGN_IN = "sign-in"
    ACTIVATE = "activate"
    FORGOT_PASSWORD = "forgot-password"
    RESET_PASSWORD = "reset-password"
    USERS = "users"
    PROFILE = "profile"
    DASHBOARD = "dashboard"
    PATIENTS = "patients"


PUBLIC_ROUTES: FrozenSet[Route] = frozenset({
    Route.SIGN_IN,
    Route.ACTIVATE,
    Route.FORGOT_PASSWORD,
    Route.RESET_PASSWORD,
})

# Routes a pending account may still open
ACTIVATION_GATE_EXEMPT: FrozenSet[Route] = frozenset({
    Route.ACTIVATE,
    Route.FORGOT_PASSWORD,
    Route.RESET_PASSWORD,
})

ROUTE_CAPABILITIES = {
    Route.PATIENTS: Capability.VIEW_MEDICAL_CHART,
}


def permissions_for(session: Optional[Session]) -> PermissionSet:
    if session is None or session.profile is None:
        return NO_PERMISSIONS
    return get_permissions(session.profile.role)


def is_allowed(session: Optional[Session], capability: Capability) -> bool:
    """Whether the session's current role grants ``capability``"""
    return permissions_for(session).allows(capability)


def is_super_admin(session: Optional[Session]) -> bool:
    """Exact role check gating the user-management surface"""
    return session is not None and session.profile is not None and session.profile.role == UserRole.SUPER_ADMIN


def require_capability(session: Optional[Session], capability: Capability,
                        super_admin_only: bool = False) -> Session:
    """
    Return the session if it may use ``capability``

    Raises:
        AuthenticationError: no session
        AuthorizationError: session present but role insufficient
    """
    if session is None:
        raise AuthenticationError("Not signed in")

    if super_admin_only and not is_super_admin(session):
        logger.warning(f"⛔ [GUARD] {session.auth.email} denied {capability.value}: super admin required")
        raise AuthorizationError("Forbidden: Only super admins can perform this action")

    if not is_allowed(session, capability):
        logger.warning(f"⛔ [GUARD] {session.auth.email} denied {capability.value}")
        raise AuthorizationError(f"Forbidden: missing permission {capability.value}")

    return session


@dataclass(frozen=True)
class RouteDecision:
    route: Route
    allowed: bool
    redirect_to: Optional[Route] = None
    reason: Optional[str] = None


def parse_route(value: str) -> Optional[Route]:
    try:
        return Route(value.strip("/").lower() or Route.DASHBOARD.value)
    except ValueError:
        return None


def check_route(session: Optional[Session], route: Route) -> RouteDecision:
    """
    Decide whether ``route`` may be opened

    Evaluated on every navigation. A pending account is sent to activation
    from everywhere except the activation and recovery routes.
    """
    if session is not None and session.needs_activation:
        if route in ACTIVATION_GATE_EXEMPT:
            return RouteDecision(route, True)
        return RouteDecision(route, False, Route.ACTIVATE, "activation_required")

    if route in PUBLIC_ROUTES:
        return RouteDecision(route, True)

    if session is None:
        return RouteDecision(route, False, Route.SIGN_IN, "authentication_required")

    if route == Route.USERS and not is_super_admin(session):
        return RouteDecision(route, False, Route.DASHBOARD, "forbidden")

    capability = ROUTE_CAPABILITIES.get(route)
    if capability is not None and not is_allowed(session, capability):
        return RouteDecision(route, False, Route.DASHBOARD, "forbidden")

    return RouteDecision(route, True)
