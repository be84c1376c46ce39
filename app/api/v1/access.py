"""
Access control API endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends

from app.core.exceptions import NotFoundError
from app.dependencies import get_optional_session
from app.schemas.user import PermissionsResponse, RouteDecisionResponse
from app.services.access_guard import check_route, is_super_admin, parse_route, permissions_for
from app.services.session_store import Session

router = APIRouter(prefix="/access", tags=["Access"])


@router.get("/permissions", response_model=PermissionsResponse)
async def get_permissions(session: Optional[Session] = Depends(get_optional_session)):
    """Capabilities granted by the caller's current role; all false when signed out"""
    return PermissionsResponse(
        role=session.profile.role if session and session.profile else None,
        is_super_admin=is_super_admin(session),
        permissions=permissions_for(session).to_dict(),
    )


@router.get("/routes/{route}", response_model=RouteDecisionResponse)
async def check_route_access(route: str, session: Optional[Session] = Depends(get_optional_session)):
    """Whether the caller may open ``route``, and where to go instead if not"""
    parsed = parse_route(route)
    if parsed is None:
        raise NotFoundError(f"Unknown route: {route}")

    decision = check_route(session, parsed)
    return RouteDecisionResponse(
        route=decision.route.value,
        allowed=decision.allowed,
        redirect_to=decision.redirect_to.value if decision.redirect_to else None,
        reason=decision.reason,
    )
