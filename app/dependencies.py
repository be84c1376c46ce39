"""
FastAPI dependencies for dependency injection
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import AuthenticationError, AuthorizationError
from app.providers import (
    IdentityProvider,
    RowChangeBroker,
    SQLTableProvider,
    TableProvider,
    build_identity_provider,
)
from app.services.lifecycle_service import AccountLifecycleService
from app.services.session_store import Session, SessionRegistry, SessionStore
from app.services.token_service import ActivationLinkHandler, RecoveryLinkHandler
from app.utils.redis_client import RedisClient

logger = logging.getLogger(__name__)

# HTTP Bearer token authentication; a missing header means "signed out"
security = HTTPBearer(auto_error=False)


@dataclass
class Services:
    """Everything the request handlers need, built once per application"""
    identity: IdentityProvider
    tables: TableProvider
    registry: SessionRegistry
    lifecycle: AccountLifecycleService
    activation_links: ActivationLinkHandler
    recovery_links: RecoveryLinkHandler

    async def close(self):
        await self.registry.close()
        await self.identity.close()


def build_services(session_factory: async_sessionmaker[AsyncSession], redis_client: RedisClient,
                   identity: Optional[IdentityProvider] = None) -> Services:
    identity = identity or build_identity_provider(session_factory, redis_client)
    tables = SQLTableProvider(session_factory, RowChangeBroker())
    registry = SessionRegistry(identity, tables)
    logger.info(f"[SERVICES] Identity provider: {type(identity).__name__}")
    return Services(
        identity=identity,
        tables=tables,
        registry=registry,
        lifecycle=AccountLifecycleService(identity, tables),
        activation_links=ActivationLinkHandler(registry),
        recovery_links=RecoveryLinkHandler(registry),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_session_store(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> Optional[SessionStore]:
    """Resolve the bearer token to its session store, if a token was sent"""
    if not credentials:
        return None
    return await services.registry.resolve(credentials.credentials)


async def get_optional_session(
    store: Optional[SessionStore] = Depends(get_session_store),
) -> Optional[Session]:
    """
    Dependency to optionally get the current session (doesn't raise error if not authenticated)

    Returns:
        Session or None
    """
    return store.session if store is not None else None


async def get_pending_session(
    session: Optional[Session] = Depends(get_optional_session),
) -> Session:
    """
    Dependency for routes a not-yet-activated account may still use

    Raises:
        AuthenticationError: 401 if token is missing, invalid or expired
    """
    if session is None:
        raise AuthenticationError("Invalid or expired token")
    return session


async def get_current_session(
    session: Session = Depends(get_pending_session),
) -> Session:
    """
    Dependency to get the current session of an activated account

    Raises:
        AuthenticationError: 401 if token is invalid
        AuthorizationError: 403 if the account still has to be activated
    """
    if session.needs_activation:
        raise AuthorizationError("Account activation required")
    return session
