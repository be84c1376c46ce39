"""
Identity and table providers
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.providers.base import (
    AuthSession,
    IdentityProvider,
    OneTimeTokenType,
    RowChange,
    RowChangeType,
    SessionEvent,
    SessionEventType,
    Subscription,
    TableProvider,
)
from app.providers.local_identity import LocalIdentityProvider
from app.providers.sql_tables import RowChangeBroker, SQLTableProvider
from app.providers.supabase import SupabaseIdentityProvider
from app.utils.redis_client import RedisClient


def build_identity_provider(session_factory: async_sessionmaker[AsyncSession],
                            redis_client: RedisClient) -> IdentityProvider:
    """Pick the identity provider named by IDENTITY_PROVIDER"""
    if settings.IDENTITY_PROVIDER == "supabase":
        return SupabaseIdentityProvider(
            settings.SUPABASE_URL,
            settings.SUPABASE_ANON_KEY,
            settings.SUPABASE_SERVICE_ROLE_KEY,
        )
    return LocalIdentityProvider(session_factory, redis_client)


__all__ = [
    "AuthSession",
    "IdentityProvider",
    "LocalIdentityProvider",
    "OneTimeTokenType",
    "RowChange",
    "RowChangeBroker",
    "RowChangeType",
    "SQLTableProvider",
    "SessionEvent",
    "SessionEventType",
    "Subscription",
    "SupabaseIdentityProvider",
    "TableProvider",
    "build_identity_provider",
]
