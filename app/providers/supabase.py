"""
Hosted identity provider speaking the Supabase Auth (GoTrue) REST API

The service-role key grants full control over every identity. It is only
read from server settings and only sent on ``admin_*`` requests.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.exceptions import (
    AuthenticationError,
    DuplicateError,
    ProviderError,
    RateLimitError,
    TokenError,
)
from app.core.security import mask_token, read_token_expiry
from app.models.user import utcnow
from app.providers.base import (
    AuthSession,
    IdentityProvider,
    OneTimeTokenType,
    SessionEvent,
    SessionEventType,
)

logger = logging.getLogger(__name__)


class SupabaseIdentityProvider(IdentityProvider):
    """IdentityProvider delegating to a hosted auth service over HTTP"""

    def __init__(self, base_url: str, anon_key: str, service_role_key: str,
                 client: Optional[httpx.AsyncClient] = None):
        super().__init__()
        if not base_url or not anon_key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required for the hosted provider")
        self.auth_url = base_url.rstrip("/") + "/auth/v1"
        self.anon_key = anon_key
        self.service_role_key = service_role_key
        self.client = client or httpx.AsyncClient(timeout=settings.SUPABASE_TIMEOUT_SECONDS)

    def _headers(self, bearer: Optional[str] = None) -> Dict[str, str]:
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {bearer or self.anon_key}",
        }

    def _admin_headers(self) -> Dict[str, str]:
        if not self.service_role_key:
            raise ProviderError("Admin operations are not configured on this server")
        return {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
        }

    async def _request(self, method: str, path: str, *, headers: Dict[str, str],
                       json: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, str]] = None) -> httpx.Response:
        try:
            response = await self.client.request(
                method, self.auth_url + path, headers=headers, json=json, params=params,
            )
        except httpx.HTTPError as e:
            logger.error(f"❌ [SUPABASE] {method} {path} failed: {e}")
            raise ProviderError("Identity provider unreachable") from e

        if response.status_code >= 500:
            logger.error(f"❌ [SUPABASE] {method} {path} returned {response.status_code}")
            raise ProviderError("Identity provider error")
        if response.status_code == 429:
            raise RateLimitError(self._error_message(response, "Too many requests"))
        return response

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            body = response.json()
        except ValueError:
            return default
        return body.get("msg") or body.get("error_description") or body.get("message") or default

    def _session_from_payload(self, payload: Dict[str, Any]) -> AuthSession:
        user = payload.get("user") or {}
        access_token = payload.get("access_token")
        if not access_token or not user.get("id"):
            raise ProviderError("Identity provider returned an incomplete session")
        expires_at = read_token_expiry(access_token)
        if expires_at is None:
            expires_at = utcnow() + timedelta(seconds=int(payload.get("expires_in", 3600)))
        return AuthSession(
            access_token=access_token,
            identity_id=user["id"],
            email=user.get("email", ""),
            expires_at=expires_at,
        )

    async def get_current_session(self, access_token: str) -> Optional[AuthSession]:
        response = await self._request("GET", "/user", headers=self._headers(access_token))
        if response.status_code != 200:
            return None
        user = response.json()
        expires_at = read_token_expiry(access_token)
        if expires_at is None or expires_at <= utcnow():
            return None
        return AuthSession(
            access_token=access_token,
            identity_id=user["id"],
            email=user.get("email", ""),
            expires_at=expires_at,
        )

    async def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        response = await self._request(
            "POST", "/token",
            headers=self._headers(),
            params={"grant_type": "password"},
            json={"email": email.strip().lower(), "password": password},
        )
        if response.status_code != 200:
            logger.warning(f"❌ [SUPABASE] Sign-in refused for {email}")
            raise AuthenticationError("Invalid credentials")

        session = self._session_from_payload(response.json())
        await self._notify(SessionEvent(SessionEventType.SIGNED_IN, session.identity_id,
                                        session.access_token, session))
        return session

    async def sign_out(self, session: AuthSession):
        response = await self._request("POST", "/logout", headers=self._headers(session.access_token))
        # 401 means the token was already dead; the session is gone either way
        if response.status_code not in (200, 204, 401):
            raise ProviderError(self._error_message(response, "Sign-out failed"))
        await self._notify(SessionEvent(SessionEventType.SIGNED_OUT, session.identity_id,
                                        session.access_token))

    async def update_own_credential(self, session: AuthSession, new_password: str):
        response = await self._request(
            "PUT", "/user",
            headers=self._headers(session.access_token),
            json={"password": new_password},
        )
        if response.status_code == 401:
            raise AuthenticationError("Session expired. Please sign in again")
        if response.status_code != 200:
            raise ProviderError(self._error_message(response, "Could not update password"))
        await self._notify(SessionEvent(SessionEventType.USER_UPDATED, session.identity_id,
                                        session.access_token, session))

    async def admin_invite_by_email(self, email: str, redirect_to: str) -> str:
        response = await self._request(
            "POST", "/invite",
            headers=self._admin_headers(),
            params={"redirect_to": redirect_to},
            json={"email": email.strip().lower()},
        )
        if response.status_code == 422:
            raise DuplicateError(self._error_message(response, "User already registered"))
        if response.status_code != 200:
            raise ProviderError(self._error_message(response, "Could not send invitation"))

        identity_id = response.json().get("id")
        if not identity_id:
            raise ProviderError("Identity provider did not return the invited user")
        logger.info(f"📧 [SUPABASE] Invitation sent to {email}")
        return identity_id

    async def _send_recovery(self, email: str, redirect_to: str, headers: Dict[str, str]):
        response = await self._request(
            "POST", "/recover",
            headers=headers,
            params={"redirect_to": redirect_to},
            json={"email": email.strip().lower()},
        )
        if response.status_code != 200:
            raise ProviderError(self._error_message(response, "Could not send reset email"))

    async def admin_generate_recovery_link(self, email: str, redirect_to: str):
        await self._send_recovery(email, redirect_to, self._admin_headers())
        logger.info(f"📧 [SUPABASE] Recovery email sent to {email}")

    async def request_recovery(self, email: str, redirect_to: str):
        await self._send_recovery(email, redirect_to, self._headers())

    async def admin_delete_identity(self, identity_id: str):
        response = await self._request("DELETE", f"/admin/users/{identity_id}", headers=self._admin_headers())
        if response.status_code == 404:
            return
        if response.status_code not in (200, 204):
            raise ProviderError(self._error_message(response, "Could not delete identity"))
        await self._notify(SessionEvent(SessionEventType.USER_DELETED, identity_id))

    async def exchange_one_time_token(self, token: str, token_type: OneTimeTokenType) -> AuthSession:
        if not token:
            raise TokenError("The link is missing its token")
        # Transport failures surface as ProviderError; the token may still be good
        response = await self._request(
            "POST", "/verify",
            headers=self._headers(),
            json={"type": token_type.value, "token_hash": token},
        )
        if response.status_code != 200:
            logger.warning(f"❌ [TOKEN] {token_type.value} token rejected ({mask_token(token)})")
            raise TokenError(self._error_message(
                response, "The link is invalid or has expired. Please request a new one."))

        session = self._session_from_payload(response.json())
        await self._notify(SessionEvent(SessionEventType.SIGNED_IN, session.identity_id,
                                        session.access_token, session))
        return session

    async def close(self):
        await super().close()
        await self.client.aclose()
