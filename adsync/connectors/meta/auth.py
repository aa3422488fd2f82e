"""adsync — Meta OAuth Token Manager.

Builds the consent dialog URL, exchanges authorization codes, upgrades to
long-lived tokens and owns the `authorized_users` table. Expiry is stored
but never checked here; callers decide what to do with a stale token.
"""

import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from adsync.config import Settings, settings
from adsync.core.errors import PersistenceError, TokenExchangeError
from adsync.core.logging import get_logger
from adsync.models.meta_models import AuthorizedUser, utcnow
from adsync.models.meta_schemas import TokenResponse

logger = get_logger("meta.auth")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo; everything is stored in UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass
class TokenStatus:
    has_token: bool
    is_valid: bool
    expires_at: Optional[datetime]
    days_remaining: Optional[float]


class TokenManager:
    """Credential lifecycle for the Meta integration."""

    def __init__(
        self,
        engine: Engine,
        http_client: httpx.AsyncClient | None = None,
        config: Settings = settings,
    ):
        self.engine = engine
        self.config = config
        self._client: Optional[httpx.AsyncClient] = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.http_timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── OAuth Dialog ──

    @staticmethod
    def generate_state() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def validate_state(received: Optional[str], stored: Optional[str]) -> bool:
        if not received or not stored:
            return False
        return hmac.compare_digest(received, stored)

    def build_authorization_url(self, state: str) -> str:
        """Consent dialog URL. The caller stores `state` and validates it on callback."""
        query = urlencode(
            {
                "client_id": self.config.meta_app_id,
                "redirect_uri": self.config.meta_redirect_uri,
                "state": state,
                "scope": self.config.meta_scopes,
            }
        )
        return (
            f"{self.config.meta_dialog_base_url}/{self.config.meta_api_version}"
            f"/dialog/oauth?{query}"
        )

    # ── Token Endpoint ──

    async def _token_request(self, params: Dict[str, Any]) -> TokenResponse:
        client = await self._get_client()
        resp = await client.get(
            f"{self.config.meta_graph_url}/oauth/access_token", params=params
        )
        resp.raise_for_status()
        return TokenResponse.model_validate(resp.json())

    async def exchange_code(self, code: str) -> TokenResponse:
        """Exchange an authorization code for a short-lived user token."""
        try:
            return await self._token_request(
                {
                    "client_id": self.config.meta_app_id,
                    "client_secret": self.config.meta_app_secret,
                    "redirect_uri": self.config.meta_redirect_uri,
                    "code": code,
                }
            )
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.error(f"Meta token exchange failed: {e}")
            raise TokenExchangeError("Failed to exchange Meta token") from e

    async def _fb_exchange(self, token: str) -> TokenResponse:
        return await self._token_request(
            {
                "grant_type": "fb_exchange_token",
                "client_id": self.config.meta_app_id,
                "client_secret": self.config.meta_app_secret,
                "fb_exchange_token": token,
            }
        )

    async def upgrade_to_long_lived(self, short_token: str) -> str:
        """Best effort: falls back to the short-lived token on any failure."""
        try:
            result = await self._fb_exchange(short_token)
            return result.access_token
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.warning(
                f"Failed to exchange for long-lived token, using short-lived one: {e}"
            )
            return short_token

    async def refresh_long_lived(self, current_token: str) -> TokenResponse:
        """Re-exchange a long-lived token for a fresh one. Not called automatically."""
        try:
            return await self._fb_exchange(current_token)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            logger.error(f"Meta token refresh failed: {e}")
            raise TokenExchangeError("Failed to refresh Meta token") from e

    # ── Storage ──

    def store(
        self,
        user_id: str,
        access_token: str,
        expires_in: Optional[int] = None,
        refresh_token: Optional[str] = None,
    ) -> AuthorizedUser:
        """Persist the user's credential, replacing any previous one."""
        now = utcnow()
        expires_at = now + timedelta(seconds=expires_in) if expires_in is not None else None
        try:
            with Session(self.engine) as session:
                row = session.get(AuthorizedUser, user_id)
                if row is None:
                    row = AuthorizedUser(user_id=user_id, access_token=access_token)
                row.access_token = access_token
                row.refresh_token = refresh_token
                row.token_expires_at = expires_at
                row.updated_at = now
                session.add(row)
                session.commit()
                session.refresh(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not store token for {user_id}: {e}") from e
        logger.info(f"Stored Meta token for user {user_id}")
        return row

    def get_credential(self, user_id: str) -> Optional[AuthorizedUser]:
        with Session(self.engine) as session:
            return session.get(AuthorizedUser, user_id)

    def get_access_token(self, user_id: str) -> Optional[str]:
        """Return the stored token without checking expiry."""
        row = self.get_credential(user_id)
        return row.access_token if row else None

    def token_status(self, user_id: str) -> Optional[TokenStatus]:
        row = self.get_credential(user_id)
        if row is None:
            return None
        if row.token_expires_at is None:
            return TokenStatus(True, True, None, None)
        expires_at = _as_utc(row.token_expires_at)
        remaining = (expires_at - utcnow()).total_seconds()
        return TokenStatus(
            has_token=True,
            is_valid=remaining > 0,
            expires_at=expires_at,
            days_remaining=round(remaining / 86400, 1),
        )

    def delete(self, user_id: str) -> bool:
        """Drop the credential. Linked ad accounts are left in place."""
        with Session(self.engine) as session:
            row = session.get(AuthorizedUser, user_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
        logger.info(f"Deleted Meta token for user {user_id}")
        return True
