"""Google OAuth endpoints.

Implements the OAuth 2.0 authorization code flow used to connect a user's
Google Calendar to their rooms.

## Required Setup

1. Create a project in Google Cloud Console
2. Enable Google Calendar API
3. Create OAuth 2.0 credentials (Web application)
4. Add the /api/google/callback URL as an authorized redirect URI
5. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET environment variables

## OAuth Endpoints

- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token (exchange and refresh): https://oauth2.googleapis.com/token
- User Info: https://www.googleapis.com/oauth2/v2/userinfo
- Revoke: https://oauth2.googleapis.com/revoke

## Refresh Tokens

Google returns a refresh token only on the first consent (we always ask
with `prompt=consent` and `access_type=offline`). Refresh responses never
carry a new one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx

from kinloop_calendar.config import get_settings
from kinloop_calendar.errors import (
    AuthExchangeError,
    RemoteServerError,
    TokenRefreshFailed,
)

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# Google answers 400 invalid_grant for revoked or expired refresh tokens
REJECTED_GRANT_STATUSES = (400, 401)


@dataclass
class GoogleTokens:
    """OAuth tokens from Google."""

    access_token: str
    refresh_token: str | None
    token_type: str
    expires_at: datetime
    scope: str


class GoogleOAuth:
    """Google OAuth 2.0 client.

    Example:
        ```python
        oauth = GoogleOAuth()

        # Generate authorization URL
        auth_url = oauth.get_authorization_url(state=encode_oauth_state(uid, room_id))
        # Redirect user to auth_url

        # Handle callback
        tokens = await oauth.exchange_code(code)
        email = await oauth.get_user_email(tokens.access_token)
        ```
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        redirect_uri: str | None = None,
        scopes: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        """Initialize Google OAuth client.

        Args:
            client_id: Google OAuth client ID (or from settings)
            client_secret: Google OAuth client secret (or from settings)
            redirect_uri: OAuth callback URL (or from settings)
            scopes: OAuth scopes to request (or from settings)
            transport: httpx transport override, used by tests
            timeout: Request timeout in seconds
        """
        settings = get_settings()

        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.redirect_uri = redirect_uri or settings.google_redirect_uri
        self.scopes = scopes or settings.google_calendar_scopes + ["email"]
        self._transport = transport
        self._timeout = timeout

        if not self.client_id or not self.client_secret:
            logger.warning(
                "Google OAuth not configured. Set GOOGLE_CLIENT_ID and "
                "GOOGLE_CLIENT_SECRET environment variables."
            )

    @property
    def is_configured(self) -> bool:
        """Check if Google OAuth is properly configured."""
        return bool(self.client_id and self.client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def get_authorization_url(
        self,
        state: str,
        access_type: str = "offline",
        prompt: str = "consent",
    ) -> str:
        """Generate the Google OAuth authorization URL.

        Args:
            state: Signed state carrying the user and room ids
            access_type: "offline" to get refresh token
            prompt: "consent" to always show consent screen

        Returns:
            URL to redirect the user to
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "access_type": access_type,
            "prompt": prompt,
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> GoogleTokens:
        """Exchange authorization code for tokens.

        Raises:
            AuthExchangeError: On a non-2xx response, a transport error or a
                body without an access token
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        try:
            async with self._client() as client:
                response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "grant_type": "authorization_code",
                        "redirect_uri": self.redirect_uri,
                    },
                )
        except httpx.HTTPError as e:
            raise AuthExchangeError(f"Token exchange failed: {e}") from e

        if not response.is_success:
            logger.error(f"Token exchange failed: {response.text}")
            raise AuthExchangeError(
                f"Token exchange failed: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return _parse_tokens(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise AuthExchangeError("Token exchange returned a malformed body") from e

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokens:
        """Refresh an expired access token.

        Raises:
            TokenRefreshFailed: If Google rejects the refresh token
            RemoteServerError: If Google is unavailable
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        try:
            async with self._client() as client:
                response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
        except httpx.HTTPError as e:
            raise RemoteServerError(f"Token refresh failed: {e}") from e

        if response.status_code in REJECTED_GRANT_STATUSES:
            logger.warning(f"Google rejected refresh token: {response.text}")
            raise TokenRefreshFailed(
                f"Token refresh rejected: {response.status_code}",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise RemoteServerError(
                f"Token refresh failed: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            tokens = _parse_tokens(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise TokenRefreshFailed("Token refresh returned a malformed body") from e

        # The stored refresh token stays valid
        tokens.refresh_token = refresh_token
        return tokens

    async def get_user_email(self, access_token: str) -> str | None:
        """Look up the Google account email. Best effort, never raises."""
        try:
            async with self._client() as client:
                response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            if not response.is_success:
                logger.warning(f"User info request failed: {response.status_code}")
                return None
            return response.json().get("email") or None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"User info request failed: {e}")
            return None

    async def revoke_token(self, token: str) -> bool:
        """Revoke an access or refresh token. Best effort, never raises.

        Returns:
            True if revocation succeeded
        """
        try:
            async with self._client() as client:
                response = await client.post(GOOGLE_REVOKE_URL, params={"token": token})
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Token revocation returned {response.status_code}")
            return False
        return True


def _parse_tokens(data: dict) -> GoogleTokens:
    access_token = data["access_token"]
    if not access_token:
        raise ValueError("empty access token")

    expires_in = int(data.get("expires_in", 3600))
    expires_at = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(
        seconds=expires_in
    )
    return GoogleTokens(
        access_token=access_token,
        refresh_token=data.get("refresh_token") or None,
        token_type=data.get("token_type", "Bearer"),
        expires_at=expires_at,
        scope=data.get("scope", ""),
    )
