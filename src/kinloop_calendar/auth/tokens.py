"""Token lifecycle for Google connections.

A user's connection moves through:

```
Disconnected --(code exchange)--> Connected (valid token)
Connected (valid) <--> Connected (expired, refreshed on demand)
Connected --(revoke / refresh rejected)--> Disconnected
```

There is no persisted "connecting" state: `save_credentials` after a
successful code exchange is the single transition into Connected.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from kinloop_calendar.auth.google import GoogleOAuth, GoogleTokens
from kinloop_calendar.database.credentials import CredentialStore
from kinloop_calendar.errors import (
    AuthExchangeError,
    ReauthorizationRequired,
    TokenRefreshFailed,
)
from kinloop_calendar.models.credential import (
    ConnectionStatus,
    CredentialRecord,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Hands out valid access tokens, refreshing them when needed."""

    def __init__(
        self,
        store: CredentialStore,
        oauth: GoogleOAuth,
        refresh_margin: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.oauth = oauth
        self.refresh_margin = refresh_margin
        self._clock = clock

    async def exchange_authorization_code(self, code: str) -> GoogleTokens:
        """Trade the callback's authorization code for tokens."""
        return await self.oauth.exchange_code(code)

    async def save_credentials(
        self,
        user_id: str,
        tokens: GoogleTokens,
        linked_email: str | None = None,
    ) -> CredentialRecord:
        """Store the tokens of a fresh consent.

        Google omits the refresh token when the user already granted access;
        the stored one is kept in that case. Calendar selection and linked
        email survive a reconnect.

        Raises:
            AuthExchangeError: If no refresh token is available at all
        """
        existing = await self.store.get(user_id)

        refresh_token = tokens.refresh_token or (existing.refresh_token if existing else "")
        if not refresh_token:
            raise AuthExchangeError("Google did not return a refresh token")

        record = CredentialRecord(
            user_id=user_id,
            access_token=tokens.access_token,
            refresh_token=refresh_token,
            access_token_expiry=tokens.expires_at,
            selected_calendar_ids=(
                existing.selected_calendar_ids if existing else []
            ),
            linked_email=linked_email or (existing.linked_email if existing else None),
            connected_at=self._clock(),
            scope=tokens.scope,
        )
        await self.store.put(user_id, record)

        logger.info(f"Google Calendar connected for user {user_id}")
        return record

    async def get_valid_access_token(
        self, user_id: str, force_refresh: bool = False
    ) -> str:
        """Return an access token that is safe to send to Google.

        Args:
            user_id: User whose token is needed
            force_refresh: Refresh even if the cached token looks valid
                (used after Google answered 401)

        Raises:
            ReauthorizationRequired: If the user never connected
            TokenRefreshFailed: If Google rejected the refresh token; the
                stored credentials are removed
        """
        record = await self.store.get(user_id)
        if record is None:
            raise ReauthorizationRequired(user_id)

        if not force_refresh and record.is_access_token_fresh(
            self._clock(), self.refresh_margin
        ):
            return record.access_token

        try:
            tokens = await self.oauth.refresh_access_token(record.refresh_token)
        except TokenRefreshFailed:
            logger.warning(
                f"Refresh token rejected for user {user_id}, disconnecting"
            )
            await self.store.delete(user_id)
            raise

        await self.store.update_access_token(
            user_id, tokens.access_token, tokens.expires_at
        )
        logger.debug(f"Refreshed Google access token for user {user_id}")
        return tokens.access_token

    async def revoke_and_forget(self, user_id: str) -> bool:
        """Disconnect the user.

        Revocation at Google is best effort; the stored credentials are
        deleted whatever its outcome.

        Returns:
            True if the user had credentials
        """
        record = await self.store.get(user_id)
        if record is not None:
            # Revoking the refresh token also invalidates its access tokens
            revoked = await self.oauth.revoke_token(record.refresh_token)
            if not revoked:
                logger.warning(f"Could not revoke Google grant for user {user_id}")

        existed = await self.store.delete(user_id)
        logger.info(f"Google Calendar disconnected for user {user_id}")
        return existed

    async def connection_status(self, user_id: str) -> ConnectionStatus:
        record = await self.store.get(user_id)
        if record is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            linked_email=record.linked_email,
            selected_calendar_ids=record.selected_calendar_ids,
            connected_at=record.connected_at,
        )
