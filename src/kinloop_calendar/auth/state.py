"""Signed OAuth state parameter.

The consent redirect has to come back to the right user and room. Both ids
travel through Google inside the `state` parameter as a short-lived JWT
signed with the application secret, so the callback can trust them.

## Token Structure

```json
{
  "sub": "user-id",
  "room": "room-id",
  "iat": 1234567890,
  "exp": 1234568490,
  "type": "gcal_oauth_state"
}
```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from kinloop_calendar.config import get_settings
from kinloop_calendar.errors import InvalidOAuthState

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "gcal_oauth_state"


@dataclass
class OAuthState:
    """Ids recovered from the OAuth callback."""

    user_id: str
    room_id: str | None = None


def encode_oauth_state(
    user_id: str,
    room_id: str | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Create the signed state for the consent redirect."""
    settings = get_settings()

    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(seconds=settings.oauth_state_max_age_seconds)

    payload = {
        "sub": user_id,
        "room": room_id or "",
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "type": TOKEN_TYPE,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_oauth_state(state: str) -> OAuthState:
    """Verify the state returned by Google.

    Raises:
        InvalidOAuthState: If the signature, expiry or payload is wrong
    """
    settings = get_settings()

    try:
        payload = jwt.decode(state, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.debug(f"OAuth state verification failed: {e}")
        raise InvalidOAuthState("Invalid or expired OAuth state") from e

    if payload.get("type") != TOKEN_TYPE or not payload.get("sub"):
        raise InvalidOAuthState("OAuth state has an unexpected payload")

    return OAuthState(user_id=payload["sub"], room_id=payload.get("room") or None)
