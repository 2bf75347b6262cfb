"""Google authorization for calendar sync.

## OAuth Flow

1. Room UI sends the user to /api/google/auth with their user and room ids
2. Redirect to Google consent screen with a signed state carrying both ids
3. Google redirects back with an authorization code and the same state
4. Verify the state, exchange the code for access and refresh tokens
5. Store the encrypted tokens in the credential store

## Scopes

- https://www.googleapis.com/auth/calendar: Read and write calendar events
- email: Show which Google account is linked

## Security

- All tokens are encrypted at rest
- The OAuth state is a signed JWT with a ten minute lifetime
- HTTPS required in production
"""

from kinloop_calendar.auth.google import GoogleOAuth, GoogleTokens
from kinloop_calendar.auth.state import (
    OAuthState,
    decode_oauth_state,
    encode_oauth_state,
)
from kinloop_calendar.auth.tokens import TokenManager

__all__ = [
    "GoogleOAuth",
    "GoogleTokens",
    "OAuthState",
    "decode_oauth_state",
    "encode_oauth_state",
    "TokenManager",
]
