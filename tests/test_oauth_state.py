"""Tests for the signed OAuth state parameter."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from kinloop_calendar.auth.state import (
    ALGORITHM,
    TOKEN_TYPE,
    decode_oauth_state,
    encode_oauth_state,
)
from kinloop_calendar.config import get_settings
from kinloop_calendar.errors import InvalidOAuthState


def test_round_trip_with_room():
    state = decode_oauth_state(encode_oauth_state("user-1", "room-1"))

    assert state.user_id == "user-1"
    assert state.room_id == "room-1"


def test_round_trip_without_room():
    state = decode_oauth_state(encode_oauth_state("user-1"))

    assert state.user_id == "user-1"
    assert state.room_id is None


def test_expired_state():
    token = encode_oauth_state("user-1", expires_delta=timedelta(seconds=-5))

    with pytest.raises(InvalidOAuthState):
        decode_oauth_state(token)


def test_tampered_state():
    token = encode_oauth_state("user-1", "room-1")
    header, payload, signature = token.split(".")
    forged = jwt.encode(
        {"sub": "attacker", "type": TOKEN_TYPE}, "x" * 32, algorithm=ALGORITHM
    ).split(".")[1]

    with pytest.raises(InvalidOAuthState):
        decode_oauth_state(f"{header}.{forged}.{signature}")


def test_other_token_types_are_rejected():
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {
            "sub": "user-1",
            "type": "session",
            "exp": int((now + timedelta(minutes=5)).timestamp()),
        },
        get_settings().secret_key,
        algorithm=ALGORITHM,
    )

    with pytest.raises(InvalidOAuthState):
        decode_oauth_state(token)


def test_garbage():
    with pytest.raises(InvalidOAuthState):
        decode_oauth_state("not-a-jwt")
