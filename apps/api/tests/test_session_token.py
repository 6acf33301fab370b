from dataclasses import fields

import pytest
from jose import jwt

from config import settings
from services.session_token import SESSION_TOKEN_TYPE, SessionClaims, create_session_token, decode_session_token


def test_session_token_round_trip_carries_owner_identity():
    issued = create_session_token("user-1", email="user-1@example.com", expires_hours=2)

    claims = decode_session_token(issued["token"])

    assert claims == SessionClaims(user_id="user-1", email="user-1@example.com")
    assert [field.name for field in fields(SessionClaims)] == ["user_id", "email"]
    assert issued["expires_at"] > 0


def test_session_token_rejects_wrong_type_and_missing_subject():
    wrong_type = jwt.encode({"sub": "user-1", "type": "refresh"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    no_subject = jwt.encode({"type": SESSION_TOKEN_TYPE}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(ValueError, match="type"):
        decode_session_token(wrong_type)
    with pytest.raises(ValueError, match="subject"):
        decode_session_token(no_subject)
    with pytest.raises(ValueError, match="Invalid session token"):
        decode_session_token("not-a-token")
