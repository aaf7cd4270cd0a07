import time

import pytest
from jose import jwt

from config import settings
from services.generation import Identity
from services.session_token import (
    SESSION_TOKEN_ISSUER,
    SESSION_TOKEN_TYPE,
    create_session_token,
    decode_session_token,
)


def _sign(**overrides):
    now = int(time.time())
    claims = {
        "sub": "user-1",
        "iss": SESSION_TOKEN_ISSUER,
        "type": SESSION_TOKEN_TYPE,
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def test_token_carries_account_identity():
    issued = create_session_token("user-1", " Ada@Example.com ", name=" Ada ", expires_hours=2)

    claims = decode_session_token(issued["token"])

    assert issued["user_id"] == "user-1"
    assert claims.expires_at == issued["expires_at"]
    assert claims.expires_at - claims.issued_at == 2 * 3600
    assert claims.to_identity() == Identity(user_id="user-1", email="ada@example.com", name="Ada")


def test_token_without_optional_claims():
    claims = decode_session_token(create_session_token("user-2")["token"])

    assert claims.to_identity() == Identity(user_id="user-2")


def test_blank_user_id_is_refused():
    with pytest.raises(ValueError):
        create_session_token("  ")


@pytest.mark.parametrize(
    "token",
    [
        _sign(type="refresh"),
        _sign(iss="someone-else"),
        _sign(sub=""),
        _sign(exp=int(time.time()) - 60),
        "not-a-token",
    ],
)
def test_unusable_tokens_are_rejected(token):
    with pytest.raises(ValueError):
        decode_session_token(token)


def test_token_signed_with_another_secret_is_rejected():
    forged = jwt.encode(
        {"sub": "user-1", "iss": SESSION_TOKEN_ISSUER, "type": SESSION_TOKEN_TYPE, "exp": int(time.time()) + 60},
        "another-secret",
        algorithm=settings.JWT_ALGORITHM,
    )

    with pytest.raises(ValueError):
        decode_session_token(forged)
