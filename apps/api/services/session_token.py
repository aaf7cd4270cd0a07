"""Signed session tokens carrying the caller's account identity."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings
from services.generation import Identity


SESSION_TOKEN_TYPE = "voice_session"
SESSION_TOKEN_ISSUER = "voice-studio-api"


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    issued_at: int
    expires_at: int
    email: Optional[str] = None
    name: Optional[str] = None

    def to_identity(self) -> Identity:
        return Identity(user_id=self.user_id, email=self.email, name=self.name)


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Issue a session token; email and display name seed the account on first use."""
    subject = str(user_id or "").strip()
    if not subject:
        raise ValueError("A session token needs a user id.")

    now = datetime.now(timezone.utc)
    ttl_hours = max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1)
    expires_at = int((now + timedelta(hours=ttl_hours)).timestamp())
    claims: Dict[str, Any] = {
        "sub": subject,
        "iss": SESSION_TOKEN_ISSUER,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email.strip().lower()
    if name:
        claims["name"] = name.strip()

    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "user_id": subject,
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> SessionClaims:
    """Verify a session token; raises ValueError for anything unusable."""
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            issuer=SESSION_TOKEN_ISSUER,
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    subject = str(payload.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")

    return SessionClaims(
        user_id=subject,
        issued_at=int(payload.get("iat") or 0),
        expires_at=int(payload.get("exp") or 0),
        email=str(payload.get("email") or "").strip() or None,
        name=str(payload.get("name") or "").strip() or None,
    )
