"""Authentication dependencies resolving the caller's identity."""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.errors import Unauthenticated
from services.generation import Identity
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


async def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> Optional[Identity]:
    """Resolve the Bearer session token, or None when absent or invalid."""
    if not credentials or credentials.scheme.lower() != "bearer":
        return None

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError:
        return None

    return claims.to_identity()


async def get_identity(identity: Optional[Identity] = Depends(get_optional_identity)) -> Identity:
    """Require an authenticated caller."""
    if identity is None:
        raise Unauthenticated()
    return identity
