"""Bearer session tokens and the dependency shared by the acquisition routers."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "vas_session"
# Tokens minted for other services sharing JWT_SECRET are refused.
SESSION_TOKEN_AUDIENCE = "video-acquisition-api"

auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    subject: str
    email: Optional[str] = None


def create_session_token(
    subject: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> Dict[str, Any]:
    """Sign a session token for ``subject`` and return it with its expiry."""
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims: Dict[str, Any] = {
        "sub": subject,
        "aud": SESSION_TOKEN_AUDIENCE,
        "type": SESSION_TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if email:
        claims["email"] = email
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": int(expires_at.timestamp()),
    }


def decode_session_token(token: str) -> AuthContext:
    """Verify a session token and return the caller it names.

    Raises ValueError with a caller-facing message on any failure.
    """
    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=SESSION_TOKEN_AUDIENCE,
            options={"require_aud": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(claims.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    subject = str(claims.get("sub", "")).strip()
    if not subject:
        raise ValueError("Session token missing subject.")
    return AuthContext(subject=subject, email=str(claims.get("email", "")) or None)


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the caller from a Bearer session token or reject with 401."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        return decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
