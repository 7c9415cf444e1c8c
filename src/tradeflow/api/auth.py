"""Service-to-service bearer tokens (HS256 JWT)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

ALGORITHM = "HS256"
SERVICE_SUBJECT = "tradeflow-service"


def create_token(secret: str, expiry_minutes: int) -> str:
    """Create a signed JWT with an expiration claim."""
    exp = datetime.now(timezone.utc) + timedelta(minutes=expiry_minutes)
    return jwt.encode({"sub": SERVICE_SUBJECT, "exp": exp}, secret, algorithm=ALGORITHM)


def verify_token(token: str, secret: str) -> bool:
    """Return True if the token is valid, unexpired and issued for this service."""
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except JWTError:
        return False
    return claims.get("sub") == SERVICE_SUBJECT


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
