"""
Admissions Workflow - Authentication Utilities
JWT decoding and the current-actor dependency.

Tokens are issued by the identity service; this module only validates them
and turns the claims into an Actor.
"""
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from .config import JWT_SECRET_KEY, JWT_ALGORITHM
from .models.workflow_objects import Actor

ACCESS_TOKEN_EXPIRE_HOURS = 24

# Bearer token security
security = HTTPBearer()


def create_access_token(
    user_id: str,
    roles: Iterable[str] = (),
    permissions: Iterable[str] = (),
    expires_in: timedelta = timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS),
) -> str:
    """Create a signed token. Used by seed scripts and tests."""
    expire = datetime.now(timezone.utc) + expires_in
    to_encode = {
        "sub": user_id,
        "roles": sorted(roles),
        "permissions": sorted(permissions),
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token. Expired or tampered tokens give None."""
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None


def actor_from_claims(payload: dict) -> Actor:
    roles = set(payload.get("roles") or [])
    # Single-role tokens carry "role" instead of "roles"
    if payload.get("role"):
        roles.add(payload["role"])
    return Actor(
        id=payload["sub"],
        roles=frozenset(roles),
        permissions=frozenset(payload.get("permissions") or []),
    )


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Dependency to get the authenticated actor.
    Validates the JWT; role and permission checks happen in the services.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise credentials_exception

    return actor_from_claims(payload)
