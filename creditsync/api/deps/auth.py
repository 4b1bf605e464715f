"""JWT validation and profile authentication dependencies.

This module provides:
- JWT validation against Supabase JWKS
- Profile lookup (and fallback creation) for the authenticated user
- Admin gate that reads the role from the database
"""

import logging
import time
import uuid as uuid_pkg
from typing import Annotated, Any

import httpx
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.backends import ECKey
from sqlalchemy.ext.asyncio import AsyncSession

from creditsync.config import settings
from creditsync.core.database import get_db
from creditsync.domain import profile_ops
from creditsync.models.profile import Profile
from creditsync.services.container import Services

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Cache for JWKS with TTL to handle key rotation
_jwks_cache: dict[str, Any] = {}
_jwks_cache_timestamp: float = 0.0
_JWKS_CACHE_TTL_SECONDS: float = 3600.0  # 1 hour


async def _fetch_jwks() -> dict[str, Any]:
    """Fetch JWKS from Supabase and update the cache."""
    global _jwks_cache_timestamp
    async with httpx.AsyncClient() as client:
        response = await client.get(settings.supabase_jwks_url)
        response.raise_for_status()
        jwks = response.json()
        _jwks_cache.clear()
        _jwks_cache.update(jwks)
        _jwks_cache_timestamp = time.monotonic()
        return jwks


async def get_jwks(force_refresh: bool = False) -> dict[str, Any]:
    """Fetch and cache JWKS from Supabase with a 1-hour TTL."""
    cache_age = time.monotonic() - _jwks_cache_timestamp
    if _jwks_cache and not force_refresh and cache_age < _JWKS_CACHE_TTL_SECONDS:
        return _jwks_cache

    return await _fetch_jwks()


def get_signing_key(jwks: dict[str, Any], token: str) -> ECKey:
    """Get the signing key from JWKS that matches the token's kid."""
    unverified_header = jwt.get_unverified_header(token)
    kid = unverified_header.get("kid")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return ECKey(key, algorithm="ES256")

    raise ValueError("Unable to find matching key in JWKS")


def _decode(token: str, jwks: dict[str, Any]) -> dict[str, Any]:
    signing_key = get_signing_key(jwks, token)
    return jwt.decode(token, signing_key, algorithms=["ES256"], audience="authenticated")


def _user_id_from_payload(payload: dict[str, Any]) -> uuid_pkg.UUID:
    user_id_str: str | None = payload.get("sub")
    if user_id_str is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
        )
    return uuid_pkg.UUID(user_id_str)


async def get_current_profile(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """
    Validate Supabase JWT and return the caller's profile.

    Creates the profile on first API call if the signup trigger did not.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    token = credentials.credentials

    try:
        payload = _decode(token, await get_jwks())
        user_id = _user_id_from_payload(payload)
    except (JWTError, ValueError) as first_error:
        # Key rotation may have occurred: force a JWKS refresh and retry once
        try:
            logger.info("JWT validation failed with cached JWKS, forcing refresh")
            payload = _decode(token, await get_jwks(force_refresh=True))
            user_id = _user_id_from_payload(payload)
        except (JWTError, ValueError, httpx.HTTPError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
            ) from first_error
    except httpx.HTTPError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from None

    profile = await profile_ops.get(db, user_id)
    if not profile:
        profile = Profile(id=user_id, email=payload.get("email"))
        db.add(profile)
        await db.flush()
        await db.refresh(profile)

    return profile


async def require_admin(
    profile: Profile = Depends(get_current_profile),
) -> Profile:
    """
    Require the caller's profile to have role=admin.

    The role comes from the database row loaded above; role claims or
    headers sent by the client are never consulted.
    """
    if not profile.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return profile


def get_services(request: Request) -> Services:
    """Service graph built at startup (see creditsync.main.lifespan)."""
    return request.app.state.services


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
CurrentProfile = Annotated[Profile, Depends(get_current_profile)]
AdminProfile = Annotated[Profile, Depends(require_admin)]
AppServices = Annotated[Services, Depends(get_services)]
