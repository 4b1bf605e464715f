"""API dependencies - re-exports from submodules."""

from .auth import (
    AdminProfile,
    AppServices,
    CurrentProfile,
    DbSession,
    get_current_profile,
    get_jwks,
    get_services,
    get_signing_key,
    require_admin,
    security,
)

__all__ = [
    "security",
    "get_jwks",
    "get_signing_key",
    "get_current_profile",
    "require_admin",
    "get_services",
    "DbSession",
    "CurrentProfile",
    "AdminProfile",
    "AppServices",
]
