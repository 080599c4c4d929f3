"""Authentication and authorization module for MetaGuard."""

from metaguard.auth.dependencies import MODE_HEADER, get_client_mode, get_current_identity
from metaguard.auth.jwt_service import (
    InvalidTokenError,
    JWTError,
    JWTService,
    TokenExpiredError,
)
from metaguard.auth.middleware import AuthMiddleware, get_identity, get_token_claims
from metaguard.auth.modes import (
    Permission,
    effective_mode,
    mode_string,
    parse_mode,
    require_permission,
)
from metaguard.auth.password import PasswordService
from metaguard.auth.types import Identity, TokenClaims

__all__ = [
    "AuthMiddleware",
    "Identity",
    "InvalidTokenError",
    "JWTError",
    "JWTService",
    "MODE_HEADER",
    "PasswordService",
    "Permission",
    "TokenClaims",
    "TokenExpiredError",
    "effective_mode",
    "get_client_mode",
    "get_current_identity",
    "get_identity",
    "get_token_claims",
    "mode_string",
    "parse_mode",
    "require_permission",
]
