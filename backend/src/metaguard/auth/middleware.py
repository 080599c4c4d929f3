"""Authentication middleware for FastAPI."""

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from metaguard.auth.jwt_service import JWTError, JWTService
from metaguard.auth.types import Identity, TokenClaims

logger = logging.getLogger(__name__)


class AuthMiddleware(BaseHTTPMiddleware):
    """Middleware that extracts a JWT from the Authorization header.

    The middleware:
    1. Extracts the Bearer token from the Authorization header
    2. Decodes and validates the JWT
    3. Sets request.state.identity from the claims
    4. Sets request.state.token_claims for additional info

    If no token is present or the token is invalid, identity is left None.
    The middleware does NOT reject unauthenticated requests; the entity
    service answers those with NO_SESSION.

    With jwt_service None (auth disabled) every request gets
    default_identity.
    """

    def __init__(
        self,
        app,
        jwt_service: JWTService | None,
        default_identity: Identity | None = None,
    ):
        super().__init__(app)
        self._jwt_service = jwt_service
        self._default_identity = default_identity

    async def dispatch(self, request: Request, call_next) -> Response:
        """Process the request and extract authentication info."""
        request.state.identity = None
        request.state.token_claims = None

        if self._jwt_service is None:
            request.state.identity = self._default_identity
            return await call_next(request)

        if self._should_skip_auth(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header[7:]
            try:
                claims = self._jwt_service.decode_token(token)
                request.state.token_claims = claims
                request.state.identity = claims.to_identity()
            except JWTError as e:
                logger.debug("Rejected bearer token: %s", e)

        return await call_next(request)

    def _should_skip_auth(self, path: str) -> bool:
        skip_paths = ["/docs", "/openapi.json", "/redoc", "/health"]
        return any(path.startswith(p) for p in skip_paths)


def get_identity(request: Request) -> Identity | None:
    """Get the caller's identity from the request state."""
    return getattr(request.state, "identity", None)


def get_token_claims(request: Request) -> TokenClaims | None:
    """Get the token claims from the request state."""
    return getattr(request.state, "token_claims", None)
