"""JWT bearer token verification.

Tokens are issued by an external identity provider; this service only
verifies them and reads the caller's identity from the claims.
"""

import jwt

from metaguard.auth.types import TokenClaims


class JWTError(Exception):
    """Base exception for JWT-related errors."""

    pass


class TokenExpiredError(JWTError):
    """Raised when a token has expired."""

    pass


class InvalidTokenError(JWTError):
    """Raised when a token is invalid or malformed."""

    pass


class JWTService:
    """Service for validating JWT tokens.

    Uses HS256 algorithm with a shared secret key.
    """

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        """Initialize the JWT service.

        Args:
            secret_key: Secret key shared with the token issuer
            algorithm: JWT algorithm (default HS256)
        """
        self._secret_key = secret_key
        self._algorithm = algorithm

    def decode_token(self, token: str) -> TokenClaims:
        """Decode and validate a JWT token.

        Args:
            token: The JWT token string

        Returns:
            TokenClaims with the decoded claims

        Raises:
            TokenExpiredError: If the token has expired
            InvalidTokenError: If the token is invalid, malformed or has no subject
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}")

        subject = payload.get("sub")
        if not subject:
            raise InvalidTokenError("Token has no subject")

        return TokenClaims(
            subject=str(subject),
            role=payload.get("role"),
            name=payload.get("name"),
            exp=payload.get("exp", 0),
            iat=payload.get("iat", 0),
        )
