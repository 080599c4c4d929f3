"""Password hashing for `password` typed fields."""

from passlib.context import CryptContext


class PasswordService:
    """Hashes and verifies passwords with passlib.

    pbkdf2_sha256 keeps hashing in pure Python so no native backend is
    needed on the host.
    """

    def __init__(self, rounds: int = 29000):
        self._context = CryptContext(
            schemes=["pbkdf2_sha256"],
            deprecated="auto",
            pbkdf2_sha256__rounds=rounds,
        )

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, hash: str) -> bool:
        """Verify a password against a stored hash.

        Returns False instead of raising for malformed hashes.
        """
        try:
            return self._context.verify(password, hash)
        except (ValueError, TypeError):
            return False

    def is_hash(self, value: str) -> bool:
        """Check whether a value is already a hash this service produced."""
        return self._context.identify(value) is not None
