"""Type definitions for caller identity."""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Identity:
    """An already-authenticated caller.

    Attributes:
        subject: The caller's id, written into a collection's user_field
        role: Role label matched against a collection's role rules
        name: Optional display name
    """

    subject: str
    role: str | None = None
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"subject": self.subject, "role": self.role, "name": self.name}


@dataclass
class TokenClaims:
    """Claims read from a verified bearer token.

    Attributes:
        subject: The "sub" claim
        role: The caller's role label
        name: Display name, if present
        exp: Token expiration timestamp
        iat: Token issued-at timestamp
    """

    subject: str
    role: str | None = None
    name: str | None = None
    exp: int = 0
    iat: int = 0

    def to_identity(self) -> Identity:
        return Identity(subject=self.subject, role=self.role, name=self.name)
