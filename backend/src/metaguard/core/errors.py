"""Response codes and exceptions shared across MetaGuard."""

from enum import Enum
from typing import Any


class Code(str, Enum):
    """Response codes carried in every envelope."""

    SUCCESS = "SUCCESS"
    NO_SESSION = "NO_SESSION"
    NO_RIGHTS = "NO_RIGHTS"
    NO_PARAMS = "NO_PARAMS"
    NOT_FOUND = "NOT_FOUND"
    INVALID_PARAMS = "INVALID_PARAMS"
    DUPLICATE_UNIQUE = "DUPLICATE_UNIQUE"
    REF_NOT_FOUND = "REF_NOT_FOUND"
    REF_NOT_UNIQUE = "REF_NOT_UNIQUE"
    HAS_REF = "HAS_REF"
    ERROR = "ERROR"


class ConfigurationError(ValueError):
    """Raised at registration time for an invalid collection definition."""


class EntityError(Exception):
    """A request failure that maps onto a response code.

    Attributes:
        code: The response code for the envelope
        message: Client-facing message
    """

    def __init__(self, code: Code, message: str = ""):
        super().__init__(message or code.value)
        self.code = code
        self.message = message

    def to_response(self) -> dict[str, Any]:
        return error_response(self.code, self.message)


def ok(data: Any = None, total: int | None = None) -> dict[str, Any]:
    """Build a SUCCESS envelope."""
    result: dict[str, Any] = {"code": Code.SUCCESS}
    if total is not None:
        result["total"] = total
    if data is not None:
        result["data"] = data
    return result


def error_response(code: Code, message: str = "") -> dict[str, Any]:
    """Build a failure envelope."""
    result: dict[str, Any] = {"code": code}
    if message:
        result["err"] = message
    return result
