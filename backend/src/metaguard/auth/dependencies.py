"""FastAPI dependencies for caller identity and mode."""

from fastapi import Request

from metaguard.auth.middleware import get_identity
from metaguard.auth.types import Identity

MODE_HEADER = "X-Mode"


def get_current_identity(request: Request) -> Identity | None:
    """Dependency to get the current caller.

    This is a soft dependency: it returns None when unauthenticated and the
    entity service decides whether that is acceptable.
    """
    return get_identity(request)


def get_client_mode(request: Request) -> str | None:
    """Dependency for the client's requested mode narrowing, from the X-Mode header."""
    return request.headers.get(MODE_HEADER) or None
