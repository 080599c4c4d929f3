"""Role mode resolution.

A mode is the set of operations a role may perform on a collection. Roles
declare their mode as a character string (``"admin:*"``, ``"user:rs"``);
internally a mode is a :class:`Permission` flag set so narrowing a mode is
a plain intersection.

Characters:
    c create, r read, s search, u update, d delete,
    b batch update, o clone, i import, e export, * all
"""

from __future__ import annotations

from enum import Flag
from typing import TYPE_CHECKING, Iterable

from metaguard.core.errors import Code, ConfigurationError, EntityError

if TYPE_CHECKING:
    from metaguard.metadata.types import RoleRule


class Permission(Flag):
    NONE = 0
    CREATE = 1
    READ = 2
    SEARCH = 4
    UPDATE = 8
    DELETE = 16
    BATCH = 32
    CLONE = 64
    IMPORT = 128
    EXPORT = 256
    ALL = 511


# Canonical character order, also used when rendering a mode back to a string
MODE_CHARS: dict[str, Permission] = {
    "c": Permission.CREATE,
    "r": Permission.READ,
    "s": Permission.SEARCH,
    "u": Permission.UPDATE,
    "d": Permission.DELETE,
    "b": Permission.BATCH,
    "o": Permission.CLONE,
    "i": Permission.IMPORT,
    "e": Permission.EXPORT,
}

WILDCARD = "*"


def parse_mode(mode: str, *, strict: bool = True) -> Permission:
    """Parse a mode string into a Permission set.

    Args:
        mode: Characters drawn from ``crsudboie`` or ``*``
        strict: Raise on unknown characters (registration). Client supplied
            modes are parsed non-strictly and unknown characters ignored.

    Raises:
        ConfigurationError: On an unknown character when strict
    """
    result = Permission.NONE
    for char in mode or "":
        if char == WILDCARD:
            result |= Permission.ALL
        elif char in MODE_CHARS:
            result |= MODE_CHARS[char]
        elif strict:
            raise ConfigurationError(f"Unknown mode character '{char}' in '{mode}'")
    return result


def mode_string(permission: Permission) -> str:
    """Render a Permission set in canonical ``crsudboie`` order."""
    return "".join(char for char, flag in MODE_CHARS.items() if flag in permission)


def find_role_rule(rules: Iterable["RoleRule"], role: str | None) -> "RoleRule | None":
    if not role:
        return None
    for rule in rules:
        if rule.role == role:
            return rule
    return None


def effective_mode(
    rules: Iterable["RoleRule"],
    role: str | None,
    requested_mode: str | None = None,
) -> Permission:
    """Compute the permissions a role holds, optionally narrowed by the client.

    Unknown roles get no permissions. A requested mode can only remove
    permissions: the result is the intersection of declared and requested.
    """
    rule = find_role_rule(rules, role)
    if rule is None:
        return Permission.NONE

    declared = rule.mode
    if requested_mode is None:
        return declared
    return declared & parse_mode(requested_mode, strict=False)


def require_permission(mode: Permission, needed: Permission) -> None:
    """Raise NO_RIGHTS unless every flag in needed is present in mode."""
    if needed not in mode:
        raise EntityError(Code.NO_RIGHTS, f"No rights to {mode_string(needed) or 'access'}")
