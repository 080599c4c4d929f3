"""Hook registry for MetaGuard.

Collections declared in YAML reference hooks by name; the names resolve
through this registry when the collection is registered.
"""

from collections.abc import Callable

from metaguard.hooks.types import HookFn


class HookRegistry:
    """Registry for named hook implementations.

    Hooks must be registered before a collection that references them is
    registered. Registration normally happens at import time through the
    @hook decorator.

    Example:
        @hook("generateOrderNo")
        async def generate_order_no(ctx: CreateContext) -> None:
            ctx.payload["orderNo"] = ...
    """

    _hooks: dict[str, HookFn] = {}

    @classmethod
    def register(cls, name: str, hook_fn: HookFn) -> None:
        """Register a hook function by name.

        Idempotent: re-registering the same name is a no-op.
        """
        if name in cls._hooks:
            return
        cls._hooks[name] = hook_fn

    @classmethod
    def get(cls, name: str) -> HookFn:
        """Get a registered hook function by name.

        Raises:
            ValueError: If hook is not registered
        """
        if name not in cls._hooks:
            raise ValueError(
                f"Hook '{name}' is not registered. "
                "Hooks must be registered before the collection that uses them."
            )
        return cls._hooks[name]

    @classmethod
    def is_registered(cls, name: str) -> bool:
        return name in cls._hooks

    @classmethod
    def list_registered(cls) -> list[str]:
        return sorted(cls._hooks.keys())

    @classmethod
    def clear(cls) -> None:
        """Clear all registrations. Primarily for testing."""
        cls._hooks.clear()


def hook(name: str) -> Callable[[HookFn], HookFn]:
    """Decorator to register a hook function.

    Usage:
        @hook("recountRatings")
        async def recount_ratings(ctx: CreateContext) -> None:
            ...
    """

    def decorator(fn: HookFn) -> HookFn:
        HookRegistry.register(name, fn)
        return fn

    return decorator
