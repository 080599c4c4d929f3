"""MetaGuard entity lifecycle hook system.

Provides extension points that run at fixed points of an entity operation:
- list_query: Returns a server-enforced filter for list/reference queries
- before_create / before_clone / before_update: After field filtering and
  defaults, before the write (can modify the payload, can abort)
- after_create / after_clone / after_update: After the write (side effects)
- before_delete / after_delete: Around a delete, sharing one DeleteContext

Usage:
    from metaguard.hooks import hook, CreateContext

    @hook("generateOrderNo")
    async def generate_order_no(ctx: CreateContext) -> None:
        ctx.payload["orderNo"] = make_order_no()
"""

import importlib
import logging
from collections.abc import Iterable

from metaguard.hooks.registry import HookRegistry, hook
from metaguard.hooks.service import HookService
from metaguard.hooks.types import (
    HOOK_POINTS,
    CloneContext,
    CreateContext,
    DeleteContext,
    HookFn,
    HookResult,
    HookSet,
    ListQueryContext,
    UpdateContext,
    compute_changes,
)

logger = logging.getLogger(__name__)


def register_builtin_hooks(modules: Iterable[str] = ()) -> None:
    """Import the modules that register hooks and value types.

    Called at application startup, before collections register. Importing
    a module runs its @hook decorators.
    """
    for module in modules:
        importlib.import_module(module)
        logger.debug("Loaded hook module %s", module)


__all__ = [
    "CloneContext",
    "CreateContext",
    "DeleteContext",
    "HOOK_POINTS",
    "HookFn",
    "HookRegistry",
    "HookResult",
    "HookService",
    "HookSet",
    "ListQueryContext",
    "UpdateContext",
    "compute_changes",
    "hook",
    "register_builtin_hooks",
]
