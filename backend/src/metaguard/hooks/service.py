"""Hook execution service for MetaGuard.

Runs one lifecycle stage of a collection's hooks, converting hook
failures into response codes for before-stages and logging them for
after-stages.
"""

import inspect
import logging
from typing import Any

from metaguard.core.errors import Code, EntityError
from metaguard.hooks.types import HookFn, HookResult, HookSet, ListQueryContext

logger = logging.getLogger(__name__)


async def _invoke(hook_fn: HookFn, context: Any) -> Any:
    result = hook_fn(context)
    if inspect.isawaitable(result):
        result = await result
    return result


class HookService:
    """Orchestrates hook execution for entity lifecycle events."""

    async def run_before(self, point: str, hooks: HookSet, context: Any) -> HookResult | None:
        """Run a before-stage hook.

        Returns:
            None when the hook is absent or succeeded, otherwise a HookResult
            whose abort message and code describe the failure. A successful
            HookResult.update is merged into context.payload.
        """
        hook_fn = hooks.get(point)
        if hook_fn is None:
            return None

        try:
            result = await _invoke(hook_fn, context)
        except EntityError as e:
            return HookResult(abort=e.message or e.code.value, code=e.code)
        except Exception:
            logger.exception("%s hook for '%s' failed", point, context.collection)
            return HookResult(abort="Internal error", code=Code.ERROR)

        if not isinstance(result, HookResult):
            return None
        if result.abort:
            return result
        if result.update:
            if not hasattr(context, "payload"):
                logger.warning("%s hook for '%s' returned an update; ignored", point, context.collection)
            else:
                context.payload.update(result.update)
        return None

    async def run_after(self, point: str, hooks: HookSet, context: Any) -> None:
        """Run an after-stage hook.

        The mutation is already stored at this point, so failures are
        logged and never change the response.
        """
        hook_fn = hooks.get(point)
        if hook_fn is None:
            return

        try:
            result = await _invoke(hook_fn, context)
        except Exception:
            logger.exception("%s hook for '%s' failed", point, context.collection)
            return

        if isinstance(result, HookResult) and result.abort:
            logger.warning(
                "%s hook for '%s' reported '%s' after the write was stored",
                point,
                context.collection,
                result.abort,
            )

    async def run_list_query(self, hooks: HookSet, context: ListQueryContext) -> dict[str, Any]:
        """Run the list_query hook and return the server-enforced filter.

        Raises:
            EntityError: If the hook fails or returns something other than a dict
        """
        hook_fn = hooks.list_query
        if hook_fn is None:
            return {}

        try:
            result = await _invoke(hook_fn, context)
        except EntityError:
            raise
        except Exception as e:
            logger.exception("list_query hook for '%s' failed", context.collection)
            raise EntityError(Code.ERROR, "Internal error") from e

        if result is None:
            return {}
        if not isinstance(result, dict):
            logger.error(
                "list_query hook for '%s' returned %s, expected dict",
                context.collection,
                type(result).__name__,
            )
            raise EntityError(Code.ERROR, "Internal error")
        return result
