"""Invoke helpers — call sync or async callables uniformly.

Handlers and lifecycle hooks can be ``def`` or ``async def``. The
sync/async check lives here and nowhere else::

    result = await invoke(handler, **kwargs)
    await run_hooks(app_startup_hooks)
"""

import inspect
from collections.abc import Iterable
from typing import Any

from trill._internal.types import Hook


async def invoke(handler: Any, *args: Any, **kwargs: Any) -> Any:
    """Call *handler* and await the result if it is awaitable."""
    result = handler(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


async def run_hooks(hooks: Iterable[Hook]) -> None:
    """Run zero-argument hooks in registration order.

    The first failing hook stops the sequence; its exception propagates.
    """
    for hook in hooks:
        await invoke(hook)
