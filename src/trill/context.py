"""Request-scoped context via ContextVar.

``request_var`` holds the ``Request`` being served by the current task.
The handler pipeline sets it before dispatch and resets it afterwards,
so code deep inside a handler can reach the request without threading
it through every call.

Thread safety:
    ``ContextVar`` is task-local under asyncio and every worker runs its
    own event loop, so no locks are needed.
"""

from contextvars import ContextVar

from trill.http.request import Request

request_var: ContextVar[Request] = ContextVar("trill_request")
"""The current request. Set by the request handler before dispatch."""


def get_request() -> Request:
    """Return the current request.

    Raises ``LookupError`` if called outside a request context.
    """
    return request_var.get()
