"""Request handler — translates ASGI scope/messages to trill types.

Runs one request through Matcher -> Extractor pipeline -> Dispatcher ->
Resolver and sends exactly one Response back through ASGI send().
Every failure becomes a response here; nothing propagates to the server.
"""

from collections.abc import Callable
from contextvars import Token
from typing import Any

from trill._internal.asgi import Receive, Scope, Send
from trill._internal.invoke import invoke
from trill.context import request_var
from trill.errors import HTTPError
from trill.extraction import run_plan
from trill.http.request import Request
from trill.http.response import Response
from trill.routing.route import RouteMatch
from trill.routing.router import Router
from trill.server.errors import handle_http_error, handle_internal_error
from trill.server.negotiation import negotiate
from trill.server.sender import send_response


async def handle_request(
    scope: Scope,
    receive: Receive,
    send: Send,
    *,
    router: Router,
    error_handlers: dict[int | type, Callable[..., Any]],
    debug: bool,
    max_body: int | None = None,
) -> None:
    """Process a single HTTP request through the full pipeline."""
    if scope["type"] != "http":
        return

    request = Request.from_asgi(scope, receive, max_body=max_body)

    # Set request context var (reset after dispatch)
    token: Token[Request] = request_var.set(request)

    try:
        match = router.match(request.method, request.path)
        response = await dispatch(match, request)
    except HTTPError as exc:
        response = await handle_http_error(exc, request, error_handlers, debug)
    except Exception as exc:
        response = await handle_internal_error(exc, request, error_handlers, debug)
    finally:
        request_var.reset(token)

    await send_response(response, send)


async def dispatch(match: RouteMatch, request: Request) -> Response:
    """Call the matched route handler with its extracted arguments.

    The request is rebound to the route's path params, the route's
    extractor plan builds the keyword arguments, the handler runs (sync
    or async), and its return value is resolved into a Response.
    Extraction errors propagate before the handler is invoked.
    """
    request = request.with_path_params(match.path_params)
    request_var.set(request)

    kwargs = await run_plan(match.route.extractors, request)
    result = await invoke(match.route.handler, **kwargs)
    return negotiate(result)
