"""Error handling pipeline for trill requests.

Maps HTTPError exceptions and unexpected failures to Response objects,
using registered error handlers or plain-text defaults. Nothing raised
here escapes to the server loop: an error handler that fails, or that
returns something unusable, yields the default 500.
"""

import inspect
import logging
import traceback
from collections.abc import Callable
from typing import Any

from trill._internal.invoke import invoke
from trill.errors import HTTPError
from trill.http.request import Request
from trill.http.response import Response
from trill.server.negotiation import negotiate

logger = logging.getLogger("trill.server")


async def call_error_handler(
    handler: Callable[..., Any],
    request: Request,
    exc: Exception,
) -> Response:
    """Invoke a user-registered error handler with introspected arguments.

    Error handlers may accept zero, one (request), or two (request, exc) args.
    Supports both sync and async error handlers.
    """
    params = list(inspect.signature(handler).parameters.values())

    if len(params) >= 2:
        result = await invoke(handler, request, exc)
    elif len(params) == 1:
        result = await invoke(handler, request)
    else:
        result = await invoke(handler)

    return negotiate(result)


def internal_error_response(exc: BaseException, debug: bool) -> Response:
    """The built-in 500: a traceback in debug mode, a fixed line otherwise."""
    if debug:
        return Response(body="".join(traceback.format_exception(exc)), status=500)
    return Response(body="Internal Server Error", status=500)


async def _render_http_error(
    exc: HTTPError,
    request: Request,
    error_handlers: dict[int | type, Callable[..., Any]],
) -> Response:
    # Try exact exception type, then status code
    handler = error_handlers.get(type(exc)) or error_handlers.get(exc.status)
    if handler is None:
        response = Response(body=exc.detail or f"Error {exc.status}", status=exc.status)
    else:
        response = await call_error_handler(handler, request, exc)
        # Preserve the HTTP status from the exception unless the handler
        # explicitly returned a Response with its own status
        if response.status == 200:
            response = response.with_status(exc.status)
    for name, value in exc.headers:
        response = response.with_header(name, value)
    return response


async def handle_http_error(
    exc: HTTPError,
    request: Request,
    error_handlers: dict[int | type, Callable[..., Any]],
    debug: bool = False,
) -> Response:
    """Map an HTTPError to a Response using registered error handlers."""
    logger.debug("%d %s %s: %s", exc.status, request.method, request.path, exc.detail)
    try:
        return await _render_http_error(exc, request, error_handlers)
    except Exception as failure:
        logger.exception("Error response for %d %s %s failed", exc.status, request.method, request.path)
        return internal_error_response(failure, debug)


async def handle_internal_error(
    exc: Exception,
    request: Request,
    error_handlers: dict[int | type, Callable[..., Any]],
    debug: bool,
) -> Response:
    """Handle unexpected exceptions as 500 errors."""
    logger.exception("500 %s %s", request.method, request.path)

    # An exception-type handler owns the status it returns; a 500
    # handler only supplies the body.
    typed_handler = error_handlers.get(type(exc))
    handler = typed_handler or error_handlers.get(500)
    if handler is not None:
        try:
            response = await call_error_handler(handler, request, exc)
        except Exception:
            logger.exception("Error handler for %s failed", type(exc).__name__)
        else:
            if typed_handler is None and response.status == 200:
                response = response.with_status(500)
            return response

    return internal_error_response(exc, debug)
