"""Content negotiation — maps return values to Response objects.

``negotiate`` inspects the return value of a route handler and produces
the matching Response. isinstance-based dispatch, no magic, fully
predictable, and total: every value either resolves or raises.
"""

import json as json_module
from typing import Any

from trill.either import Left, Right
from trill.http.response import Redirect, Response


def negotiate(value: Any) -> Response:
    """Convert a route handler's return value to a Response.

    Dispatch order:

    1. ``Response``            -> pass through
    2. ``Redirect``            -> 3xx with Location header
    3. ``Left`` / ``Right``    -> negotiate the chosen branch on its own
    4. ``Exception``           -> raised, handled like a raised error
    5. ``str``                 -> 200, text/plain
    6. ``bytes``               -> 200, application/octet-stream
    7. ``dict`` / ``list``     -> 200, application/json
    8. ``None``                -> 204, empty
    9. ``(value, int)``        -> negotiate value, override status
    10. ``(value, int, dict)`` -> negotiate value, override status + headers
    """
    match value:
        case Response():
            return value
        case Redirect():
            return (
                Response(body="")
                .with_status(value.status)
                .with_header("Location", value.location)
                .with_headers(dict(value.headers))
            )
        case Left(inner) | Right(inner):
            return negotiate(inner)
        case Exception():
            raise value
        case str():
            return Response(body=value)
        case bytes():
            return Response(body=value, content_type="application/octet-stream")
        case dict() | list():
            return Response(
                body=json_module.dumps(value, default=str),
                content_type="application/json",
            )
        case None:
            return Response(body="", status=204)
        case (inner, int() as status):
            return negotiate(inner).with_status(status)
        case (inner, int() as status, dict() as headers):
            return negotiate(inner).with_status(status).with_headers(headers)
        case _:
            msg = (
                f"Cannot convert {type(value).__name__} to a response. "
                f"Return str, bytes, dict, list, None, Response, Redirect, "
                f"Left/Right, or a (value, status[, headers]) tuple."
            )
            raise TypeError(msg)
