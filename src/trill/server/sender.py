"""ASGI response sending — translates trill Response objects to ASGI messages."""

import logging

from trill._internal.asgi import Message, Send
from trill.http.response import Response

logger = logging.getLogger("trill.server")


def _body_allowed(status: int) -> bool:
    """Whether an HTTP status code permits a response body."""
    # RFC: 1xx, 204, and 304 responses do not include a message body.
    return not (100 <= status < 200 or status in {204, 304})


def response_messages(response: Response) -> tuple[Message, Message]:
    """The ``http.response.start`` and ``http.response.body`` pair for *response*."""
    body = response.body_bytes if _body_allowed(response.status) else b""
    start: Message = {
        "type": "http.response.start",
        "status": response.status,
        "headers": response.encode_headers(len(body)),
    }
    return start, {"type": "http.response.body", "body": body}


async def send_response(response: Response, send: Send) -> None:
    """Translate a trill Response into ASGI send() calls.

    Both messages are built before the first is sent, so a response that
    cannot be encoded is replaced by a plain 500 rather than left half
    written.
    """
    try:
        messages = response_messages(response)
    except Exception:
        logger.exception("Cannot encode %d response", response.status)
        messages = response_messages(Response(body="Internal Server Error", status=500))

    for message in messages:
        await send(message)
