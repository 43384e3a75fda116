"""Responses as values.

A ``Response`` is a frozen record of status, content type, headers and
body. Handlers build one directly or return a plain value that the
resolver turns into one; ``.with_*()`` calls derive changed copies.

Every copy is checked on construction: header names must be tokens, and
values must be latin-1 text without line breaks. A bad header therefore
fails inside the handler that built it, where the 500 path handles it,
instead of while bytes are being written to a client.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from urllib.parse import quote

_TOKEN = frozenset("!#$%&'*+-.^_`|~0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")

# Characters left alone when percent-encoding a redirect target
_URL_SAFE = ":/%#?=@[]!$&'()*+,;"


def check_header(name: str, value: str) -> None:
    """Raise ``ValueError`` unless *name*/*value* can be written as a header line."""
    if not isinstance(name, str) or not isinstance(value, str):
        msg = f"Header {name!r} must be a str pair, got {type(value).__name__} value"
        raise TypeError(msg)
    if not name or not set(name) <= _TOKEN:
        msg = f"Invalid header name {name!r}"
        raise ValueError(msg)
    if "\r" in value or "\n" in value:
        msg = f"Header {name!r} value contains a line break"
        raise ValueError(msg)
    try:
        value.encode("latin-1")
    except UnicodeEncodeError:
        msg = f"Header {name!r} value {value!r} is not latin-1"
        raise ValueError(msg) from None


@dataclass(frozen=True, slots=True)
class Response:
    """A complete HTTP response.

    ::

        Response("Created").with_status(201).with_header("X-Id", "7")

    ``content_type`` and ``content-length`` are written by the server;
    ``headers`` holds everything else, repeats allowed, in order.
    """

    body: str | bytes = ""
    status: int = 200
    content_type: str = "text/plain; charset=utf-8"
    headers: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.body, (str, bytes)):
            msg = f"Response body must be str or bytes, not {type(self.body).__name__}"
            raise TypeError(msg)
        check_header("Content-Type", self.content_type)
        for name, value in self.headers:
            check_header(name, value)

    def with_status(self, status: int) -> Response:
        return replace(self, status=status)

    def with_header(self, name: str, value: str) -> Response:
        """Append one header. Earlier values for *name* are kept."""
        return replace(self, headers=(*self.headers, (name, value)))

    def with_headers(self, headers: Mapping[str, str]) -> Response:
        return replace(self, headers=(*self.headers, *headers.items()))

    def with_content_type(self, content_type: str) -> Response:
        return replace(self, content_type=content_type)

    def header(self, name: str, default: str | None = None) -> str | None:
        """First value of header *name* (case-insensitive)."""
        lowered = name.lower()
        return next((v for k, v in self.headers if k.lower() == lowered), default)

    @property
    def body_bytes(self) -> bytes:
        """Body as sent: ``str`` bodies are UTF-8 encoded."""
        return self.body.encode("utf-8") if isinstance(self.body, str) else self.body

    @property
    def text(self) -> str:
        return self.body.decode("utf-8") if isinstance(self.body, bytes) else self.body

    def encode_headers(self, content_length: int) -> list[tuple[bytes, bytes]]:
        """Wire header pairs: content type, user headers, then content length."""
        raw = [(b"content-type", self.content_type.encode("latin-1"))]
        raw.extend(
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in self.headers
        )
        raw.append((b"content-length", str(content_length).encode("latin-1")))
        return raw


@dataclass(frozen=True, slots=True)
class Redirect:
    """Return value meaning "go to *url*".

    Non-ASCII characters in *url* are percent-encoded into ``location``;
    existing escapes and URL delimiters are left alone.
    """

    url: str
    status: int = 302
    headers: tuple[tuple[str, str], ...] = ()

    @property
    def location(self) -> str:
        return quote(self.url, safe=_URL_SAFE)
