"""The request as handlers and extractors see it.

Everything known once the head has arrived is a frozen field. The body
is pulled from ASGI ``receive`` the first time someone asks for it,
capped at ``max_body`` bytes, and kept for every later reader: several
extractors, the handler, and an error handler may all read it.
"""

from __future__ import annotations

import json as json_module
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import parse_qsl

from trill._internal.asgi import Receive
from trill.errors import PayloadTooLarge
from trill.http.fields import Headers, QueryParams


@dataclass(frozen=True, slots=True)
class Request:
    """One received HTTP request.

    ``path_params`` is empty until the router has matched; the dispatcher
    then derives a bound copy with ``with_path_params``.
    """

    method: str
    path: str
    headers: Headers
    query: QueryParams
    path_params: dict[str, str]
    http_version: str
    server: tuple[str, int] | None
    client: tuple[str, int] | None

    # Largest body ``body()`` will buffer; ``None`` means unlimited
    max_body: int | None = None

    _receive: Receive | None = field(default=None, repr=False, compare=False)

    # Shared by every copy made with ``with_path_params``
    _cache: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")

    @property
    def content_length(self) -> int | None:
        """Declared body length, or ``None`` when absent or not a number."""
        value = self.headers.get("content-length", "")
        return int(value) if value.isdigit() else None

    async def body(self) -> bytes:
        """The whole request body, read once.

        Raises ``PayloadTooLarge`` as soon as the declared or received
        length passes ``max_body``; nothing past the limit is buffered.
        """
        cached = self._cache.get("body")
        if cached is not None:
            return cached

        limit = self.max_body
        if limit is not None and (self.content_length or 0) > limit:
            raise PayloadTooLarge(limit)

        buffer = bytearray()
        while self._receive is not None:
            message = await self._receive()
            if message["type"] != "http.request":
                # Client went away mid-body; keep what arrived.
                break
            buffer += message.get("body", b"")
            if limit is not None and len(buffer) > limit:
                raise PayloadTooLarge(limit)
            if not message.get("more_body", False):
                break

        body = bytes(buffer)
        self._cache["body"] = body
        return body

    async def json(self) -> Any:
        """Decode the body as JSON. Raises ``ValueError`` when malformed."""
        return json_module.loads(await self.body())

    async def form(self) -> QueryParams:
        """Fields of an ``application/x-www-form-urlencoded`` body.

        Same encoding as a query string, decoded as UTF-8. Raises
        ``UnicodeDecodeError`` for bodies that are not.
        """
        cached = self._cache.get("form")
        if cached is None:
            raw = (await self.body()).decode("utf-8")
            cached = QueryParams(parse_qsl(raw, keep_blank_values=True))
            self._cache["form"] = cached
        return cached

    def with_path_params(self, path_params: dict[str, str]) -> Request:
        """A copy bound to a route's path parameters. The body cache is shared."""
        return replace(self, path_params=path_params)

    @classmethod
    def from_asgi(
        cls,
        scope: dict[str, Any],
        receive: Receive,
        *,
        max_body: int | None = None,
    ) -> Request:
        """Build the request for an ASGI ``http`` scope."""
        server = scope.get("server")
        client = scope.get("client")
        return cls(
            method=scope["method"],
            path=scope["path"],
            headers=Headers.from_raw(scope.get("headers", ())),
            query=QueryParams.parse(scope.get("query_string", b"")),
            path_params={},
            http_version=scope.get("http_version", "1.1"),
            server=tuple(server) if server else None,
            client=tuple(client) if client else None,
            max_body=max_body,
            _receive=receive,
        )
