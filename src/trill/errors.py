"""Trill exception hierarchy.

Shared across Router, App, extractors, handler and server so every module
raises and catches the same types.

Two families:

- ``StartupError`` -- fatal, raised before the server accepts a connection.
- ``HTTPError`` -- recovered per request and turned into an error response.
"""

from dataclasses import dataclass


class TrillError(Exception):
    """Base for all trill-specific errors."""


class StartupError(TrillError):
    """Raised when the app or server cannot start.

    Never raised while serving: the server loop only sees ``HTTPError``
    and ordinary handler exceptions.
    """


class ConfigurationError(StartupError):
    """Raised when app configuration is invalid.

    Typically caught during ``App._freeze()`` at startup.
    """


class RouteConflict(ConfigurationError):  # noqa: N818
    """Two routes claim the same method and pattern, or are ambiguous."""


class BindError(StartupError):
    """The listening socket could not be bound (address in use, permission denied)."""

    def __init__(self, host: str, port: int, reason: str) -> None:
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Cannot bind {host}:{port}: {reason}")


@dataclass(frozen=True, slots=True)
class HTTPError(TrillError):
    """An error that maps directly to an HTTP status code.

    Raised by the router, extractors, or handlers. The request pipeline
    catches these and dispatches to the matching ``@app.error()`` handler.
    """

    status: int
    detail: str = ""
    headers: tuple[tuple[str, str], ...] = ()

    def __str__(self) -> str:
        if self.detail:
            return f"{self.status}: {self.detail}"
        return str(self.status)


class NotFound(HTTPError):  # noqa: N818 — conventional name in web frameworks
    """404 — no route matched the request path."""

    def __init__(self, detail: str = "Not Found") -> None:
        super().__init__(status=404, detail=detail)


class MethodNotAllowed(HTTPError):  # noqa: N818 — conventional name in web frameworks
    """405 — route exists but not for this HTTP method.

    Includes an ``Allow`` header listing the valid methods and embeds
    the allowed methods in the detail string for developer visibility.
    """

    def __init__(self, allowed: frozenset[str], detail: str = "") -> None:
        allow_value = ", ".join(sorted(allowed))
        default_detail = f"Method not allowed. Allowed methods: {allow_value}"
        super().__init__(
            status=405,
            detail=detail or default_detail,
            headers=(("Allow", allow_value),),
        )


class ExtractionError(HTTPError):
    """400 — a handler argument could not be built from the request."""

    def __init__(self, detail: str = "Bad Request") -> None:
        super().__init__(status=400, detail=detail)


class PayloadTooLarge(HTTPError):  # noqa: N818
    """413 — request body exceeds ``AppConfig.max_content_length``."""

    def __init__(self, limit: int) -> None:
        super().__init__(status=413, detail=f"Request body exceeds {limit} bytes")


class ServiceUnavailable(HTTPError):  # noqa: N818
    """503 — the server is shutting down and no longer takes requests."""

    def __init__(self, detail: str = "Server is shutting down") -> None:
        super().__init__(status=503, detail=detail, headers=(("Connection", "close"),))
