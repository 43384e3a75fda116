"""Route patterns and the values the router hands back.

A pattern is a ``/``-separated path whose segments are literals or
``{name}`` / ``{name:converter}`` parameters. ``parse_path`` turns one
into ``PathSegment`` values and rejects patterns no request could match
unambiguously.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from trill.errors import ConfigurationError
from trill.routing.params import CONVERTERS

_ANGLE_PARAM = re.compile(r"<[^>]*>")


@dataclass(frozen=True, slots=True)
class PathSegment:
    """One segment of a pattern. ``param_name`` is ``None`` for literals."""

    value: str
    is_param: bool = False
    param_name: str | None = None
    param_type: str = "str"


def parse_path(path: str) -> list[PathSegment]:
    """Split a pattern into segments.

    ::

        "/users/{id:int}" -> [PathSegment("users"),
                              PathSegment("{id:int}", True, "id", "int")]

    Raises ``ConfigurationError`` for ``<param>`` segments, unknown
    converters, and a ``path`` parameter anywhere but last.
    """
    if _ANGLE_PARAM.search(path):
        msg = (
            f"Route {path!r} uses <param> syntax. "
            "Trill path parameters are written {param} or {param:int}."
        )
        raise ConfigurationError(msg)

    parts = [part for part in path.strip("/").split("/") if part]
    segments: list[PathSegment] = []
    for index, part in enumerate(parts):
        if not (part.startswith("{") and part.endswith("}")):
            segments.append(PathSegment(part))
            continue
        name, sep, converter = part[1:-1].partition(":")
        if not sep:
            converter = "str"
        if converter not in CONVERTERS:
            msg = f"Route {path!r}: unknown converter {converter!r} in {part!r}."
            raise ConfigurationError(msg)
        if converter == "path" and index != len(parts) - 1:
            msg = f"Route {path!r}: {part!r} must be the last segment."
            raise ConfigurationError(msg)
        segments.append(PathSegment(part, is_param=True, param_name=name, param_type=converter))
    return segments


@dataclass(frozen=True, slots=True)
class Route:
    """A handler bound to a pattern and a set of methods.

    ``extractors`` is empty until the app freezes and resolves one
    ``(parameter name, extractor)`` pair per handler parameter.
    """

    path: str
    handler: Callable[..., Any]
    methods: frozenset[str]
    name: str | None = None
    extractors: tuple[tuple[str, Any], ...] = ()

    @property
    def param_names(self) -> frozenset[str]:
        return frozenset(seg.param_name for seg in parse_path(self.path) if seg.param_name)

    def with_extractors(self, extractors: tuple[tuple[str, Any], ...]) -> "Route":
        return replace(self, extractors=extractors)

    def __str__(self) -> str:
        return f"{','.join(sorted(self.methods))} {self.path}"


@dataclass(frozen=True, slots=True)
class RouteMatch:
    """The matched route and its path parameters, not yet converted."""

    route: Route
    path_params: dict[str, str]
