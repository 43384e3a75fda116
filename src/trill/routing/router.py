"""Compiled router with trie-based path matching.

Routes are registered during setup and compiled into an immutable
lookup structure when the app freezes. Conflicts are detected while
registering, so a bad route table never reaches a worker.
"""

import re
from dataclasses import dataclass, field

from trill.errors import MethodNotAllowed, NotFound, RouteConflict
from trill.routing.params import CONVERTERS, SPECIFICITY
from trill.routing.route import PathSegment, Route, RouteMatch, parse_path


def _for_method(routes: dict[str, Route], method: str) -> Route | None:
    """Route registered for *method*. HEAD falls back to GET."""
    route = routes.get(method)
    if route is None and method == "HEAD":
        route = routes.get("GET")
    return route


def join_paths(prefix: str, path: str) -> str:
    """Join a scope prefix and a route path into one normalized pattern.

    ``join_paths("/app", "/app_path") == "/app/app_path"``,
    ``join_paths("/app", "/") == "/app"``, ``join_paths("/", "/x") == "/x"``.
    """
    parts = [p for p in (prefix.strip("/"), path.strip("/")) if p]
    return "/" + "/".join(parts)


class _TrieNode:
    """A node in the route trie. Mutable during compilation only."""

    __slots__ = ("catch_all", "children", "param_edges", "routes_by_method")

    def __init__(self) -> None:
        # Static segment children: "users" -> node
        self.children: dict[str, _TrieNode] = {}
        # Parameter edges, kept sorted by converter specificity
        self.param_edges: list[_ParamEdge] = []
        # Catch-all edge (path converter)
        self.catch_all: _CatchAllEdge | None = None
        # Routes at this node, keyed by HTTP method
        self.routes_by_method: dict[str, Route] = {}


@dataclass(slots=True)
class _ParamEdge:
    """A parameter edge in the trie."""

    param_name: str
    param_type: str
    regex: re.Pattern[str]
    node: _TrieNode


@dataclass(slots=True)
class _CatchAllEdge:
    """A catch-all (path) edge — consumes remaining path."""

    param_name: str
    route_by_method: dict[str, Route] = field(default_factory=dict)


class Router:
    """Compiled router with trie-based path matching.

    Usage::

        router = Router()
        router.add(Route("/users", handler, frozenset({"GET"})))
        router.add(Route("/users/{id:int}", handler, frozenset({"GET"})))
        router.compile()
        match = router.match("GET", "/users/42")

    Precedence at each level: static segment, then parameter edges
    (``int`` before ``float`` before ``str``), then catch-all, with
    backtracking. A route with fewer parameter segments therefore wins
    over a more general one that matches the same path.
    """

    __slots__ = ("_compiled", "_root")

    def __init__(self) -> None:
        self._root = _TrieNode()
        self._compiled = False

    def add(self, route: Route) -> None:
        """Add a route to the router. Must be called before compile().

        Raises ``RouteConflict`` when the route duplicates an existing
        (method, pattern) pair or is ambiguous with an existing route.
        """
        if self._compiled:
            msg = "Cannot add routes after compilation."
            raise RuntimeError(msg)

        segments = parse_path(route.path)
        node = self._root

        for seg in segments:
            if seg.is_param and seg.param_type == "path":
                name = seg.param_name or "path"
                if node.catch_all is None:
                    node.catch_all = _CatchAllEdge(param_name=name)
                elif node.catch_all.param_name != name:
                    msg = (
                        f"Route {route.path!r} is ambiguous: catch-all {{{name}:path}} "
                        f"overlaps {{{node.catch_all.param_name}:path}} at the same position."
                    )
                    raise RouteConflict(msg)
                self._register(node.catch_all.route_by_method, route)
                return

            if seg.is_param:
                node = self._param_node(node, seg, route)
            else:
                node = node.children.setdefault(seg.value, _TrieNode())

        self._register(node.routes_by_method, route)

    def _param_node(self, node: _TrieNode, seg: PathSegment, route: Route) -> _TrieNode:
        """Find or create the parameter edge for *seg* below *node*."""
        name = seg.param_name or ""
        for edge in node.param_edges:
            if edge.param_type != seg.param_type:
                continue
            if edge.param_name != name:
                msg = (
                    f"Route {route.path!r} is ambiguous: {{{name}:{seg.param_type}}} "
                    f"overlaps {{{edge.param_name}:{edge.param_type}}} at the same position."
                )
                raise RouteConflict(msg)
            return edge.node

        pattern, _ = CONVERTERS[seg.param_type]
        edge = _ParamEdge(
            param_name=name,
            param_type=seg.param_type,
            regex=re.compile(f"^{pattern}$"),
            node=_TrieNode(),
        )
        node.param_edges.append(edge)
        node.param_edges.sort(key=lambda e: SPECIFICITY[e.param_type])
        return edge.node

    @staticmethod
    def _register(table: dict[str, Route], route: Route) -> None:
        for method in route.methods:
            existing = table.get(method)
            if existing is not None:
                msg = (
                    f"Duplicate route {method} {route.path!r} "
                    f"(already registered as {existing})."
                )
                raise RouteConflict(msg)
        for method in route.methods:
            table[method] = route

    @property
    def routes(self) -> list[Route]:
        """Return all registered routes.

        Traverses the trie to collect every unique Route object.
        Useful for introspection and for comparing route tables.
        """
        seen: set[int] = set()
        result: list[Route] = []
        self._collect_routes(self._root, seen, result)
        return result

    def _collect_routes(
        self,
        node: _TrieNode,
        seen: set[int],
        result: list[Route],
    ) -> None:
        """Recursively collect routes from the trie."""
        candidates = list(node.routes_by_method.values())
        if node.catch_all is not None:
            candidates.extend(node.catch_all.route_by_method.values())
        for route in candidates:
            if id(route) not in seen:
                seen.add(id(route))
                result.append(route)

        for child in node.children.values():
            self._collect_routes(child, seen, result)

        for edge in node.param_edges:
            self._collect_routes(edge.node, seen, result)

    def compile(self) -> None:
        """Freeze the router. No more routes can be added."""
        self._compiled = True

    @property
    def compiled(self) -> bool:
        return self._compiled

    def match(self, method: str, path: str) -> RouteMatch:
        """Match a request path and method against compiled routes.

        Returns a ``RouteMatch`` on success.
        Raises ``NotFound`` if no route matches the path.
        Raises ``MethodNotAllowed`` if the path matches but the method doesn't.
        """
        parts = [p for p in path.strip("/").split("/") if p]
        allowed: set[str] = set()
        result = self._match_node(self._root, method, parts, 0, {}, allowed)

        if result is not None:
            return result
        if allowed:
            if "GET" in allowed:
                allowed.add("HEAD")
            raise MethodNotAllowed(frozenset(allowed))
        raise NotFound(f"No route matches {method} {path!r}")

    def _match_node(
        self,
        node: _TrieNode,
        method: str,
        parts: list[str],
        index: int,
        params: dict[str, str],
        allowed: set[str],
    ) -> RouteMatch | None:
        """Recursively match path parts against the trie.

        Paths that exist under other methods are recorded in *allowed*
        so the caller can tell 404 from 405.
        """
        # All parts consumed — check this node
        if index == len(parts):
            route = _for_method(node.routes_by_method, method)
            if route is not None:
                return RouteMatch(route=route, path_params=params)
            allowed.update(node.routes_by_method)
            return None

        part = parts[index]

        # 1. Static child (exact match)
        child = node.children.get(part)
        if child is not None:
            result = self._match_node(child, method, parts, index + 1, params, allowed)
            if result is not None:
                return result

        # 2. Parameter edges, most specific first
        for edge in node.param_edges:
            if edge.regex.match(part):
                new_params = {**params, edge.param_name: part}
                result = self._match_node(edge.node, method, parts, index + 1, new_params, allowed)
                if result is not None:
                    return result

        # 3. Catch-all
        if node.catch_all is not None:
            route = _for_method(node.catch_all.route_by_method, method)
            if route is not None:
                remaining = "/".join(parts[index:])
                return RouteMatch(
                    route=route,
                    path_params={**params, node.catch_all.param_name: remaining},
                )
            allowed.update(node.catch_all.route_by_method)

        return None
