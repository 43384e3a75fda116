"""Route declaration surface — decorators, resources, scopes, configure functions.

Every way of declaring a route ends up as the same ``PendingRoute``
(methods, fully-expanded path, handler, name) appended to the app's
pending list. The router never sees the difference::

    # decorator on the app
    @app.route("/again")
    def again(): ...

    # free-standing route definition, registered later
    @get("/hello")
    def hello(): ...
    app.service(hello)

    # prefix scope
    app.service(Scope("/app").add_route("/app_path", handler))

    # configure function, can live in another module
    def config(cfg: ServiceConfig) -> None:
        cfg.service(Resource("/conf").get(handler))
    app.configure(config)
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from trill._internal.types import Handler
from trill.routing.router import join_paths

_DEFAULT_METHODS: tuple[str, ...] = ("GET",)


@dataclass(frozen=True, slots=True)
class PendingRoute:
    """A route waiting to be compiled."""

    path: str
    handler: Handler
    methods: tuple[str, ...]
    name: str | None = None

    def prefixed(self, prefix: str) -> PendingRoute:
        return PendingRoute(join_paths(prefix, self.path), self.handler, self.methods, self.name)


def _normalize_methods(methods: Iterable[str] | None) -> tuple[str, ...]:
    return tuple(m.upper() for m in (methods or _DEFAULT_METHODS))


class RouteDef:
    """A handler that carries its own route declaration.

    Produced by the ``get`` / ``post`` / ... decorators. Still callable
    like the function it wraps, so it can be unit-tested directly.
    Register it with ``app.service(route_def)``.
    """

    def __init__(
        self,
        path: str,
        handler: Handler,
        methods: Iterable[str] | None = None,
        name: str | None = None,
    ) -> None:
        self.path = path
        self.handler = handler
        self.methods = _normalize_methods(methods)
        self.name = name
        functools.update_wrapper(self, handler)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.handler(*args, **kwargs)

    def __repr__(self) -> str:
        return f"RouteDef({'|'.join(self.methods)} {self.path!r} -> {self.handler!r})"

    def pending(self) -> list[PendingRoute]:
        return [PendingRoute(self.path, self.handler, self.methods, self.name)]


def route(
    path: str,
    *,
    methods: Iterable[str] | None = None,
    name: str | None = None,
) -> Callable[[Handler], RouteDef]:
    """Declare a route on a free function. Defaults to GET."""

    def decorator(func: Handler) -> RouteDef:
        return RouteDef(path, func, methods, name)

    return decorator


def get(path: str, *, name: str | None = None) -> Callable[[Handler], RouteDef]:
    return route(path, methods=["GET"], name=name)


def post(path: str, *, name: str | None = None) -> Callable[[Handler], RouteDef]:
    return route(path, methods=["POST"], name=name)


def put(path: str, *, name: str | None = None) -> Callable[[Handler], RouteDef]:
    return route(path, methods=["PUT"], name=name)


def patch(path: str, *, name: str | None = None) -> Callable[[Handler], RouteDef]:
    return route(path, methods=["PATCH"], name=name)


def delete(path: str, *, name: str | None = None) -> Callable[[Handler], RouteDef]:
    return route(path, methods=["DELETE"], name=name)


class Resource:
    """One path with a handler per method.

    Usage::

        Resource("/conf").get(show_conf).post(update_conf)
    """

    __slots__ = ("_routes", "name", "path")

    def __init__(self, path: str, *, name: str | None = None) -> None:
        self.path = path
        self.name = name
        self._routes: list[PendingRoute] = []

    def to(self, handler: Handler, *, methods: Iterable[str] | None = None) -> Resource:
        """Attach *handler* for *methods* (default GET). Returns ``self``."""
        self._routes.append(
            PendingRoute(self.path, handler, _normalize_methods(methods), self.name)
        )
        return self

    def get(self, handler: Handler) -> Resource:
        return self.to(handler, methods=["GET"])

    def post(self, handler: Handler) -> Resource:
        return self.to(handler, methods=["POST"])

    def put(self, handler: Handler) -> Resource:
        return self.to(handler, methods=["PUT"])

    def patch(self, handler: Handler) -> Resource:
        return self.to(handler, methods=["PATCH"])

    def delete(self, handler: Handler) -> Resource:
        return self.to(handler, methods=["DELETE"])

    def pending(self) -> list[PendingRoute]:
        return list(self._routes)


Service = RouteDef | Resource


class RouteCollector:
    """Shared registration API for ``App``, ``Scope`` and ``ServiceConfig``.

    Paths passed here are relative to the collector; ``Scope`` adds its
    prefix when it is itself registered.
    """

    def __init__(self) -> None:
        self._pending_routes: list[PendingRoute] = []
        self._pending_state: list[object] = []

    def _check_not_frozen(self) -> None:
        """Hook for collectors that lock after setup."""

    def route(
        self,
        path: str,
        *,
        methods: list[str] | None = None,
        name: str | None = None,
    ) -> Callable[[Handler], Handler]:
        """Register a route handler via decorator.

        Args:
            path: URL path pattern. Use ``{param}`` for path parameters.
            methods: HTTP methods. Defaults to ``["GET"]``.
            name: Optional route name.
        """

        def decorator(func: Handler) -> Handler:
            self.add_route(path, func, methods=methods, name=name)
            return func

        return decorator

    def add_route(
        self,
        path: str,
        handler: Handler,
        *,
        methods: list[str] | None = None,
        name: str | None = None,
    ) -> RouteCollector:
        """Register *handler* explicitly. Returns ``self`` for chaining."""
        self._check_not_frozen()
        self._pending_routes.append(
            PendingRoute(path, handler, _normalize_methods(methods), name)
        )
        return self

    def service(self, item: Service | Scope) -> RouteCollector:
        """Register a ``RouteDef``, ``Resource`` or ``Scope``.

        A scope is flattened at this point, so finish building it first.
        """
        self._check_not_frozen()
        if isinstance(item, Scope):
            self._pending_routes.extend(p.prefixed(item.prefix) for p in item._pending_routes)
            for value in item._pending_state:
                self.add_state(value)
        elif isinstance(item, (RouteDef, Resource)):
            self._pending_routes.extend(item.pending())
        else:
            msg = f"service() expects a RouteDef, Resource or Scope, got {type(item).__name__}"
            raise TypeError(msg)
        return self

    def configure(self, func: Callable[[ServiceConfig], Any]) -> RouteCollector:
        """Run a configuration function against a fresh ``ServiceConfig``.

        Whatever *func* registers is merged here, relative to this
        collector's own position.
        """
        self._check_not_frozen()
        cfg = ServiceConfig()
        func(cfg)
        self._pending_routes.extend(cfg._pending_routes)
        for value in cfg._pending_state:
            self.add_state(value)
        return self

    def add_state(self, value: object) -> RouteCollector:
        """Register a shared state instance. Merged into the app's container."""
        self._check_not_frozen()
        self._pending_state.append(value)
        return self


class Scope(RouteCollector):
    """A path prefix grouping routes, resources and nested scopes.

    Usage::

        api = Scope("/api")
        api.add_route("/users", list_users)
        api.service(Scope("/v2").add_route("/users", list_users_v2))
        app.service(api)   # /api/users, /api/v2/users
    """

    def __init__(self, prefix: str) -> None:
        super().__init__()
        self.prefix = prefix

    def __repr__(self) -> str:
        return f"Scope({self.prefix!r}, routes={len(self._pending_routes)})"


class ServiceConfig(RouteCollector):
    """The collector handed to configure functions.

    Has the full registration API; what it collects is merged into the
    caller when the function returns.
    """
