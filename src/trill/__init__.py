"""Trill — a small HTTP routing and dispatch core with a built-in server.

Handlers are plain functions. Their parameters say what they need (path
parameters, shared state, the request, a dataclass built from the query
or body) and their return value says what to send back.

Basic usage::

    from dataclasses import dataclass

    from trill import App

    @dataclass
    class AppState:
        app_name: str

    app = App()
    app.add_state(AppState(app_name="demo"))

    @app.route("/")
    def index(data: AppState):
        return f"Hello World {data.app_name}"

    app.run()
"""

import importlib

__version__ = "0.1.0"
__all__ = [
    "App",
    "AppConfig",
    "BindError",
    "ConfigurationError",
    "Either",
    "ExtractionError",
    "HTTPError",
    "Left",
    "MethodNotAllowed",
    "NotFound",
    "Redirect",
    "Request",
    "Resource",
    "Response",
    "Right",
    "RouteConflict",
    "RouteDef",
    "Scope",
    "Server",
    "ServiceConfig",
    "StartupError",
    "State",
    "TrillError",
    "delete",
    "get",
    "get_request",
    "patch",
    "post",
    "put",
    "route",
]

# Public name -> defining module. Resolved on first attribute access.
_LAZY_IMPORTS: dict[str, str] = {
    "App": "trill.app",
    "AppConfig": "trill.config",
    "Request": "trill.http.request",
    "Response": "trill.http.response",
    "Redirect": "trill.http.response",
    "Either": "trill.either",
    "Left": "trill.either",
    "Right": "trill.either",
    "State": "trill.state",
    "Server": "trill.server.server",
    "get_request": "trill.context",
    "Resource": "trill.routing.declare",
    "RouteDef": "trill.routing.declare",
    "Scope": "trill.routing.declare",
    "ServiceConfig": "trill.routing.declare",
    "route": "trill.routing.declare",
    "get": "trill.routing.declare",
    "post": "trill.routing.declare",
    "put": "trill.routing.declare",
    "patch": "trill.routing.declare",
    "delete": "trill.routing.declare",
    "TrillError": "trill.errors",
    "StartupError": "trill.errors",
    "ConfigurationError": "trill.errors",
    "RouteConflict": "trill.errors",
    "BindError": "trill.errors",
    "HTTPError": "trill.errors",
    "NotFound": "trill.errors",
    "MethodNotAllowed": "trill.errors",
    "ExtractionError": "trill.errors",
}


def __getattr__(name: str) -> object:
    """Lazy imports for public API.

    Keeps ``import trill`` fast while providing a clean top-level API.
    """
    module_name = _LAZY_IMPORTS.get(name)
    if module_name is None:
        msg = f"module {__name__!r} has no attribute {name!r}"
        raise AttributeError(msg)
    value = getattr(importlib.import_module(module_name), name)
    globals()[name] = value
    return value
