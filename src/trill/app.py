"""Trill application class.

Mutable during setup (routes, scopes, state, providers, error handlers,
hooks). Frozen at runtime when app.run() or __call__() is first invoked.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from trill._internal.asgi import Receive, Scope, Send
from trill._internal.invoke import run_hooks
from trill._internal.types import ErrorHandler, Hook
from trill.config import AppConfig
from trill.errors import StartupError
from trill.extraction import build_plan
from trill.routing.declare import RouteCollector
from trill.routing.route import Route
from trill.routing.router import Router
from trill.server.handler import handle_request
from trill.state import State

logger = logging.getLogger("trill.server")


class App(RouteCollector):
    """The trill application.

    Mutable during setup (routes, state, error handlers, hooks).
    Frozen at runtime when ``app.run()`` or ``__call__()`` is first invoked.

    Usage::

        app = App(AppConfig(port=8888))
        app.add_state(AppState(app_name="demo"))

        @app.route("/")
        def index(data: AppState):
            return f"Hello World {data.app_name}"

        app.run()

    Thread safety:
        The setup phase is single-threaded (decorators at import time).
        The freeze transition uses a Lock + double-check so exactly one
        thread compiles the app even if several workers hit ``__call__()``
        on their first request at once. Workers compile their own route
        table with ``compile_router()``; the ``State`` container is shared.
    """

    def __init__(self, config: AppConfig | None = None) -> None:
        super().__init__()
        self.config: AppConfig = config or AppConfig()
        self.state: State = State()
        self._error_handlers: dict[int | type, ErrorHandler] = {}
        self._providers: dict[type, Callable[..., Any]] = {}
        self._startup_hooks: list[Hook] = []
        self._shutdown_hooks: list[Hook] = []
        self._worker_startup_hooks: list[Hook] = []
        self._worker_shutdown_hooks: list[Hook] = []
        self._frozen: bool = False
        self._freeze_lock: threading.Lock = threading.Lock()

        # Compiled state — set during _freeze()
        self._router: Router | None = None

    # -- Shared state --

    def add_state(self, value: object) -> App:
        """Register a shared state instance, injected by type into handlers.

        The instance is shared by every worker; it is never copied.
        Must happen before the server starts.
        """
        self._check_not_frozen()
        self.state.add(value)
        return self

    # -- Service injection --

    def provide(self, annotation: type, factory: Callable[..., Any]) -> None:
        """Register a provider factory for dependency injection.

        When a handler parameter's type annotation matches *annotation*,
        trill calls *factory* (with no arguments, sync or async) on every
        request and injects the result::

            app.provide(Clock, Clock.now)

            @app.route("/time")
            def time(clock: Clock): ...
        """
        self._check_not_frozen()
        self._providers[annotation] = factory

    # -- Error handlers --

    def error(
        self,
        code_or_exception: int | type[Exception],
    ) -> Callable[[ErrorHandler], ErrorHandler]:
        """Register an error handler via decorator."""

        def decorator(func: ErrorHandler) -> ErrorHandler:
            self._check_not_frozen()
            self._error_handlers[code_or_exception] = func
            return func

        return decorator

    # -- Lifecycle hooks --

    def on_startup(self, func: Hook) -> Hook:
        """Register an async or sync startup hook via decorator.

        Hooks run once, in registration order, before the server begins
        accepting connections. A failing hook aborts startup.
        """
        self._check_not_frozen()
        self._startup_hooks.append(func)
        return func

    def on_shutdown(self, func: Hook) -> Hook:
        """Register an async or sync shutdown hook via decorator.

        Hooks run once, in registration order, after every worker has
        stopped.
        """
        self._check_not_frozen()
        self._shutdown_hooks.append(func)
        return func

    def on_worker_startup(self, func: Hook) -> Hook:
        """Register a per-worker startup hook via decorator.

        Unlike ``on_startup``, this hook runs **on each worker's event
        loop** before that worker accepts connections. Use it for
        resources that bind to the event loop (httpx clients, pools).
        """
        self._check_not_frozen()
        self._worker_startup_hooks.append(func)
        return func

    def on_worker_shutdown(self, func: Hook) -> Hook:
        """Register a per-worker shutdown hook via decorator.

        Runs on each worker's event loop after that worker has drained.
        """
        self._check_not_frozen()
        self._worker_shutdown_hooks.append(func)
        return func

    async def startup(self) -> None:
        """Run the app-wide startup hooks."""
        await run_hooks(self._startup_hooks)

    async def shutdown(self) -> None:
        """Run the app-wide shutdown hooks."""
        await run_hooks(self._shutdown_hooks)

    async def worker_startup(self) -> None:
        """Run the per-worker startup hooks on the calling event loop."""
        await run_hooks(self._worker_startup_hooks)

    async def worker_shutdown(self) -> None:
        """Run the per-worker shutdown hooks on the calling event loop."""
        await run_hooks(self._worker_shutdown_hooks)

    # -- Server --

    def run(self, host: str | None = None, port: int | None = None) -> None:
        """Serve until interrupted (SIGINT/SIGTERM), then shut down gracefully.

        A startup failure (bad route table, address in use) is logged
        and exits the process with status 1.
        """
        from trill.logs import configure_logging
        from trill.server.server import Server

        configure_logging(self.config.log_level, self.config.log_format)
        try:
            self._ensure_frozen()
            Server(self, host=host, port=port).run()
        except StartupError as exc:
            logger.error("Startup failed: %s", exc)
            raise SystemExit(1) from exc

    # -- ASGI interface --

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI 3.0 entry point.

        Handles the lifespan scope directly, then delegates HTTP scopes to
        the request handler pipeline.
        """
        if scope["type"] == "lifespan":
            await self._handle_lifespan(receive, send)
            return

        self._ensure_frozen()
        assert self._router is not None
        await self.handle(scope, receive, send, router=self._router)

    async def handle(self, scope: Scope, receive: Receive, send: Send, *, router: Router) -> None:
        """Serve one HTTP scope against a specific compiled route table."""
        await handle_request(
            scope,
            receive,
            send,
            router=router,
            error_handlers=self._error_handlers,
            debug=self.config.debug,
            max_body=self.config.max_content_length,
        )

    async def _handle_lifespan(self, receive: Receive, send: Send) -> None:
        """Run the ASGI lifespan protocol.

        Freezes the app at startup (before the first HTTP request), runs
        app-wide and per-worker hooks (an external ASGI server has a single
        loop from our point of view) and signals completion back.
        """
        while True:
            message = await receive()
            msg_type = message["type"]

            if msg_type == "lifespan.startup":
                try:
                    self._ensure_frozen()
                    await self.startup()
                    await self.worker_startup()
                except Exception as exc:
                    await send({"type": "lifespan.startup.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.startup.complete"})

            elif msg_type == "lifespan.shutdown":
                await self.worker_shutdown()
                await self.shutdown()
                await send({"type": "lifespan.shutdown.complete"})
                return

    # -- Internal --

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def routes(self) -> list[Route]:
        """Compiled routes (freezes the app)."""
        self._ensure_frozen()
        assert self._router is not None
        return self._router.routes

    def _ensure_frozen(self) -> None:
        """Thread-safe freeze with double-check locking."""
        if self._frozen:
            return
        with self._freeze_lock:
            if self._frozen:
                return
            self._freeze()

    def _freeze(self) -> None:
        """Compile the app into its frozen runtime state.

        MUST only be called while holding _freeze_lock.
        """
        # State gathered from scopes and configure functions
        for value in self._pending_state:
            self.state.add(value)
        self._pending_state.clear()

        self._router = self.compile_router()
        self._frozen = True

    def compile_router(self) -> Router:
        """Build a new, independent route table from the registered routes.

        Each worker calls this once, so no two workers share a router.
        Raises ``ConfigurationError`` / ``RouteConflict`` for a bad table.
        """
        router = Router()
        for pending in self._pending_routes:
            route = Route(
                path=pending.path,
                handler=pending.handler,
                methods=frozenset(pending.methods),
                name=pending.name,
            )
            plan = build_plan(route.handler, route.param_names, self.state, self._providers)
            router.add(route.with_extractors(plan))
        router.compile()
        return router

    def _check_not_frozen(self) -> None:
        if self._frozen:
            msg = (
                "Cannot modify the app after it has started serving requests. "
                "Register routes, state, and hooks before calling app.run()."
            )
            raise RuntimeError(msg)
