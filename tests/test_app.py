"""Tests for trill.app — App lifecycle, registration, and ASGI entry."""

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest

from trill.app import App
from trill.config import AppConfig
from trill.errors import ConfigurationError, HTTPError, RouteConflict
from trill.http.request import Request
from trill.http.response import Redirect, Response
from trill.testing import TestClient


@dataclass
class Greeting:
    word: str


@dataclass
class Clock:
    now: int


class Database:
    """Not registered anywhere, so never resolvable."""


class TestAppRegistration:
    def test_route_decorator(self) -> None:
        app = App()

        @app.route("/")
        def index():
            return "hello"

        assert len(app._pending_routes) == 1
        assert app._pending_routes[0].path == "/"

    def test_route_with_methods(self) -> None:
        app = App()

        @app.route("/users", methods=["get", "POST"])
        def users():
            return "users"

        assert app._pending_routes[0].methods == ("GET", "POST")

    def test_route_decorator_returns_function(self) -> None:
        app = App()

        @app.route("/")
        def index():
            return "hello"

        assert index() == "hello"

    def test_error_decorator(self) -> None:
        app = App()

        @app.error(404)
        def not_found():
            return "Not found"

        assert 404 in app._error_handlers

    def test_add_state_is_chainable(self) -> None:
        app = App()
        assert app.add_state(Greeting("hi")) is app
        assert Greeting in app.state

    def test_duplicate_state_type_rejected(self) -> None:
        app = App()
        app.add_state(Greeting("hi"))
        with pytest.raises(ConfigurationError, match="already registered"):
            app.add_state(Greeting("hello"))


class TestAppFreeze:
    def test_freeze_compiles_router(self) -> None:
        app = App()

        @app.route("/")
        def index():
            return "hello"

        app._ensure_frozen()
        assert app.frozen is True
        assert app._router is not None

    def test_cannot_add_routes_after_freeze(self) -> None:
        app = App()
        app._ensure_frozen()

        with pytest.raises(RuntimeError, match="Cannot modify"):

            @app.route("/")
            def index():
                return "hello"

    def test_cannot_add_state_after_freeze(self) -> None:
        app = App()
        app._ensure_frozen()

        with pytest.raises(RuntimeError, match="Cannot modify"):
            app.add_state(Greeting("late"))

    def test_double_freeze_is_safe(self) -> None:
        app = App()
        app._ensure_frozen()
        app._ensure_frozen()  # Should not raise
        assert app.frozen is True

    def test_unresolvable_parameter_fails_at_freeze(self) -> None:
        app = App()

        @app.route("/")
        def index(db: Database):
            return "never"

        with pytest.raises(ConfigurationError, match="Cannot resolve parameter 'db'"):
            app._ensure_frozen()

    def test_conflict_fails_at_freeze(self) -> None:
        app = App()
        app.add_route("/a", lambda: "one")
        app.add_route("/a", lambda: "two")

        with pytest.raises(RouteConflict):
            app._ensure_frozen()

    def test_compile_router_builds_independent_tables(self) -> None:
        app = App()
        app.add_route("/", lambda: "ok")
        first = app.compile_router()
        second = app.compile_router()
        assert first is not second
        assert [r.path for r in first.routes] == [r.path for r in second.routes]

    def test_routes_property(self) -> None:
        app = App()
        app.add_route("/a", lambda: "a")
        app.add_route("/b/{id:int}", lambda id: str(id))
        assert sorted(r.path for r in app.routes) == ["/a", "/b/{id:int}"]


class TestAppConfig:
    def test_default_config(self) -> None:
        app = App()
        assert app.config.host == "127.0.0.1"
        assert app.config.port == 8000

    def test_custom_config(self) -> None:
        cfg = AppConfig(host="0.0.0.0", port=3000, debug=True)
        app = App(config=cfg)
        assert app.config.host == "0.0.0.0"
        assert app.config.debug is True


class TestAppE2E:
    """End-to-end tests using TestClient."""

    async def test_hello_world(self) -> None:
        app = App()

        @app.route("/")
        def index():
            return "Hello, World!"

        async with TestClient(app) as client:
            response = await client.get("/")
            assert response.status == 200
            assert response.text == "Hello, World!"
            assert response.content_type.startswith("text/plain")

    async def test_json_response(self) -> None:
        app = App()

        @app.route("/api/data")
        def data():
            return {"message": "hello", "count": 42}

        async with TestClient(app) as client:
            response = await client.get("/api/data")
            assert response.status == 200
            assert "application/json" in response.content_type

    async def test_path_params(self) -> None:
        app = App()

        @app.route("/users/{name}")
        def user(name: str):
            return f"Hello, {name}!"

        async with TestClient(app) as client:
            response = await client.get("/users/alice")
            assert response.status == 200
            assert response.text == "Hello, alice!"

    async def test_typed_path_params(self) -> None:
        app = App()

        @app.route("/users/{id:int}")
        def user(id: int):
            return {"id": id, "next": id + 1}

        async with TestClient(app) as client:
            response = await client.get("/users/42")
            assert response.status == 200
            assert '"next": 43' in response.text

    async def test_multiple_methods(self) -> None:
        app = App()

        @app.route("/items", methods=["GET"])
        def list_items():
            return "item list"

        @app.route("/items", methods=["POST"])
        def create_item():
            return ("created", 201)

        async with TestClient(app) as client:
            get_resp = await client.get("/items")
            assert get_resp.status == 200

            post_resp = await client.post("/items")
            assert post_resp.status == 201

    async def test_404_default(self) -> None:
        app = App()

        @app.route("/")
        def index():
            return "home"

        async with TestClient(app) as client:
            response = await client.get("/nonexistent")
            assert response.status == 404

    async def test_405_default(self) -> None:
        app = App()

        @app.route("/items", methods=["GET"])
        def items():
            return "items"

        async with TestClient(app) as client:
            response = await client.post("/items")
            assert response.status == 405
            assert response.header("allow") == "GET, HEAD"

    async def test_async_handler(self) -> None:
        app = App()

        @app.route("/async")
        async def async_handler():
            return "async works"

        async with TestClient(app) as client:
            response = await client.get("/async")
            assert response.status == 200
            assert response.text == "async works"

    async def test_request_injection(self) -> None:
        app = App()

        @app.route("/echo")
        async def echo(request: Request):
            return f"method={request.method} path={request.path}"

        async with TestClient(app) as client:
            response = await client.get("/echo")
            assert "method=GET" in response.text
            assert "path=/echo" in response.text

    async def test_state_injection(self) -> None:
        app = App()
        app.add_state(Greeting("Howdy"))

        @app.route("/")
        def index(greeting: Greeting):
            return f"{greeting.word} there"

        async with TestClient(app) as client:
            response = await client.get("/")
            assert response.text == "Howdy there"

    async def test_state_is_shared_not_copied(self) -> None:
        app = App()
        shared = Greeting("same")
        app.add_state(shared)
        seen: list[Greeting] = []

        @app.route("/")
        def index(greeting: Greeting):
            seen.append(greeting)
            return "ok"

        async with TestClient(app) as client:
            await client.get("/")
            await client.get("/")
        assert seen == [shared, shared]
        assert all(g is shared for g in seen)

    async def test_provider_called_per_request(self) -> None:
        app = App()
        ticks = iter(range(100))
        app.provide(Clock, lambda: Clock(next(ticks)))

        @app.route("/tick")
        def tick(clock: Clock):
            return str(clock.now)

        async with TestClient(app) as client:
            assert (await client.get("/tick")).text == "0"
            assert (await client.get("/tick")).text == "1"

    async def test_response_chaining(self) -> None:
        app = App()

        @app.route("/custom")
        def custom():
            return Response("Created").with_status(201).with_header("X-Custom", "yes")

        async with TestClient(app) as client:
            response = await client.get("/custom")
            assert response.status == 201
            assert response.header("x-custom") == "yes"

    async def test_redirect(self) -> None:
        app = App()

        @app.route("/old")
        def old():
            return Redirect("/new")

        async with TestClient(app) as client:
            response = await client.get("/old")
            assert response.status == 302
            assert response.header("location") == "/new"

    async def test_tuple_status_override(self) -> None:
        app = App()

        @app.route("/created")
        def created():
            return ("Resource created", 201)

        async with TestClient(app) as client:
            response = await client.get("/created")
            assert response.status == 201
            assert response.text == "Resource created"

    async def test_none_is_no_content(self) -> None:
        app = App()

        @app.route("/empty")
        def empty():
            return None

        async with TestClient(app) as client:
            response = await client.get("/empty")
            assert response.status == 204
            assert response.text == ""


class TestErrorHandlers:
    async def test_status_handler_replaces_body(self) -> None:
        app = App()

        @app.error(404)
        def not_found(request: Request):
            return f"Nothing at {request.path}"

        async with TestClient(app) as client:
            response = await client.get("/missing")
            assert response.status == 404
            assert response.text == "Nothing at /missing"

    async def test_handler_receives_exception(self) -> None:
        app = App()

        @app.route("/teapot")
        def teapot():
            raise HTTPError(418, "short and stout")

        @app.error(418)
        def on_teapot(request: Request, exc: HTTPError):
            return f"caught {exc.detail}"

        async with TestClient(app) as client:
            response = await client.get("/teapot")
            assert response.status == 418
            assert response.text == "caught short and stout"

    async def test_405_handler_keeps_allow_header(self) -> None:
        app = App()

        @app.route("/only-get")
        def only_get():
            return "ok"

        @app.error(405)
        def not_allowed():
            return "nope"

        async with TestClient(app) as client:
            response = await client.delete("/only-get")
            assert response.status == 405
            assert response.text == "nope"
            assert response.header("allow") == "GET, HEAD"

    async def test_unhandled_exception_is_500(self) -> None:
        app = App()

        @app.route("/boom")
        def boom():
            msg = "kaboom"
            raise ValueError(msg)

        async with TestClient(app) as client:
            response = await client.get("/boom")
            assert response.status == 500
            assert response.text == "Internal Server Error"
            assert "kaboom" not in response.text

    async def test_debug_includes_traceback(self) -> None:
        app = App(AppConfig(debug=True))

        @app.route("/boom")
        def boom():
            msg = "kaboom"
            raise ValueError(msg)

        async with TestClient(app) as client:
            response = await client.get("/boom")
            assert response.status == 500
            assert "Traceback" in response.text
            assert "ValueError: kaboom" in response.text

    async def test_typed_exception_handler_owns_status(self) -> None:
        app = App()

        class OutOfStock(Exception):
            pass

        @app.route("/buy")
        def buy():
            raise OutOfStock

        @app.error(OutOfStock)
        def out_of_stock():
            return ("Sold out", 409)

        async with TestClient(app) as client:
            response = await client.get("/buy")
            assert response.status == 409
            assert response.text == "Sold out"

    async def test_500_handler_keeps_status(self) -> None:
        app = App()

        @app.route("/boom")
        def boom():
            raise RuntimeError

        @app.error(500)
        def server_error():
            return "Something broke"

        async with TestClient(app) as client:
            response = await client.get("/boom")
            assert response.status == 500
            assert response.text == "Something broke"

    async def test_failing_error_handler_falls_back(self) -> None:
        app = App()

        @app.route("/boom")
        def boom():
            raise RuntimeError

        @app.error(500)
        def broken():
            raise KeyError("also broken")

        async with TestClient(app) as client:
            response = await client.get("/boom")
            assert response.status == 500
            assert response.text == "Internal Server Error"

    async def test_unconvertible_return_value_is_500(self) -> None:
        app = App()

        @app.route("/odd")
        def odd():
            return object()

        async with TestClient(app) as client:
            response = await client.get("/odd")
            assert response.status == 500

    async def test_failing_404_handler_is_500(self) -> None:
        app = App()
        app.add_route("/", lambda: "home")

        @app.error(404)
        def not_found():
            msg = "lookup table missing"
            raise ValueError(msg)

        async with TestClient(app) as client:
            response = await client.get("/missing")
            assert response.status == 500
            assert response.text == "Internal Server Error"

            assert (await client.get("/")).text == "home"

    async def test_failing_extraction_handler_is_500(self) -> None:
        app = App()

        @app.route("/n/{value}")
        def number(value: int):
            return str(value)

        @app.error(400)
        def bad_request():
            return object()

        async with TestClient(app) as client:
            response = await client.get("/n/abc")
            assert response.status == 500

    async def test_failing_http_error_handler_shows_traceback_in_debug(self) -> None:
        app = App(AppConfig(debug=True))

        @app.error(404)
        def not_found():
            msg = "lookup table missing"
            raise ValueError(msg)

        async with TestClient(app) as client:
            response = await client.get("/missing")
            assert response.status == 500
            assert "ValueError: lookup table missing" in response.text

    async def test_non_latin1_header_is_500(self) -> None:
        app = App()

        @app.route("/arrow")
        def arrow():
            return Response("x").with_header("X-Arrow", "→")

        async with TestClient(app) as client:
            response = await client.get("/arrow")
            assert response.status == 500
            assert response.header("x-arrow") is None

    async def test_header_injection_is_500(self) -> None:
        app = App()

        @app.route("/split")
        def split():
            return Response("x").with_header("X-Note", "a\r\nSet-Cookie: evil=1")

        async with TestClient(app) as client:
            response = await client.get("/split")
            assert response.status == 500
            assert response.header("set-cookie") is None

    async def test_non_ascii_redirect_is_percent_encoded(self) -> None:
        app = App()

        @app.route("/go")
        def go():
            return Redirect("/café/→")

        async with TestClient(app) as client:
            response = await client.get("/go")
            assert response.status == 302
            assert response.header("location") == "/caf%C3%A9/%E2%86%92"


# ---------------------------------------------------------------------------
# Lifespan registration
# ---------------------------------------------------------------------------


class TestLifespanRegistration:
    """on_startup / on_shutdown decorators store hooks correctly."""

    def test_on_startup_stores_hook(self) -> None:
        app = App()

        @app.on_startup
        async def setup():
            pass

        assert app._startup_hooks == [setup]

    def test_on_shutdown_stores_hook(self) -> None:
        app = App()

        @app.on_shutdown
        async def teardown():
            pass

        assert app._shutdown_hooks == [teardown]

    def test_multiple_hooks_preserve_order(self) -> None:
        app = App()

        @app.on_startup
        async def first():
            pass

        @app.on_startup
        async def second():
            pass

        assert app._startup_hooks == [first, second]

    def test_cannot_register_after_freeze(self) -> None:
        app = App()
        app._ensure_frozen()

        with pytest.raises(RuntimeError, match="Cannot modify"):

            @app.on_startup
            async def late():
                pass

    def test_returns_original_function(self) -> None:
        app = App()

        @app.on_shutdown
        async def teardown():
            pass

        assert teardown.__name__ == "teardown"


# ---------------------------------------------------------------------------
# Lifespan ASGI protocol
# ---------------------------------------------------------------------------


async def _lifespan_exchange(
    app: App,
) -> tuple[list[dict[str, Any]], bool]:
    """Drive the full lifespan protocol and return messages sent by the app.

    Returns (sent_messages, startup_ok).
    """
    sent: list[dict[str, Any]] = []
    receive_queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def receive() -> dict[str, Any]:
        return await receive_queue.get()

    async def send(message: dict[str, Any]) -> None:
        sent.append(message)

    scope: dict[str, Any] = {
        "type": "lifespan",
        "asgi": {"version": "3.0", "spec_version": "2.0"},
    }

    task = asyncio.create_task(app(scope, receive, send))

    await receive_queue.put({"type": "lifespan.startup"})
    await asyncio.sleep(0.01)

    startup_ok = any(m["type"] == "lifespan.startup.complete" for m in sent)

    if startup_ok:
        await receive_queue.put({"type": "lifespan.shutdown"})
    # On failure the task has already returned
    await asyncio.wait_for(task, timeout=2.0)

    return sent, startup_ok


class TestLifespanProtocol:
    """Full ASGI lifespan protocol via raw scope/receive/send."""

    async def test_happy_path(self) -> None:
        app = App()
        events: list[str] = []

        @app.route("/")
        def index():
            return "ok"

        @app.on_startup
        async def setup():
            events.append("startup")

        @app.on_worker_startup
        async def worker_setup():
            events.append("worker_startup")

        @app.on_worker_shutdown
        async def worker_teardown():
            events.append("worker_shutdown")

        @app.on_shutdown
        async def teardown():
            events.append("shutdown")

        sent, ok = await _lifespan_exchange(app)

        assert ok is True
        assert events == ["startup", "worker_startup", "worker_shutdown", "shutdown"]
        types = [m["type"] for m in sent]
        assert types == ["lifespan.startup.complete", "lifespan.shutdown.complete"]

    async def test_startup_failure(self) -> None:
        app = App()

        @app.on_startup
        async def bad_setup():
            msg = "Database connection refused"
            raise ConnectionError(msg)

        sent, ok = await _lifespan_exchange(app)

        assert ok is False
        failed = [m for m in sent if m["type"] == "lifespan.startup.failed"]
        assert len(failed) == 1
        assert "Database connection refused" in failed[0]["message"]

    async def test_bad_route_table_fails_startup(self) -> None:
        app = App()

        @app.route("/")
        def index(missing: Database):
            return "never"

        sent, ok = await _lifespan_exchange(app)

        assert ok is False
        assert sent[0]["type"] == "lifespan.startup.failed"

    async def test_sync_hooks(self) -> None:
        app = App()
        events: list[str] = []

        @app.on_startup
        def sync_setup():
            events.append("sync_startup")

        @app.on_shutdown
        def sync_teardown():
            events.append("sync_shutdown")

        _, ok = await _lifespan_exchange(app)

        assert ok is True
        assert events == ["sync_startup", "sync_shutdown"]

    async def test_multiple_hooks_run_in_order(self) -> None:
        app = App()
        order: list[int] = []

        for n in (1, 2, 3):
            app.on_startup(lambda n=n: order.append(n))

        _, ok = await _lifespan_exchange(app)

        assert ok is True
        assert order == [1, 2, 3]

    async def test_app_is_frozen_at_startup(self) -> None:
        """The app is frozen during lifespan startup, not on first HTTP request."""
        app = App()

        @app.route("/")
        def index():
            return "ok"

        assert app.frozen is False
        _, ok = await _lifespan_exchange(app)
        assert ok is True
        assert app.frozen is True


# ---------------------------------------------------------------------------
# Lifespan via TestClient
# ---------------------------------------------------------------------------


class TestLifespanTestClient:
    """Hooks fire during async with TestClient(app)."""

    async def test_startup_hooks_run_on_enter(self) -> None:
        app = App()
        started = False

        @app.on_startup
        async def setup():
            nonlocal started
            started = True

        assert started is False
        async with TestClient(app):
            assert started is True

    async def test_shutdown_hooks_run_on_exit(self) -> None:
        app = App()
        stopped = False

        @app.on_shutdown
        async def teardown():
            nonlocal stopped
            stopped = True

        async with TestClient(app):
            assert stopped is False
        assert stopped is True

    async def test_worker_hooks_wrap_requests(self) -> None:
        app = App()
        events: list[str] = []

        @app.on_worker_startup
        def open_pool():
            events.append("open")

        @app.on_worker_shutdown
        def close_pool():
            events.append("close")

        @app.route("/")
        def index():
            events.append("request")
            return "ok"

        async with TestClient(app) as client:
            await client.get("/")
        assert events == ["open", "request", "close"]

    async def test_state_visible_during_requests(self) -> None:
        """State set in startup hook is visible during request handling."""
        app = App()
        db: dict[str, str] = {}

        @app.on_startup
        async def seed():
            db["status"] = "ready"

        @app.route("/status")
        def status():
            return db.get("status", "not ready")

        @app.on_shutdown
        async def cleanup():
            db.clear()

        async with TestClient(app) as client:
            response = await client.get("/status")
            assert response.text == "ready"

        assert db == {}


# ---------------------------------------------------------------------------
# Per-worker lifecycle hooks
# ---------------------------------------------------------------------------


class TestWorkerLifecycle:
    """on_worker_startup / on_worker_shutdown registration and execution."""

    def test_hooks_are_stored(self) -> None:
        app = App()

        @app.on_worker_startup
        async def create_client():
            pass

        @app.on_worker_shutdown
        async def close_client():
            pass

        assert app._worker_startup_hooks == [create_client]
        assert app._worker_shutdown_hooks == [close_client]

    def test_cannot_register_after_freeze(self) -> None:
        app = App()
        app._ensure_frozen()

        with pytest.raises(RuntimeError, match="Cannot modify"):

            @app.on_worker_shutdown
            async def late():
                pass

    async def test_worker_startup_runs_hooks_in_order(self) -> None:
        app = App()
        order: list[int] = []

        @app.on_worker_startup
        async def first():
            order.append(1)

        @app.on_worker_startup
        def second():
            order.append(2)

        await app.worker_startup()
        assert order == [1, 2]

    async def test_worker_startup_error_propagates(self) -> None:
        app = App()

        @app.on_worker_startup
        async def bad_setup():
            msg = "Cannot connect to database"
            raise ConnectionError(msg)

        with pytest.raises(ConnectionError, match="Cannot connect"):
            await app.worker_startup()

    async def test_no_hooks_registered(self) -> None:
        app = App()
        await app.worker_startup()
        await app.worker_shutdown()
