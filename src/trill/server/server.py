"""The built-in HTTP server: one listening socket, a fixed pool of workers.

Lifecycle::

    server = Server(app)
    server.start()      # bind, app startup hooks, seal state, start workers
    server.pause()      # stop accepting (connections queue in the backlog)
    server.resume()
    server.stop()       # graceful: drain in-flight requests, then shut down

``run()`` is ``start()`` plus blocking until SIGINT/SIGTERM (or a
``stop()`` from another thread), followed by a graceful stop.

Threading model:
    ``start``/``stop``/``pause``/``resume`` are called from ordinary
    threads. Each worker owns a blocking portal (thread + event loop) and
    the server talks to it only through ``portal.call()``.
"""

from __future__ import annotations

import logging
import signal
import socket
import threading
from concurrent.futures import Future
from contextlib import ExitStack
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import anyio
from anyio.from_thread import BlockingPortal, start_blocking_portal

from trill.config import AppConfig
from trill.errors import BindError, StartupError
from trill.server.worker import Worker

if TYPE_CHECKING:
    from trill.app import App

logger = logging.getLogger("trill.server")


def bind_socket(host: str, port: int, backlog: int) -> socket.socket:
    """Create the shared listening socket.

    Raises ``BindError`` if the address cannot be bound.
    """
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    except OSError as exc:
        raise BindError(host, port, str(exc)) from exc

    family, socktype, proto, _, address = infos[0]
    sock = socket.socket(family, socktype, proto)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(address)
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError as exc:
        sock.close()
        raise BindError(host, port, exc.strerror or str(exc)) from exc
    return sock


@dataclass(slots=True)
class _RunningWorker:
    worker: Worker
    portal: BlockingPortal
    future: Future[Any]


class Server:
    """Serves one ``App`` on one address with ``config.resolved_workers`` workers.

    *host* and *port* override the app config; ``port=0`` binds an
    ephemeral port, readable afterwards from ``address``.
    """

    def __init__(
        self,
        app: App,
        config: AppConfig | None = None,
        *,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        base = config or app.config
        self.app = app
        self.config = replace(
            base,
            host=host if host is not None else base.host,
            port=port if port is not None else base.port,
        )
        self._sock: socket.socket | None = None
        self._bound: tuple[str, int] | None = None
        self._stack = ExitStack()
        self._workers: list[_RunningWorker] = []
        self._lock = threading.Lock()
        self._state = "new"
        self._stop_requested = threading.Event()
        self._stopped = threading.Event()

    def __repr__(self) -> str:
        return f"<Server {self.config.host}:{self.config.port} {self._state}>"

    @property
    def address(self) -> tuple[str, int]:
        """The bound ``(host, port)``. Only valid once started."""
        if self._bound is None:
            msg = "Server is not started"
            raise RuntimeError(msg)
        return self._bound

    @property
    def workers(self) -> int:
        """Number of running workers."""
        return len(self._workers)

    @property
    def running(self) -> bool:
        return self._state == "serving"

    # -- Lifecycle --

    def start(self) -> None:
        """Bind, run startup hooks, seal state, and start every worker.

        Returns once all workers are accepting. Raises ``StartupError``
        (``ConfigurationError``, ``RouteConflict``, ``BindError``) and
        leaves nothing running if any step fails.
        """
        with self._lock:
            if self._state != "new":
                msg = f"Server cannot be started twice (state: {self._state})"
                raise RuntimeError(msg)
            self._state = "starting"

        try:
            # Validates the route table before anything is bound
            self.app._ensure_frozen()
            self._sock = bind_socket(self.config.host, self.config.port, self.config.backlog)
            host, port = self._sock.getsockname()[:2]
            self._bound = (host, port)
        except StartupError:
            self._finish()
            raise

        try:
            anyio.run(self.app.startup)
        except Exception as exc:
            self._sock.close()
            self._finish()
            msg = f"Startup hook failed: {exc}"
            raise StartupError(msg) from exc

        self.app.state.seal()

        count = self.config.resolved_workers
        try:
            for index in range(count):
                portal = self._stack.enter_context(start_blocking_portal())
                worker = Worker(self.app, self._sock, self.config, index)
                future, _ = portal.start_task(worker.serve, name=f"trill-worker-{index}")
                self._workers.append(_RunningWorker(worker, portal, future))
        except BaseException:
            self._teardown(graceful=False)
            try:
                anyio.run(self.app.shutdown)
            except Exception:
                logger.exception("Shutdown hook failed")
            self._finish()
            raise

        self._state = "serving"
        bound_host, bound_port = self.address
        logger.info(
            "Serving on http://%s:%d (%d worker%s)",
            bound_host,
            bound_port,
            count,
            "" if count == 1 else "s",
        )

    def pause(self) -> None:
        """Stop accepting new connections on every worker.

        In-flight and keep-alive connections carry on; new clients wait
        in the kernel backlog until ``resume()``.
        """
        for running in self._workers:
            running.portal.call(running.worker.pause)
        logger.info("Paused accepting connections")

    def resume(self) -> None:
        for running in self._workers:
            running.portal.call(running.worker.resume)
        logger.info("Resumed accepting connections")

    def stop(self, graceful: bool = True) -> None:
        """Stop serving and run shutdown hooks. Idempotent.

        Graceful: close the listener and idle connections, let in-flight
        requests finish within ``shutdown_timeout``, then cancel. Otherwise
        cancel every connection at once.
        """
        with self._lock:
            if self._state in ("stopping", "stopped"):
                wait = True
            elif self._state != "serving":
                msg = f"Server is not running (state: {self._state})"
                raise RuntimeError(msg)
            else:
                wait = False
                self._state = "stopping"
        if wait:
            self._stopped.wait()
            return

        logger.info("Shutting down%s", "" if graceful else " (immediate)")
        self._teardown(graceful=graceful)
        try:
            anyio.run(self.app.shutdown)
        except Exception:
            logger.exception("Shutdown hook failed")
        self._finish()
        logger.info("Server stopped")

    def run(self) -> None:
        """Start, block until SIGINT/SIGTERM or ``stop()``, then stop gracefully."""
        self.start()
        previous = self._install_signal_handlers()
        try:
            while not (self._stop_requested.is_set() or self._stopped.is_set()):
                self._stop_requested.wait(0.5)
        finally:
            self._restore_signal_handlers(previous)
            self.stop(graceful=True)

    def __enter__(self) -> Server:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def request_stop(self) -> None:
        """Ask a blocking ``run()`` to stop. Safe from any thread or signal handler."""
        self._stop_requested.set()

    # -- Internal --

    def _teardown(self, graceful: bool) -> None:
        """Stop every started worker, close the socket, release the portals."""
        try:
            for running in self._workers:
                running.portal.call(running.worker.stop_accepting)
            if self._sock is not None:
                self._sock.close()

            if graceful:
                timeout = self.config.shutdown_timeout
                drains = [
                    running.portal.start_task_soon(running.worker.drain, timeout)
                    for running in self._workers
                ]
                for drain in drains:
                    drain.result()

            for running in self._workers:
                running.portal.call(running.worker.cancel)
            for running in self._workers:
                try:
                    running.future.result()
                except Exception:
                    logger.exception("%r exited with an error", running.worker)
        finally:
            self._stack.close()
            self._workers.clear()

    def _finish(self) -> None:
        self._state = "stopped"
        self._stopped.set()

    def _install_signal_handlers(self) -> dict[int, Any]:
        if threading.current_thread() is not threading.main_thread():
            return {}

        def handle(signum: int, frame: object) -> None:
            logger.info("Received %s", signal.Signals(signum).name)
            self.request_stop()

        previous: dict[int, Any] = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, handle)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, Any]) -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
