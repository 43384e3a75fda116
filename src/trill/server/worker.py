"""One server worker: an event loop accepting from the shared socket.

Each worker runs inside its own anyio blocking portal (a thread with its
own event loop). It compiles a private route table, wraps a duplicate of
the server's listening socket, runs the per-worker startup hooks, and
serves every accepted connection as a task in its task group.

The ``Server`` drives a worker only through ``portal.call()``:
``pause`` / ``resume`` / ``stop_accepting`` / ``drain`` / ``cancel``.
"""

from __future__ import annotations

import functools
import logging
import socket
from typing import TYPE_CHECKING

import anyio
from anyio.abc import ByteStream, SocketListener, TaskGroup, TaskStatus

from trill.config import AppConfig
from trill.errors import StartupError
from trill.server.protocol import ConnectionTracker, HTTPConnection, RequestHandler

if TYPE_CHECKING:
    from trill.app import App

logger = logging.getLogger("trill.server")


class Worker:
    """Accept loop and connection tasks for one event loop."""

    def __init__(self, app: App, sock: socket.socket, config: AppConfig, index: int) -> None:
        self.app = app
        self.index = index
        self._sock = sock
        self._config = config
        self._listener: SocketListener | None = None
        self._task_group: TaskGroup | None = None
        self._tracker: ConnectionTracker | None = None
        self._accept_scope: anyio.CancelScope | None = None
        self._gate: anyio.Event | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<Worker {self.index}>"

    async def serve(self, *, task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED) -> None:
        """Run until cancelled. Reports started once it is accepting."""
        router = self.app.compile_router()
        handler = functools.partial(self.app.handle, router=router)

        self._listener = await SocketListener.from_socket(self._sock.dup())
        try:
            await self.app.worker_startup()
        except Exception as exc:
            await self._listener.aclose()
            msg = f"Worker {self.index} startup hook failed: {exc}"
            raise StartupError(msg) from exc

        self._tracker = ConnectionTracker()
        self._gate = anyio.Event()
        self._gate.set()

        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                tg.start_soon(self._accept_loop, handler)
                logger.debug("Worker %d accepting", self.index)
                task_status.started()
        finally:
            with anyio.CancelScope(shield=True):
                await self._close_listener()
                try:
                    await self.app.worker_shutdown()
                except Exception:
                    logger.exception("Worker %d shutdown hook failed", self.index)
            logger.debug("Worker %d stopped", self.index)

    async def _accept_loop(self, handler: RequestHandler) -> None:
        listener = self._listener
        assert listener is not None and self._tracker is not None and self._task_group is not None
        while not self._closed:
            assert self._gate is not None
            await self._gate.wait()
            if self._closed:
                break

            stream: ByteStream | None = None
            with anyio.CancelScope() as scope:
                self._accept_scope = scope
                try:
                    stream = await listener.accept()
                except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                    break
                finally:
                    self._accept_scope = None

            if stream is not None:
                connection = HTTPConnection(stream, handler, self._config, self._tracker)
                self._task_group.start_soon(connection.serve)

    # -- Control, called through the worker's portal --

    def pause(self) -> None:
        """Stop accepting. Queued connections wait in the kernel backlog."""
        self._gate = anyio.Event()
        if self._accept_scope is not None:
            self._accept_scope.cancel()

    def resume(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def stop_accepting(self) -> None:
        """Leave the accept loop for good and close this worker's listener."""
        self._closed = True
        if self._accept_scope is not None:
            self._accept_scope.cancel()
        if self._gate is not None:
            self._gate.set()
        await self._close_listener()

    async def drain(self, timeout: float) -> None:
        """Close idle connections, wait up to *timeout* for in-flight
        requests, then cancel whatever is left."""
        if self._tracker is not None:
            self._tracker.start_draining()
            if not await self._tracker.wait_drained(timeout):
                logger.warning(
                    "Worker %d: %d request(s) still running after %.1fs, cancelling",
                    self.index,
                    self._tracker.inflight,
                    timeout,
                )
        self.cancel()

    def cancel(self) -> None:
        """Cancel the accept loop and every connection task immediately."""
        self._closed = True
        if self._task_group is not None:
            self._task_group.cancel_scope.cancel()

    async def _close_listener(self) -> None:
        if self._listener is not None:
            listener, self._listener = self._listener, None
            await listener.aclose()
