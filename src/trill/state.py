"""Shared application state — one instance per type, shared by every worker.

The container is built during setup, sealed by the server before the
first worker starts, and read (never copied) by handlers through the
state extractor::

    @dataclass
    class AppState:
        app_name: str

    app.add_state(AppState(app_name="Trill_state"))

    @app.route("/")
    def index(data: AppState):
        return f"Hello World {data.app_name}"

Thread safety:
    Lookups after sealing are plain dict reads and need no lock.
    The container does not synchronize access to the objects it holds:
    state with mutable fields must guard them itself (a ``threading.Lock``
    works across worker threads).
"""

import threading
from collections.abc import Iterator
from typing import TypeVar

from trill.errors import ConfigurationError

T = TypeVar("T")


class State:
    """Type-keyed container for process-wide application state."""

    __slots__ = ("_lock", "_sealed", "_values")

    def __init__(self) -> None:
        self._values: dict[type, object] = {}
        self._sealed = False
        self._lock = threading.Lock()

    def add(self, value: object) -> None:
        """Register *value* under its own type.

        Raises ``ConfigurationError`` once sealed, or when an instance of
        the same type is already registered.
        """
        with self._lock:
            if self._sealed:
                msg = (
                    f"Cannot register {type(value).__name__} state after workers have "
                    "started. Register shared state before starting the server."
                )
                raise ConfigurationError(msg)
            key = type(value)
            if key in self._values:
                msg = f"State of type {key.__name__} is already registered."
                raise ConfigurationError(msg)
            self._values[key] = value

    def seal(self) -> None:
        """Forbid further registration. Idempotent."""
        with self._lock:
            self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def get(self, key: type[T]) -> T:
        """Return the instance registered for *key*.

        Raises ``LookupError`` if nothing is registered for it.
        """
        try:
            return self._values[key]  # type: ignore[return-value]
        except KeyError:
            msg = f"No state registered for {key.__name__}"
            raise LookupError(msg) from None

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[type]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        names = ", ".join(t.__name__ for t in self._values)
        return f"<State [{names}]{' sealed' if self._sealed else ''}>"
