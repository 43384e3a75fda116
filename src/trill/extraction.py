"""Extractor pipeline — build each handler argument from the request.

Every route gets an argument *plan* when the app freezes: one
``(parameter name, extractor)`` pair per handler parameter, in declared
order. At request time the dispatcher runs the plan and calls the
handler with the results as keyword arguments.

Resolution rules, first match wins:

1. ``request`` parameter (by name or ``Request`` annotation)
2. Path parameters (by name, converted to the annotation)
3. Shared state (annotation is a type registered with ``app.add_state``)
4. Service providers (annotation registered with ``app.provide``)
5. ``bytes`` annotation -> raw request body
6. Dataclass annotation -> query string for GET/HEAD, JSON or
   url-encoded form body otherwise (by Content-Type)

A parameter that matches nothing is a startup error unless it has a
default. Extraction failures raise ``ExtractionError`` (400) and the
handler is never called.

Supported dataclass field types: ``str``, ``int``, ``float``, ``bool``,
and ``X | None`` of those. Missing keys use the field default; a missing
key without a default is an error.
"""

from __future__ import annotations

import dataclasses
import inspect
import types
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar, Union, get_args, get_origin, get_type_hints

from trill._internal.invoke import invoke
from trill.errors import ConfigurationError, ExtractionError
from trill.http.request import Request
from trill.state import State

T = TypeVar("T")


class Extractor(Protocol):
    """Builds one handler argument from a request."""

    async def extract(self, request: Request) -> Any: ...


# -- Extractors --


@dataclass(frozen=True, slots=True)
class RequestExtractor:
    """Hands the request itself to the handler."""

    async def extract(self, request: Request) -> Request:
        return request


@dataclass(frozen=True, slots=True)
class PathParamExtractor:
    """Decodes one path parameter and converts it to the annotated type."""

    name: str
    annotation: Any = inspect.Parameter.empty

    async def extract(self, request: Request) -> Any:
        value = request.path_params[self.name]
        if self.annotation is inspect.Parameter.empty or self.annotation is str:
            return value
        try:
            return _convert(value, self.annotation)
        except (ValueError, TypeError):
            msg = f"Invalid path parameter {self.name!r}: {value!r}"
            raise ExtractionError(msg) from None


@dataclass(frozen=True, slots=True)
class StateExtractor:
    """Returns a shared state instance. Same object for every request."""

    value: object

    async def extract(self, request: Request) -> object:
        return self.value


@dataclass(frozen=True, slots=True)
class ProviderExtractor:
    """Calls a provider factory (sync or async) for each request."""

    factory: Callable[..., Any]

    async def extract(self, request: Request) -> Any:
        return await invoke(self.factory)


@dataclass(frozen=True, slots=True)
class RawBodyExtractor:
    """Reads the request body as bytes."""

    async def extract(self, request: Request) -> bytes:
        return await request.body()


@dataclass(frozen=True, slots=True)
class QueryExtractor:
    """Populates a dataclass from the query string."""

    cls: type

    async def extract(self, request: Request) -> Any:
        return extract_dataclass(self.cls, request.query)


@dataclass(frozen=True, slots=True)
class BodyExtractor:
    """Populates a dataclass from a JSON or url-encoded form body."""

    cls: type

    async def extract(self, request: Request) -> Any:
        ct = request.content_type or ""
        if "json" in ct:
            try:
                data = await request.json()
            except ValueError:
                msg = "Malformed JSON body"
                raise ExtractionError(msg) from None
            if not isinstance(data, dict):
                msg = f"Expected a JSON object, got {type(data).__name__}"
                raise ExtractionError(msg)
        else:
            try:
                data = await request.form()
            except UnicodeDecodeError:
                msg = "Form body is not valid UTF-8"
                raise ExtractionError(msg) from None
        return extract_dataclass(self.cls, data)


@dataclass(frozen=True, slots=True)
class DataclassExtractor:
    """Query string for GET/HEAD, body for every other method."""

    cls: type

    async def extract(self, request: Request) -> Any:
        if request.method in ("GET", "HEAD"):
            return await QueryExtractor(self.cls).extract(request)
        return await BodyExtractor(self.cls).extract(request)


# -- Plan building --


def build_plan(
    handler: Callable[..., Any],
    path_params: frozenset[str],
    state: State,
    providers: Mapping[type, Callable[..., Any]] | None = None,
) -> tuple[tuple[str, Extractor], ...]:
    """Resolve an extractor for every parameter of *handler*.

    Raises ``ConfigurationError`` when a parameter without a default
    cannot be resolved, or when the annotations cannot be evaluated.
    """
    try:
        sig = inspect.signature(handler, eval_str=True)
    except NameError as exc:
        msg = f"Cannot evaluate annotations of {_describe(handler)}: {exc}"
        raise ConfigurationError(msg) from exc

    plan: list[tuple[str, Extractor]] = []
    for name, param in sig.parameters.items():
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        extractor = _resolve(name, param.annotation, path_params, state, providers or {})
        if extractor is None:
            if param.default is not inspect.Parameter.empty:
                continue
            msg = (
                f"Cannot resolve parameter {name!r} of {_describe(handler)}. "
                "Handler parameters must be 'request', a path parameter, registered "
                "state, a provided type, bytes, or a dataclass."
            )
            raise ConfigurationError(msg)
        plan.append((name, extractor))
    return tuple(plan)


def _resolve(
    name: str,
    annotation: Any,
    path_params: frozenset[str],
    state: State,
    providers: Mapping[type, Callable[..., Any]],
) -> Extractor | None:
    empty = inspect.Parameter.empty
    if name == "request" or annotation is Request:
        return RequestExtractor()
    if name in path_params:
        return PathParamExtractor(name, annotation)
    if annotation is empty:
        return None
    if annotation in state:
        return StateExtractor(state.get(annotation))
    if annotation in providers:
        return ProviderExtractor(providers[annotation])
    if annotation is bytes:
        return RawBodyExtractor()
    if is_extractable_dataclass(annotation):
        return DataclassExtractor(annotation)
    return None


async def run_plan(plan: tuple[tuple[str, Extractor], ...], request: Request) -> dict[str, Any]:
    """Run every extractor in order. The first failure propagates."""
    kwargs: dict[str, Any] = {}
    for name, extractor in plan:
        kwargs[name] = await extractor.extract(request)
    return kwargs


def _describe(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


# -- Dataclass population --


def is_extractable_dataclass(annotation: Any) -> bool:
    """Return True if *annotation* is a user-defined dataclass type.

    Excludes trill's own dataclass types (``Request``, ``Response``, etc.)
    which should never be auto-extracted from query/form data.
    """
    if not isinstance(annotation, type) or not dataclasses.is_dataclass(annotation):
        return False

    module = getattr(annotation, "__module__", "") or ""
    return not module.startswith("trill.")


def extract_dataclass(cls: type[T], data: Mapping[str, Any]) -> T:
    """Create a dataclass instance from a mapping (query params, form, JSON).

    For each init field of *cls*, looks up the field name in *data* and
    converts the value to the field's annotated type.

    Raises:
        ExtractionError: A required field is missing or a value cannot
            be converted.
    """
    hints = _field_types(cls)
    kwargs: dict[str, Any] = {}

    for f in dataclasses.fields(cls):  # type: ignore[arg-type]
        if not f.init:
            continue
        if f.name not in data:
            if f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
                msg = f"Missing required field {f.name!r}"
                raise ExtractionError(msg)
            continue

        raw = data[f.name]
        target_type = hints.get(f.name, f.type)
        try:
            kwargs[f.name] = _convert(raw, target_type)
        except (ValueError, TypeError):
            msg = f"Invalid value for {f.name!r}: {raw!r}"
            raise ExtractionError(msg) from None

    return cls(**kwargs)


def _field_types(cls: type) -> dict[str, Any]:
    """Evaluated field annotations, falling back to builtin name lookup."""
    try:
        return get_type_hints(cls)
    except NameError:
        return {f.name: _resolve_type(f.type) for f in dataclasses.fields(cls)}


def _convert(value: Any, target_type: Any) -> Any:
    """Convert *value* to *target_type*.

    Raises ``ValueError`` or ``TypeError`` when the value does not fit.
    Unknown target types pass the value through unchanged.
    """
    if isinstance(target_type, str):
        target_type = _resolve_type(target_type)

    origin = get_origin(target_type)
    if origin is Union or origin is types.UnionType:
        args = [a for a in get_args(target_type) if a is not type(None)]
        if value is None or value == "":
            if len(args) < len(get_args(target_type)):
                return None
        if len(args) == 1:
            return _convert(value, args[0])
        return value

    if target_type is str:
        if isinstance(value, (dict, list)):
            msg = "expected a string"
            raise TypeError(msg)
        s = str(value)
        return s.strip() if isinstance(value, str) else s

    if target_type is int:
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            msg = "expected an integer"
            raise TypeError(msg)
        return int(value)

    if target_type is float:
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            msg = "expected a number"
            raise TypeError(msg)
        return float(value)

    if target_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    # Unknown type — return raw value
    return value


def _resolve_type(name: Any) -> Any:
    """Resolve common type names from string annotations."""
    if not isinstance(name, str):
        return name
    _builtins: dict[str, type] = {
        "str": str,
        "int": int,
        "float": float,
        "bool": bool,
    }
    return _builtins.get(name, name)
