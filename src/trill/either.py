"""Either — a handler result that is one of two response-producing values.

Some handlers need to answer with different kinds of value depending on a
runtime condition (an error response on one path, plain text on the
other). ``Either`` is the closed union ``Left | Right``; the resolver
unwraps whichever branch was chosen and resolves it exactly as if the
handler had returned that value directly::

    def register(request: Request) -> Either:
        if "name" not in request.query:
            return Left(Response("Bad Data").with_status(400))
        return Right("Hello!")
"""

from dataclasses import dataclass
from typing import Any, TypeAlias


@dataclass(frozen=True, slots=True)
class Left:
    """First branch of an ``Either``."""

    value: Any


@dataclass(frozen=True, slots=True)
class Right:
    """Second branch of an ``Either``."""

    value: Any


Either: TypeAlias = Left | Right
