"""Repeatable name/value fields: request headers and query parameters.

Both arrive as ordered ``(name, value)`` pairs in which a name may
repeat. Item access returns the first value for a name and ``get_list``
returns all of them in arrival order. Header names fold to lower case;
query keys are matched exactly.

The wire parser, the ASGI request and the extractors all read through
these two classes.
"""

from collections.abc import Iterable, Iterator, Mapping
from urllib.parse import parse_qsl


class Fields(Mapping[str, str]):
    """Ordered, immutable multi-valued ``str`` mapping."""

    __slots__ = ("_index", "_pairs")

    def __init__(self, pairs: Iterable[tuple[str, str]] = ()) -> None:
        self._pairs = tuple(pairs)
        index: dict[str, list[str]] = {}
        for name, value in self._pairs:
            index.setdefault(self._fold(name), []).append(value)
        self._index = index

    @staticmethod
    def _fold(name: str) -> str:
        return name

    def __getitem__(self, key: str) -> str:
        return self._index[self._fold(key)][0]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._fold(key) in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self._pairs)!r})"

    def get_list(self, key: str) -> list[str]:
        """Every value for *key*, in arrival order."""
        return list(self._index.get(self._fold(key), ()))

    @property
    def pairs(self) -> tuple[tuple[str, str], ...]:
        """The fields as received, names unfolded."""
        return self._pairs


class Headers(Fields):
    """Request headers. Names are case-insensitive and iterate lower-cased."""

    __slots__ = ()

    @staticmethod
    def _fold(name: str) -> str:
        return name.lower()

    @classmethod
    def from_raw(cls, raw: Iterable[tuple[bytes, bytes]]) -> "Headers":
        """Decode latin-1 byte pairs, as found on the wire and in ASGI scopes."""
        return cls((name.decode("latin-1"), value.decode("latin-1")) for name, value in raw)

    def tokens(self, key: str) -> list[str]:
        """Lower-cased comma-separated tokens across every *key* header.

        ``Transfer-Encoding: gzip, chunked`` gives ``["gzip", "chunked"]``.
        """
        return [
            token
            for value in self.get_list(key)
            for part in value.split(",")
            if (token := part.strip().lower())
        ]

    def has_token(self, key: str, token: str) -> bool:
        """Whether a list header such as ``Connection`` names *token*."""
        return token.lower() in self.tokens(key)


class QueryParams(Fields):
    """Decoded query string parameters.

    Blank values (``?flag=``) and bare keys (``?flag``) are kept as ``""``,
    so presence checks work for both.
    """

    __slots__ = ()

    @classmethod
    def parse(cls, query_string: bytes) -> "QueryParams":
        return cls(parse_qsl(query_string.decode("latin-1"), keep_blank_values=True))
