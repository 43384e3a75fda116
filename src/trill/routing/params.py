"""Path parameter converters.

Built-in converters for route path segments like ``{id:int}``.
"""


# (regex_pattern, python_type) for each supported converter
CONVERTERS: dict[str, tuple[str, type]] = {
    "str": (r"[^/]+", str),
    "int": (r"\d+", int),
    "float": (r"\d+(?:\.\d+)?", float),
    "path": (r".+", str),
}

# Order in which parameter edges are tried at one trie level: narrower
# patterns first, so ``/n/{id:int}`` wins over ``/n/{slug}`` for "42".
SPECIFICITY: dict[str, int] = {"int": 0, "float": 1, "str": 2}

