"""Fixtures for the example apps.

Every example directory holds an ``app.py`` defining ``app`` and a
``test_app.py`` beside it. Apps freeze on first use, so each test loads
its own copy of the module.
"""

import importlib.util
import itertools
import sys
from pathlib import Path

import pytest

from trill.app import App

_load_count = itertools.count()


def load_example(app_path: Path) -> App:
    """Execute *app_path* as a fresh module and return its ``app``.

    The module is registered in ``sys.modules`` while it runs so that
    dataclasses and annotations defined in it resolve.
    """
    name = f"trill_example_{app_path.parent.name}_{next(_load_count)}"
    spec = importlib.util.spec_from_file_location(name, app_path)
    if spec is None or spec.loader is None:
        msg = f"cannot load {app_path}"
        raise ImportError(msg)
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    spec.loader.exec_module(module)
    app = getattr(module, "app", None)
    if not isinstance(app, App):
        msg = f"{app_path} does not define an App named 'app'"
        raise TypeError(msg)
    return app


@pytest.fixture
def example_app(request: pytest.FixtureRequest):
    """The ``app`` from the ``app.py`` next to the requesting test."""
    before = set(sys.modules)
    yield load_example(Path(request.path).parent / "app.py")
    for name in set(sys.modules) - before:
        if name.startswith("trill_example_"):
            del sys.modules[name]
