"""Test utilities for trill applications.

``TestClient`` drives an app through its ASGI interface in-process::

    from trill.testing import TestClient
"""

from trill.testing.client import TestClient

__all__ = [
    "TestClient",
]
