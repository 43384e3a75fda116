"""Application configuration.

AppConfig is a frozen dataclass — immutable after creation, IDE-autocompletable,
no string-key dict lookups.
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration. Immutable after creation.

    All fields have sensible defaults. Override what you need::

        config = AppConfig(port=8888, workers=2, shutdown_timeout=10.0)
    """

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False

    # Workers
    workers: int = 0  # 0 = one worker per CPU
    backlog: int = 2048

    # Connections
    keep_alive_timeout: float = 5.0
    shutdown_timeout: float = 30.0  # drain bound for in-flight requests on stop

    # Limits
    max_content_length: int = 16 * 1024 * 1024  # 16 MB
    max_header_size: int = 64 * 1024

    # Logging
    access_log: bool = True
    log_format: str = "text"  # "text" or "json"
    log_level: str = "info"

    @property
    def resolved_workers(self) -> int:
        """Worker count with ``0`` expanded to the number of CPUs."""
        if self.workers > 0:
            return self.workers
        return os.cpu_count() or 1
