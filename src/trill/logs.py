"""Process logging setup for ``app.run()``.

Library modules only call ``logging.getLogger("trill.*")``; nothing is
configured on import. ``configure_logging`` attaches one stderr handler
to the ``trill`` logger with either a human-readable or a JSON-lines
format.

Loggers:
    trill.server  startup, shutdown, unhandled handler errors
    trill.access  one line per completed request
"""

import json
import logging
import sys
import time

_HANDLER_NAME = "trill.default"

TEXT_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record.

    ``extra=`` fields passed to the logging call are merged into the object.
    """

    _reserved = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None)))

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in self._reserved and key not in entry and key != "message":
                entry[key] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "info", fmt: str = "text") -> logging.Logger:
    """Attach trill's stderr handler, replacing one from an earlier call.

    Args:
        level: Standard level name (``debug``, ``info``, ``warning``...).
        fmt: ``"text"`` or ``"json"``.
    """
    logger = logging.getLogger("trill")
    for existing in list(logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger
