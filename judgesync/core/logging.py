from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_RESERVED_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

_configured = False


class ContextFormatter(logging.Formatter):
    """Append the ``extra=`` fields of a record as sorted ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        rendered = super().format(record)
        context = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
        if not context:
            return rendered
        pairs = " ".join(f"{key}={context[key]}" for key in sorted(context))
        head, newline, tail = rendered.partition("\n")
        return f"{head} | {pairs}{newline}{tail}"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr handler on the ``judgesync`` logger tree.

    Repeated calls only adjust the level, so the API lifespan and the worker
    script can both call it safely.
    """
    global _configured

    normalized = level.upper().strip()
    numeric_level = logging.getLevelName(normalized)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger("judgesync")
    root.setLevel(numeric_level)
    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ContextFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True
