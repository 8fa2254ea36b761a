"""
Logging setup.

Module loggers everywhere (logging.getLogger(__name__)); this module only
installs the root handler and a filter that keeps API keys out of logs.
"""

from __future__ import annotations

import logging
import re
import sys
from logging import LogRecord

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RedactingFilter(logging.Filter):
    """Masks API keys in log messages and string args."""

    SENSITIVE_PATTERNS = [
        (r"(key=)([^&\s]+)", r"\1REDACTED"),
        (r"(api_key=)([^&\s]+)", r"\1REDACTED"),
        (r"AIza[0-9A-Za-z_\-]{20,}", "[API_KEY_REDACTED]"),
    ]

    def filter(self, record: LogRecord) -> bool:
        record.msg = self._redact(str(record.msg))
        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self._redact(v) if isinstance(v, str) else v for k, v in record.args.items()
                }
            else:
                record.args = tuple(self._redact(a) if isinstance(a, str) else a for a in record.args)
        return True

    def _redact(self, text: str) -> str:
        result = text
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            result = re.sub(pattern, replacement, result)
        return result


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Don't stack handlers when the app factory runs more than once
    for h in root.handlers:
        if getattr(h, "_productgallery", False):
            return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RedactingFilter())
    handler._productgallery = True  # type: ignore[attr-defined]
    root.addHandler(handler)

    # httpx logs full request URLs (with key=...) at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
