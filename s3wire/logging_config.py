"""Logging setup for the s3wire package.

Library modules only call ``logging.getLogger(__name__)``; the front end
calls setup_logging() once to attach a rich handler to the ``s3wire``
logger. Secrets (signatures, credentials, secret keys) are masked before
anything is written.
"""

import logging
import os
import re
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_LEVEL_ENV = "S3WIRE_LOG_LEVEL"
ROOT_LOGGER = "s3wire"

MASK = "***MASKED***"


class SensitiveDataFilter(logging.Filter):
    """Mask credentials and signatures in log records."""

    PATTERNS = [
        (re.compile(r"(X-Amz-Signature=)([0-9a-fA-F]+)"), rf"\1{MASK}"),
        (re.compile(r"(X-Amz-Credential=)([^&\s]+)"), rf"\1{MASK}"),
        (re.compile(r"(Signature=)([0-9a-fA-F]+)"), rf"\1{MASK}"),
        (re.compile(r"(Credential=)([^,&\s]+)"), rf"\1{MASK}"),
        (re.compile(r'(secret[_-]?key["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), rf"\1{MASK}"),
        (re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)([^"\'}\n]+)', re.IGNORECASE), rf"\1{MASK}"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Mask sensitive data in the log message."""
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)

        return True

    @classmethod
    def mask(cls, text: str) -> str:
        for pattern, replacement in cls.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _mask_value(self, value):
        if isinstance(value, str):
            return self.mask(value)
        return value


def setup_logging(
    level: Optional[str] = None,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Configure the ``s3wire`` logger.

    Args:
        level: Log level name. Defaults to $S3WIRE_LOG_LEVEL or WARNING.
        console: Rich console to log to (defaults to stderr).

    Returns:
        The configured package logger.
    """
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, "WARNING")
    numeric = getattr(logging, level.upper(), logging.WARNING)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric)

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
        markup=False,
    )
    handler.setLevel(numeric)
    handler.addFilter(SensitiveDataFilter())
    logger.addHandler(handler)
    logger.propagate = False

    return logger
