"""Logging setup for ReBrowse.

Modules log through ``logging.getLogger(__name__)``. This module only wires
the ``ReBrowse`` logger hierarchy to a handler and makes sure access tokens
never reach a log record.
"""

from __future__ import annotations

import logging
import re

_ROOT_LOGGER = "ReBrowse"

_SENSITIVE_PATTERNS = [
    (re.compile(r"(Bearer|token|Basic)\s+[A-Za-z0-9_\-\.=:+/]{8,}", re.IGNORECASE), r"\1 [REDACTED]"),
    (re.compile(r"\b(ghp|gho|ghu|ghs|ghr)_[A-Za-z0-9]{20,}\b"), "[REDACTED]"),
    (re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"), "[REDACTED]"),
    (
        re.compile(
            r"\b(access_token|refresh_token|secret|token|password|pat)(['\"]?\s*[:=]\s*['\"]?)[^'\"&\s,]+",
            re.IGNORECASE,
        ),
        r"\1\2[REDACTED]",
    ),
]


def mask_sensitive_data(text: str) -> str:
    """Replace anything that looks like a credential with a placeholder."""
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class RedactingFilter(logging.Filter):
    """Masks credentials in the formatted message of every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_sensitive_data(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging(
    level: int | str = logging.INFO,
    handler: logging.Handler | None = None,
    format_string: str | None = None,
) -> logging.Logger:
    """Attach a (redacting) handler to the ``ReBrowse`` logger hierarchy."""
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(level)

    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            format_string or "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    )
    handler.addFilter(RedactingFilter())

    for existing in list(logger.handlers):
        if getattr(existing, "_rebrowse_handler", False):
            logger.removeHandler(existing)
    handler._rebrowse_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger
