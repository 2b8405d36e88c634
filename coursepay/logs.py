from __future__ import annotations

import logging
import re
import sys
from typing import Any

# user:password@ in any scheme://, including redis://:password@
DSN_PASSWORD_RE = re.compile(r"(?i)(\w+(?:\+\w+)?://[^:/@\s]*:)([^@\s]+)(@)")
SECRET_ASSIGNMENT_RE = re.compile(
    r"(?i)((?:password|secret|token)\s*[:=]\s*)([^\s,;\"'&]+)"
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(event)s] %(message)s"


def mask_secrets(text: str) -> str:
    text = DSN_PASSWORD_RE.sub(r"\1***\3", text)
    return SECRET_ASSIGNMENT_RE.sub(r"\1***", text)


def _masked(value: Any) -> Any:
    return mask_secrets(value) if isinstance(value, str) else value


class _EventDefaults(logging.Filter):
    # records from third-party loggers carry no event field
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "event"):
            record.event = "-"
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if any(getattr(h, "_coursepay", False) for h in root.handlers):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_EventDefaults())
    handler._coursepay = True
    root.addHandler(handler)
    root.setLevel(level.upper())


def log_event(
    logger: logging.Logger,
    *,
    level: str,
    event: str,
    message: str,
    **fields: Any,
) -> None:
    extra = {"event": event}
    extra.update({key: _masked(value) for key, value in fields.items()})
    safe_message = mask_secrets(message)

    if level == "debug":
        logger.debug(safe_message, extra=extra)
        return
    if level == "info":
        logger.info(safe_message, extra=extra)
        return
    if level == "warning":
        logger.warning(safe_message, extra=extra)
        return
    if level == "error":
        logger.error(safe_message, extra=extra)
        return
    if level == "exception":
        logger.exception(safe_message, extra=extra)
        return

    logger.log(logging.INFO, safe_message, extra=extra)
