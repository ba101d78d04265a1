"""Logging for the sync job: console progress plus JSON lines under logs/."""

import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from aliprice.config import settings

# Query-string credentials that may appear inside an exception message or URL
_SECRET_PARAM = re.compile(r"\b(sign|app_key|app_secret|session)=([^&\s'\"]+)")

# Context keys passed through get_logger() that the console line shows
CONSOLE_CONTEXT = ("category_id", "product_id", "date_key")


def scrub(text: str) -> str:
    return _SECRET_PARAM.sub(lambda m: f"{m.group(1)}=***", text)


class RedactSecretsFilter(logging.Filter):
    """Masks gateway credentials in the rendered message before any handler sees it."""

    def filter(self, record):
        message = record.getMessage()
        cleaned = scrub(message)
        if cleaned != message:
            record.msg, record.args = cleaned, None
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line with level, logger and call site."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"


class ConsoleFormatter(logging.Formatter):
    """Plain text line with any sync context appended as key=value pairs."""

    def format(self, record):
        line = super().format(record)
        context = " ".join(
            f"{key}={getattr(record, key)}" for key in CONSOLE_CONTEXT if hasattr(record, key)
        )
        return f"{line} [{context}]" if context else line


def setup_logging(base_dir: str | Path | None = None, level: str | None = None):
    """Configure the root logger for a sync run.

    Args:
        base_dir: Directory that receives logs/ (current directory if omitted)
        level: Level name overriding settings.log_level
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper()))
    root_logger.handlers.clear()

    redact = RedactSecretsFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    run_handler = logging.FileHandler(logs_dir / "app.log", encoding="utf-8")
    run_handler.setFormatter(json_formatter)

    error_handler = logging.FileHandler(logs_dir / "error.log", encoding="utf-8")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)

    for handler in (console_handler, run_handler, error_handler):
        handler.addFilter(redact)
        root_logger.addHandler(handler)

    # httpx logs every request at INFO, signed query string included
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter whose context ends up as extra fields on every record."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger bound to sync context.

    Args:
        name: Logger name (usually __name__)
        **context: Fields such as product_id=1005001, category_id=2, date_key="2024-05-01"

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
