"""
Logging setup for the API process.

LOG_FORMAT=text: linha legivel no console (dev).
LOG_FORMAT=json: um objeto JSON por linha, para o coletor do container.
Com DEBUG=True tambem grava em backend/logs/billsync.log (rotativo).

Workers Celery nao chamam setup_logging: usam o root logger do Celery.
"""
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from billsync.core.config import settings

LOG_DIR = Path(__file__).resolve().parent.parent.parent / "logs"
LOG_FILE = LOG_DIR / "billsync.log"
MAX_BYTES = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 3
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"

NOISY_LOGGERS = ("httpcore", "httpx", "urllib3", "asyncio", "stripe", "aiosqlite")


class JsonLineFormatter(logging.Formatter):
    """Renders a record as one JSON object (ts, level, logger, message)."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def build_console_formatter(log_format: str) -> logging.Formatter:
    if log_format.lower() == "json":
        return JsonLineFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt=DATE_FORMAT)


def setup_logging() -> None:
    """Configure the root logger once per process."""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # uvicorn --reload reimporta o app
    if root.handlers:
        return

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(build_console_formatter(settings.LOG_FORMAT))
    root.addHandler(console)

    if settings.DEBUG:
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=MAX_BYTES,
                backupCount=BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT))
            root.addHandler(file_handler)
        except OSError as exc:
            root.warning("File logging disabled: cannot write to %s (%s)", LOG_FILE, exc)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
