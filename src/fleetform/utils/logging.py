"""Logging setup: colored console output plus JSON-lines files.

Structured fields (resource, operation, member) reach records either via
``extra=`` on a single call or via ``LogContext`` for a block of work.
"""

import logging
import json
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


STRUCTURED_FIELDS = ('resource_id', 'resource_type', 'operation', 'duration', 'member_id')

QUIET_LIBRARIES = ('boto3', 'botocore', 'urllib3')

_context: ContextVar[Dict[str, Any]] = ContextVar('fleetform_log_context', default={})


class ContextFilter(logging.Filter):
    """Copies active LogContext fields onto records that do not set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log files."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'thread': record.threadName,
            'message': record.getMessage(),
        }
        log_data.update({key: getattr(record, key) for key in STRUCTURED_FIELDS if hasattr(record, key)})

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL [resource] message`` with ANSI level colors."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, color: bool = True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8}"
        if self.color and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        message = record.getMessage()
        subject = getattr(record, 'resource_id', None) or getattr(record, 'member_id', None)
        if subject:
            message = f"[{subject}] {message}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        return f"{timestamp} {level} {message}"


def setup_logging(log_level: str = 'info', log_dir: Optional[str] = '.fleetform/logs') -> Optional[Path]:
    """Install the console handler and, with a ``log_dir``, a daily JSON-lines file.

    Args:
        log_level: Console level (debug, info, warning, error, critical)
        log_dir: Directory for log files, or None to log to the console only

    Returns:
        Path of the log file, if one was opened
    """
    level = getattr(logging, log_level.upper())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter(color=sys.stderr.isatty()))
    console_handler.addFilter(ContextFilter())
    root_logger.addHandler(console_handler)

    log_file = None
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / f"fleetform-{datetime.now(timezone.utc):%Y%m%d}.jsonl"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(ContextFilter())
        root_logger.addHandler(file_handler)

    # The file always gets debug records; the console filters by its own level
    root_logger.setLevel(logging.DEBUG if log_file else level)

    for name in QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(logging.WARNING)

    return log_file


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically ``get_logger(__name__)``)."""
    return logging.getLogger(name)


class LogContext:
    """Adds structured fields to every record logged inside the block.

    Fields are kept in a context variable, so they apply to the current
    thread only; worker threads pass their own fields with ``extra=``.
    """

    def __init__(self, logger: logging.Logger, **kwargs: Any):
        self.logger = logger
        self.context = kwargs
        self._token = None

    def __enter__(self):
        self._token = _context.set({**_context.get(), **self.context})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            _context.reset(self._token)
            self._token = None
