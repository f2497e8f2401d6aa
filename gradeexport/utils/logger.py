"""
Logging System Module

Structured logging for the grade exporter. Each module asks for a
ContextualLogger, which accepts keyword data next to the message, keeps
track of the export run it is working on and never writes database
passwords to a log.

Features:
- Keyword data appended to console messages and kept as JSON in log files
- Export context (course, group, connection profile) attached to every record
- Operation timers and a timing decorator
- Password masking for database URLs and secret-looking keys
- Rich console handler, rotating JSON files

Usage:
    logger = get_logger(__name__)
    logger.info("Streaming grades", course_id=12, grade_items=4)

    @log_execution_time
    def export_course(course):
        ...
"""

import os
import re
import sys
import json
import time
import logging
import logging.handlers
import threading
import traceback
from dataclasses import dataclass, field, fields
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler


_URL_CREDENTIALS = re.compile(r'(?P<scheme>[a-zA-Z][a-zA-Z0-9+.\-]*://)(?P<user>[^:/@\s]*):(?P<password>[^@/\s]*)@')

SECRET_KEY_MARKERS = ('password', 'passwd', 'secret', 'token', 'master_key')

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def mask_url_credentials(text: str) -> str:
    """Replace the password part of any URL in ``text`` with ``***``."""
    return _URL_CREDENTIALS.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:***@", text)


def mask_secrets(data: Any) -> Any:
    """Recursively hide secret-looking keys and URL passwords."""
    if isinstance(data, dict):
        return {
            key: "***" if any(marker in str(key).lower() for marker in SECRET_KEY_MARKERS)
            else mask_secrets(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(mask_secrets(item) for item in data)
    if isinstance(data, str):
        return mask_url_credentials(data)
    return data


@dataclass
class LogContext:
    """The export run a logger is currently working on."""
    course_id: Optional[int] = None
    course_name: Optional[str] = None
    group_id: Optional[int] = None
    profile_name: Optional[str] = None
    step: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        values = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != 'extra' and getattr(self, f.name) not in (None, '', 0)
        }
        # course 0 is the site course and still worth reporting
        if self.course_id == 0:
            values['course_id'] = 0
        values.update(self.extra)
        return values


class ContextualLogger:
    """
    Wrapper around a standard logger that understands keyword data.

    Keyword arguments passed to a log call are masked, appended to the
    human readable message and attached to the record as
    ``structured_data`` for the JSON file handler. The current
    LogContext travels with each record as ``context``.
    """

    def __init__(self, name: str, base_logger: logging.Logger):
        self.name = name
        self.base_logger = base_logger
        self.context = LogContext()
        self._timers: Dict[str, tuple] = {}
        self._lock = threading.RLock()

    def set_context(self, **kwargs) -> None:
        """Update the context; unknown keys are kept as extra values."""
        with self._lock:
            for key, value in kwargs.items():
                if key != 'extra' and hasattr(self.context, key):
                    setattr(self.context, key, value)
                else:
                    self.context.extra[key] = value

    def clear_context(self) -> None:
        with self._lock:
            self.context = LogContext()

    def _log(self, level: int, message: str, exception: Exception = None, **kwargs) -> None:
        if not self.base_logger.isEnabledFor(level):
            return

        if exception is not None:
            kwargs['exception_type'] = type(exception).__name__
            kwargs['exception_message'] = str(exception)
            if level >= logging.ERROR:
                kwargs['traceback'] = ''.join(traceback.format_exception(
                    type(exception), exception, exception.__traceback__))

        data = mask_secrets(kwargs)
        context = self.context.to_dict()

        text = message
        shown = {k: v for k, v in data.items() if k != 'traceback'}
        if shown:
            text = f"{message} ({', '.join(f'{k}={v}' for k, v in shown.items())})"

        structured = {
            'logger': self.name,
            'message': message,
            'thread_id': threading.get_ident(),
            'process_id': os.getpid(),
        }
        if data:
            structured['data'] = data

        self.base_logger.log(level, text, extra={'structured_data': structured, 'context': context})

    def debug(self, message: str, **kwargs) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, exception: Exception = None, **kwargs) -> None:
        """Log an error; ``exception`` adds its type, message and traceback."""
        self._log(logging.ERROR, message, exception=exception, **kwargs)

    def critical(self, message: str, exception: Exception = None, **kwargs) -> None:
        self._log(logging.CRITICAL, message, exception=exception, **kwargs)

    def start_operation(self, operation_name: str, **kwargs) -> None:
        """
        Start a named timer.

        Args:
            operation_name: Key used again in end_operation()
            **kwargs: Data repeated in the completion message
        """
        with self._lock:
            self._timers[operation_name] = (time.perf_counter(), kwargs)
        self.info(f"Started operation: {operation_name}", **kwargs)

    def end_operation(self, operation_name: str, **kwargs) -> float:
        """
        Stop a named timer and log how long it ran.

        Returns:
            Duration in seconds, or 0.0 when the timer was never started
        """
        with self._lock:
            started = self._timers.pop(operation_name, None)

        if started is None:
            self.warning(f"No timer found for operation: {operation_name}")
            return 0.0

        start, initial = started
        duration = time.perf_counter() - start
        self.info(f"Completed operation: {operation_name}",
                  **initial, **kwargs, duration_seconds=round(duration, 3))
        return duration


class JSONFormatter(logging.Formatter):
    """Formats records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'location': f"{record.module}:{record.funcName}:{record.lineno}",
        }

        structured = getattr(record, 'structured_data', None)
        if structured:
            entry['message'] = structured.get('message', entry['message'])
            entry.update({k: v for k, v in structured.items() if k not in ('logger', 'message')})

        context = getattr(record, 'context', None)
        if context:
            entry['context'] = context

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class GradeExportLoggerSetup:
    """
    Installs the root handlers from the ``logging`` configuration section.

    Recognised keys: level, console_output, use_rich_console, format,
    file_output, logs_folder, max_log_size_mb, backup_count.
    """

    QUIET_LIBRARIES = ('sqlalchemy.engine', 'sqlalchemy.pool', 'markdownify')

    def __init__(self, config: Dict[str, Any] = None):
        self.config = config or {}
        self.console = Console(stderr=True)
        self._loggers: Dict[str, ContextualLogger] = {}
        self._setup_complete = False

    def setup_logging(self) -> None:
        if self._setup_complete:
            return

        root = logging.getLogger()
        level_name = str(self.config.get('level', 'INFO')).upper()
        root.setLevel(getattr(logging, level_name, logging.INFO))

        for handler in list(root.handlers):
            root.removeHandler(handler)

        if self.config.get('console_output', True):
            root.addHandler(self._console_handler())

        if self.config.get('file_output', False):
            for handler in self._file_handlers():
                root.addHandler(handler)

        for name in self.QUIET_LIBRARIES:
            logging.getLogger(name).setLevel(logging.WARNING)

        self._setup_complete = True

    def _console_handler(self) -> logging.Handler:
        if self.config.get('use_rich_console', True):
            return RichHandler(console=self.console, show_path=False, rich_tracebacks=True)

        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(self.config.get('format', DEFAULT_FORMAT)))
        return handler

    def _file_handlers(self):
        """Rotating JSON logs: everything, plus a separate errors-only file."""
        folder = Path(self.config.get('logs_folder', 'logs'))
        folder.mkdir(parents=True, exist_ok=True)

        max_bytes = int(self.config.get('max_log_size_mb', 50)) * 1024 * 1024
        backups = int(self.config.get('backup_count', 5))
        formatter = JSONFormatter()

        handlers = []
        for filename, level in (('gradeexport.log', logging.NOTSET), ('gradeexport_errors.log', logging.ERROR)):
            handler = logging.handlers.RotatingFileHandler(
                folder / filename, maxBytes=max_bytes, backupCount=backups, encoding='utf-8')
            handler.setLevel(level)
            handler.setFormatter(formatter)
            handlers.append(handler)
        return handlers

    def get_logger(self, name: str) -> ContextualLogger:
        if name not in self._loggers:
            self._loggers[name] = ContextualLogger(name, logging.getLogger(name))
        return self._loggers[name]


_logger_setup: Optional[GradeExportLoggerSetup] = None
_setup_lock = threading.Lock()


def setup_logging(config: Dict[str, Any] = None) -> None:
    """
    Install logging handlers once per process.

    Args:
        config: The ``logging`` configuration section
    """
    global _logger_setup

    with _setup_lock:
        if _logger_setup is None:
            _logger_setup = GradeExportLoggerSetup(config)
        elif config is not None and not _logger_setup._setup_complete:
            _logger_setup.config = config
        _logger_setup.setup_logging()


def get_logger(name: str) -> ContextualLogger:
    """
    Return the ContextualLogger for ``name``.

    No handlers are installed here. Until setup_logging() runs, records
    follow whatever the root logger already does.
    """
    global _logger_setup

    with _setup_lock:
        if _logger_setup is None:
            _logger_setup = GradeExportLoggerSetup()
        return _logger_setup.get_logger(name)


def log_execution_time(func: Callable) -> Callable:
    """Time each call of ``func`` with start_operation/end_operation."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        logger = get_logger(func.__module__)
        operation_name = f"{func.__module__}.{func.__name__}"

        logger.start_operation(operation_name)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.end_operation(operation_name, success=False, error=str(e))
            raise
        logger.end_operation(operation_name, success=True)
        return result

    return wrapper
