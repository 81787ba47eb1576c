import json
import logging
import os
import sys
from contextlib import contextmanager
from loguru import logger as _loguru_logger
from typing import Optional

_LOGGING_CONFIGURED = False
_logger = _loguru_logger


def production_log_sink(message):
    """Sink for production that writes flat JSON lines to stderr.

    With serialize=True loguru hands us its full JSON record. We flatten it so
    log aggregation tools get one object per line. stdout is never used: it
    carries protocol data when lsmcp runs inside an MCP or LSP host.
    """
    try:
        full_record = json.loads(message)
        record = full_record.get("record", full_record)
    except (json.JSONDecodeError, AttributeError):
        sys.stderr.write(message)
        sys.stderr.flush()
        return

    exception = None
    exc = record.get("exception")
    if exc:
        exception = {
            "type": exc.get("type", {}).get("name", "Exception")
            if isinstance(exc.get("type"), dict)
            else str(exc.get("type", "Exception")),
            "value": exc.get("value", ""),
            "traceback": exc.get("traceback", ""),
        }

    log_data = {
        "timestamp": record.get("time", {}).get("repr", ""),
        "level": record.get("level", {}).get("name", "INFO"),
        "logger": record.get("extra", {}).get("name", record.get("name", "unknown")),
        "function": record.get("function", ""),
        "line": record.get("line", 0),
        "message": record.get("message", ""),
    }

    # session, method, request_id etc. end up at top level
    extras = record.get("extra", {})
    for key, value in extras.items():
        if key != "name":
            log_data[key] = value

    if exception:
        log_data["exception"] = exception

    sys.stderr.write(json.dumps(log_data, default=str) + "\n")
    sys.stderr.flush()


class InterceptHandler(logging.Handler):
    """Intercept standard library logging and route through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = str(record.levelno)

        frame, depth = sys._getframe(6), 6
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging(level: Optional[str] = None):
    """
    Configure unified logging with loguru.

    1. lsmcp modules log through setup_logger()
    2. asyncio and other stdlib loggers are intercepted at WARNING
    3. Everything goes to stderr; stdout belongs to the protocol
    """
    global _LOGGING_CONFIGURED, _logger

    if _LOGGING_CONFIGURED:
        return

    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO").upper()

    env = os.getenv("ENV", "development")

    _logger.remove()

    def patcher(record):
        if "name" not in record["extra"]:
            record["extra"]["name"] = record.get(
                "name", record.get("module", "unknown")
            )

    _logger = _logger.patch(patcher)

    if env == "production":
        _logger.add(
            production_log_sink,
            format="{message}",
            level=level,
            serialize=True,
        )
    else:
        _logger.add(
            sys.stderr,
            format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level> - {extra}",
            level=level,
            colorize=True,
        )

    intercept_handler = InterceptHandler()

    library_levels = {
        "lsmcp": level,
        "asyncio": "WARNING",
    }

    log_level_env = os.getenv("LOG_LEVEL", "INFO").upper()
    if log_level_env == "DEBUG":
        root_level = logging.DEBUG
    else:
        root_level = logging.INFO

    logging.basicConfig(
        handlers=[intercept_handler],
        level=root_level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        force=True,
    )

    for logger_name, log_level in library_levels.items():
        lib_logger = logging.getLogger(logger_name)
        lib_logger.handlers = [intercept_handler]
        lib_logger.setLevel(log_level)
        lib_logger.propagate = False

    logging.getLogger().setLevel(logging.WARNING)

    _LOGGING_CONFIGURED = True


@contextmanager
def log_context(**kwargs):
    """
    Context manager to add session identifiers to all logs within the context.

    Uses Loguru's contextualize(), which is async-safe, so the context follows
    the task that entered it.

    Usage:
        with log_context(session="typescript:/repo"):
            logger.info("Opened document")
    """
    with _logger.contextualize(**kwargs):
        yield


def setup_logger(name: str):
    """
    Setup a logger with the given name.

    Context can be passed as kwargs:
        logger.debug("Sent request", method=method, request_id=request_id)
    """
    if not _LOGGING_CONFIGURED:
        configure_logging()

    return _logger.bind(name=name)
