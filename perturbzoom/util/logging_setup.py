import logging
import logging.handlers
import multiprocessing as mp
import time
from contextlib import contextmanager
from typing import Iterator, Optional

_LOGGER_NAME = "perturbzoom"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """The package logger, or its ``perturbzoom.<name>`` child."""
    if name:
        return logging.getLogger(f"{_LOGGER_NAME}.{name}")
    return logging.getLogger(_LOGGER_NAME)


def parse_level(name: str) -> int:
    key = str(name).strip().upper()
    if key not in _LEVELS:
        raise ValueError(f"log level must be one of {', '.join(_LEVELS)}")
    return getattr(logging, key)


def _build_formatter() -> logging.Formatter:
    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03dZ %(processName)s/%(threadName)s %(levelname)s %(name)s - %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    fmt.converter = time.gmtime
    return fmt


def configure_root_logging(
    *,
    level: int = logging.INFO,
    console: bool = True,
    log_file: Optional[str] = "perturbzoom.log",
    rotate_bytes: int = 5 * 1024 * 1024,
    rotate_count: int = 5,
) -> logging.Logger:
    """Install console/rotating-file handlers on the package logger, replacing old ones."""
    logger = get_logger()
    logger.setLevel(level)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    fmt = _build_formatter()
    handlers = []
    if console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file, maxBytes=rotate_bytes, backupCount=rotate_count, encoding="utf-8"
        ))
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(fmt)
        logger.addHandler(h)
    return logger


@contextmanager
def log_duration(logger: logging.Logger, what: str, level: int = logging.DEBUG) -> Iterator[None]:
    start = time.perf_counter()
    logger.log(level, "%s start", what)
    try:
        yield
    finally:
        logger.log(level, "%s took %.3fs", what, time.perf_counter() - start)


def create_log_queue() -> mp.Queue:
    return mp.Queue(-1)


def start_queue_listener(queue: mp.Queue, listener_logger: logging.Logger) -> logging.handlers.QueueListener:
    listener = logging.handlers.QueueListener(queue, *listener_logger.handlers, respect_handler_level=True)
    listener.start()
    return listener


def logging_initialiser(queue: Optional[mp.Queue], level: int) -> None:
    """Process-pool initializer: forward this process's records to the parent's listener."""
    if queue is None:
        return
    logger = get_logger()
    logger.setLevel(level)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
    qh = logging.handlers.QueueHandler(queue)
    qh.setLevel(level)
    logger.addHandler(qh)
