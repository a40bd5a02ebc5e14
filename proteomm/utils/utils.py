import logging
import sys
import time
from contextlib import contextmanager
from functools import wraps

logger = logging.getLogger("proteomm")

_indent_level = 0
_INDENT = "  "


def configure_logging(level: int = logging.INFO) -> None:
    """Attach a console handler to the package logger (called once by the CLI)."""
    if any(getattr(h, "_proteomm", False) for h in logger.handlers):
        logger.setLevel(level)
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)-7s | %(message)s", "%H:%M:%S"))
    handler._proteomm = True
    logger.addHandler(handler)
    logger.setLevel(level)


def _prefix() -> str:
    return _INDENT * _indent_level


def log_info(msg: str) -> None:
    logger.info(f"{_prefix()}{msg}")


def log_warning(msg: str) -> None:
    logger.warning(f"{_prefix()}{msg}")


def log_debug(msg: str) -> None:
    logger.debug(f"{_prefix()}{msg}")


@contextmanager
def log_indent(steps: int = 1):
    """Nest every message logged inside the block."""
    global _indent_level
    _indent_level += steps
    try:
        yield
    finally:
        _indent_level -= steps


def log_time(label: str):
    """Decorator logging start and wall time of a pipeline step."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{label}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            log_info(f"{label} done ({time.perf_counter() - start:.2f}s)")
            return result
        return wrapper
    return decorator
