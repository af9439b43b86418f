"""
Logging utilities with correlation ID support for better tracing

Every inbound webhook gets a correlation ID so the intent/booking handling and
the (possibly background) delivery attempts can be followed in the logs.
"""
import sys
import time
import uuid
from typing import Optional
from contextvars import ContextVar
from functools import wraps
from loguru import logger

# Set per inbound request; background tasks inherit a copy of the context
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def get_correlation_id() -> Optional[str]:
    return correlation_id.get()


def set_correlation_id(cid: str) -> None:
    correlation_id.set(cid)


def with_correlation_id(func):
    """Run func under the caller's correlation ID, starting one if there is none"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        cid = get_correlation_id()
        if not cid:
            cid = generate_correlation_id()
            set_correlation_id(cid)
        bound = logger.bind(correlation_id=cid)
        started = time.monotonic()
        try:
            return func(*args, **kwargs)
        except Exception as e:
            bound.warning(f"{func.__qualname__} raised {type(e).__name__}: {e}")
            raise
        finally:
            bound.debug(f"{func.__qualname__} finished in {time.monotonic() - started:.3f}s")

    return wrapper


def log_with_context(level: str, message: str, **kwargs):
    """
    Log through loguru with the current correlation ID bound

    Args:
        level: loguru method name (info, warning, error, ...)
        message: Log message; must not contain raw PII
        **kwargs: Extra fields bound onto the record
    """
    bound = logger.bind(correlation_id=get_correlation_id() or "-", **kwargs)
    getattr(bound, level)(message)


LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[correlation_id]}</cyan> | <level>{message}</level>"
)


def configure_logging_with_correlation(level: str = "INFO", log_file_path: str = ""):
    """
    Configure loguru to automatically include correlation ID in log messages

    Call this at application startup.
    """
    logger.remove()
    logger.configure(extra={"correlation_id": "-"})
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)
    if log_file_path:
        logger.add(
            log_file_path,
            format=LOG_FORMAT,
            level=level,
            rotation="10 MB",
            retention="14 days",
        )
