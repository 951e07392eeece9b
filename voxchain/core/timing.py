"""
Performance timing utilities for debugging.

Decorators for measuring execution time of the pure engine functions
(silence analysis, batch planning, prompt compilation) when VC_DEBUG is set.
"""

import functools
import logging
import os
import time
from typing import Callable, ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def is_debug_enabled() -> bool:
    """True when VC_DEBUG=1 is set."""
    return os.getenv("VC_DEBUG", "0") == "1"


def timer(func: Callable[P, R]) -> Callable[P, R]:
    """
    Decorator that logs execution time at debug level when VC_DEBUG=1.

    The flag is read per call so the CLI --debug option takes effect after import.
    """

    @functools.wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        if not is_debug_enabled():
            return func(*args, **kwargs)

        start_time = time.perf_counter()
        result = func(*args, **kwargs)
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"[VC_DEBUG] {func.__name__}: {elapsed_ms:.2f}ms")
        return result

    return wrapper
