import logging
import sys
import time
import functools
from contextlib import contextmanager
from typing import Optional, Tuple

import numpy as np
import polars as pl

logger = logging.getLogger("geneflux")

_INDENT = {"level": 0}


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach a single stream handler to the package logger (idempotent)."""
    if not any(getattr(h, "_geneflux", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%H:%M:%S"))
        handler._geneflux = True
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def _indented(msg: str) -> str:
    return "  " * _INDENT["level"] + msg


def log_info(msg: str) -> None:
    logger.info(_indented(msg))


def log_warning(msg: str) -> None:
    logger.warning(_indented(msg))


@contextmanager
def log_indent(step: int = 1):
    """Indent every message logged inside the block."""
    _INDENT["level"] += step
    try:
        yield
    finally:
        _INDENT["level"] -= step


def log_time(name: str):
    """Log start, end and wall time of the decorated step."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{name}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            elapsed = time.perf_counter() - start
            log_info(f"{name} done ({elapsed:.2f}s)")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df: Optional[pl.DataFrame], index_col: str) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
    """Split a wide polars frame into (float matrix, index labels). None passes through."""
    if df is None:
        return None, None
    index = df.select(index_col).to_series().cast(pl.Utf8).to_numpy()
    mat = df.drop(index_col).to_numpy().astype(np.float64)
    return mat, index
