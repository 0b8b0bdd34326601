"""Millisecond wall clock shared by every component.

Components accept a ``clock`` callable so tests can drive time explicitly.
"""
import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)
