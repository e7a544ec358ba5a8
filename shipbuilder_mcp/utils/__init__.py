# shipbuilder_mcp/utils/__init__.py
"""Shared helpers for background work and clocks."""

import time
from typing import Callable

from .background import PeriodicTask

# Seconds since the epoch. Stores accept one so expiry can be driven in tests.
Clock = Callable[[], float]
system_clock: Clock = time.time

__all__ = ["PeriodicTask", "Clock", "system_clock"]
