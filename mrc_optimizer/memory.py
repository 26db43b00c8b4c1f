"""
memory.py - Memory-pressure signal and cooperative cancellation.

The pressure level is this process's resident memory as a share of total
physical memory, read through psutil. The scheduler polls it between
batches and waits (bounded) for relief when it gets too high.
"""

import gc
import logging
import threading
import time
from enum import IntEnum
from typing import Callable, List, Optional

import psutil

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = 0.7
CRITICAL_THRESHOLD = 0.8
TERMINAL_THRESHOLD = 0.9

RELIEF_POLL_INTERVAL = 2.0   # seconds
RELIEF_TIMEOUT = 30.0


class MemoryPressureLevel(IntEnum):
    NORMAL = 0
    WARNING = 1
    CRITICAL = 2
    TERMINAL = 3

    @classmethod
    def from_usage(cls, usage: float) -> "MemoryPressureLevel":
        if usage > TERMINAL_THRESHOLD:
            return cls.TERMINAL
        if usage > CRITICAL_THRESHOLD:
            return cls.CRITICAL
        if usage > WARNING_THRESHOLD:
            return cls.WARNING
        return cls.NORMAL


def process_memory_usage() -> float:
    """Resident set size of this process as a fraction of physical memory."""
    rss = psutil.Process().memory_info().rss
    total = psutil.virtual_memory().total
    return rss / total if total else 0.0


class MemoryPressureMonitor:
    """
    Read-only memory-pressure signal.

    Args:
        probe: Returns either a MemoryPressureLevel or a usage fraction
            (0-1); defaults to process_memory_usage
        poll_interval: Seconds between checks in wait_for_relief
        sleep: Sleep function, injectable for tests
        clock: Monotonic clock, injectable for tests
        relief_hooks: Called once per poll while waiting, to free memory
    """

    def __init__(
        self,
        probe: Optional[Callable[[], object]] = None,
        poll_interval: float = RELIEF_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        relief_hooks: Optional[List[Callable[[], object]]] = None
    ):
        self.probe = probe or process_memory_usage
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.clock = clock
        self.relief_hooks = list(relief_hooks) if relief_hooks else [gc.collect]

    def current_level(self) -> MemoryPressureLevel:
        reading = self.probe()
        if isinstance(reading, MemoryPressureLevel):
            return reading
        return MemoryPressureLevel.from_usage(float(reading))

    def can_start_intensive_operation(self) -> bool:
        return self.current_level() < MemoryPressureLevel.WARNING

    def wait_for_relief(self, timeout: float = RELIEF_TIMEOUT) -> bool:
        """
        Wait until pressure drops below WARNING.

        Returns False once `timeout` seconds have passed without relief.
        Never sleeps past the deadline.
        """
        start = self.clock()
        while True:
            level = self.current_level()
            if level < MemoryPressureLevel.WARNING:
                logger.debug(f"Memory pressure relieved after {self.clock() - start:.1f}s")
                return True

            elapsed = self.clock() - start
            if elapsed >= timeout:
                logger.warning(f"Memory pressure still {level.name} after {timeout:.0f}s")
                return False

            for hook in self.relief_hooks:
                try:
                    hook()
                except Exception as e:
                    logger.debug(f"Relief hook failed: {e}")

            self.sleep(min(self.poll_interval, timeout - elapsed))


class CancellationToken:
    """Cooperative cancellation flag shared between caller and scheduler."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
