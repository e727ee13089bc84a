"""
Device memory tiers and memory pressure signalling.

MemoryMonitor is the single source of memory-pressure, background and
foreground signals. Batch schedulers and image caches subscribe to it.
"""

import threading
from typing import Callable, List, Optional

import psutil

from smart_albums.error_handling import logger

GB = 1024 ** 3

LOW_MEMORY_BATCH_SIZE = 200
MEDIUM_MEMORY_BATCH_SIZE = 500
HIGH_MEMORY_BATCH_SIZE = 1000

DEFAULT_CHECK_INTERVAL = 2.0
DEFAULT_MEMORY_THRESHOLD = 0.7


def total_memory_bytes() -> int:
    return psutil.virtual_memory().total


def memory_usage_fraction() -> float:
    return psutil.virtual_memory().percent / 100.0


def batch_size_for_memory(total_bytes: Optional[int] = None) -> int:
    """
    Initial batch size for the device memory tier.

    Args:
        total_bytes: Physical memory; read from psutil when omitted

    Returns:
        int: 200 up to 2GB, 500 up to 4GB, 1000 above
    """
    if total_bytes is None:
        total_bytes = total_memory_bytes()

    if total_bytes <= 2 * GB:
        return LOW_MEMORY_BATCH_SIZE
    if total_bytes <= 4 * GB:
        return MEDIUM_MEMORY_BATCH_SIZE
    return HIGH_MEMORY_BATCH_SIZE


class MemoryMonitor(threading.Thread):
    """
    Daemon thread polling system memory usage.

    Every poll above the threshold is delivered to pressure listeners with
    reason "poll". OS-level warnings go through signal_memory_warning().
    """

    def __init__(self, interval: float = DEFAULT_CHECK_INTERVAL,
                 threshold: float = DEFAULT_MEMORY_THRESHOLD,
                 usage_probe: Callable[[], float] = memory_usage_fraction):
        super().__init__(name="memory-monitor", daemon=True)
        self.interval = interval
        self.threshold = threshold
        self.usage_probe = usage_probe
        self.stop_event = threading.Event()
        self._lock = threading.Lock()
        self._pressure_listeners: List[Callable[[str], None]] = []
        self._background_listeners: List[Callable[[], None]] = []
        self._foreground_listeners: List[Callable[[], None]] = []

    def add_pressure_listener(self, listener: Callable[[str], None]):
        with self._lock:
            self._pressure_listeners.append(listener)

    def remove_pressure_listener(self, listener: Callable[[str], None]):
        with self._lock:
            if listener in self._pressure_listeners:
                self._pressure_listeners.remove(listener)

    def add_background_listener(self, listener: Callable[[], None]):
        with self._lock:
            self._background_listeners.append(listener)

    def add_foreground_listener(self, listener: Callable[[], None]):
        with self._lock:
            self._foreground_listeners.append(listener)

    def _notify(self, listeners, *args):
        with self._lock:
            listeners = list(listeners)
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                logger.error(f"Memory signal listener failed: {e}", exc_info=True)

    def check_memory(self) -> bool:
        """Run one poll. Returns True when pressure was signalled."""
        usage = self.usage_probe()
        if usage > self.threshold:
            logger.warning(f"Memory usage {usage:.0%} above threshold {self.threshold:.0%}")
            self._notify(self._pressure_listeners, "poll")
            return True
        return False

    def run(self):
        while not self.stop_event.wait(self.interval):
            try:
                self.check_memory()
            except Exception as e:
                logger.error(f"Memory check failed: {e}")

    def stop(self):
        self.stop_event.set()

    # OS signals
    def signal_memory_warning(self):
        logger.warning("Memory warning received")
        self._notify(self._pressure_listeners, "warning")

    def signal_background(self):
        logger.info("Entering background")
        self._notify(self._background_listeners)

    def signal_foreground(self):
        logger.info("Entering foreground")
        self._notify(self._foreground_listeners)
