"""
Background reclaimer for expired sessions.

Runs a sweep function on a fixed-rate schedule in a daemon thread. At most one
sweep is in flight: a tick that comes due while a sweep is still running is
skipped. Sweep failures are logged and the schedule keeps going, so transient
storage errors heal on the next tick.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# Receives the stop event so a long sweep can end early on shutdown
SweepFunction = Callable[[threading.Event], int]


class ReclaimerState(str, Enum):
    """Lifecycle state of the reclaimer"""

    STOPPED = "stopped"
    IDLE = "idle"
    SWEEPING = "sweeping"


class Reclaimer:
    """Cancellable periodic task that reclaims expired session records."""

    def __init__(self, sweep: SweepFunction, interval: float, name: str = "session-reclaimer"):
        if interval <= 0:
            raise ValueError("Reclaimer interval must be positive")
        self.interval = interval
        self.name = name
        self._sweep = sweep
        self._stop_event = threading.Event()
        self._sweep_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self.sweeps_completed = 0
        self.sweeps_failed = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    @property
    def state(self) -> ReclaimerState:
        if self._sweep_lock.locked():
            return ReclaimerState.SWEEPING
        if self.running:
            return ReclaimerState.IDLE
        return ReclaimerState.STOPPED

    def start(self) -> None:
        """Start the periodic sweep thread. Calling it while running is a no-op."""
        with self._lifecycle_lock:
            if self.running:
                return
            # A thread that outlived stop() keeps its own, already set, event
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event,),
                name=self.name,
                daemon=True,
            )
            self._thread.start()
        logger.info("Session reclaimer started", extra={"interval_seconds": self.interval})

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the sweep thread.

        No sweep starts once this is called; a sweep in progress is asked to
        finish early and is waited for up to ``timeout`` seconds.
        """
        with self._lifecycle_lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Session reclaimer did not stop within %ss", timeout)
                return
        logger.info("Session reclaimer stopped")

    def run_once(self, stop_event: Optional[threading.Event] = None) -> Optional[int]:
        """
        Run one sweep in the calling thread.

        Args:
            stop_event: Event that cancels the sweep, defaults to the current one

        Returns:
            Number of reclaimed records, or None if the reclaimer is stopping,
            another sweep is in flight, or the sweep failed
        """
        stop_event = stop_event or self._stop_event
        if stop_event.is_set():
            logger.debug("Skipping session sweep: reclaimer is stopping")
            return None

        if not self._sweep_lock.acquire(blocking=False):
            self.ticks_skipped += 1
            logger.warning("Skipping session sweep: previous sweep still in progress")
            return None

        try:
            reclaimed = self._sweep(stop_event)
        except Exception:
            self.sweeps_failed += 1
            logger.exception("Session sweep failed; retrying on next tick")
            return None
        finally:
            self._sweep_lock.release()

        self.sweeps_completed += 1
        if reclaimed:
            logger.info("Reclaimed %d expired session(s)", reclaimed)
        else:
            logger.debug("No expired sessions to reclaim")
        return reclaimed

    def _run(self, stop_event: threading.Event) -> None:
        next_tick = time.monotonic() + self.interval
        while not stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self.run_once(stop_event)

            next_tick += self.interval
            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // self.interval) + 1
                self.ticks_skipped += missed
                logger.warning("Session sweep overran its interval; skipping %d tick(s)", missed)
                next_tick += missed * self.interval
