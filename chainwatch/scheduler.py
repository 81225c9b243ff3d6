"""
Periodic refresh streams.

Each stream runs its task on its own worker thread, one run at a time. A
manual refresh request wakes the worker, runs the task once and restarts the
interval, so it replaces the next automatic run instead of adding a second,
concurrent one.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe cancellation flag that can be waited on."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or the timeout expires; True if cancelled."""
        return self._event.wait(timeout)


@dataclass
class StreamStats:
    """Run counters of a refresh stream."""

    run_count: int = 0
    error_count: int = 0
    manual_count: int = 0
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None


class RefreshStream:
    """A named task run every `interval` seconds, never overlapping itself."""

    def __init__(
        self,
        name: str,
        interval: float,
        task: Callable[[], Any],
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize refresh stream.

        Args:
            name: Stream name, used in logs and thread names
            interval: Seconds between automatic runs
            task: Work to run; exceptions are logged and counted
            clock: Monotonic time source
        """
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        self.name = name
        self.interval = interval
        self.task = task
        self.clock = clock
        self.stats = StreamStats()
        self.token = CancellationToken()

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._wake = threading.Event()
        self._manual_pending = False
        self._next_due = clock()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def next_due(self) -> float:
        with self._state_lock:
            return self._next_due

    def run_once(self) -> bool:
        """
        Run the task now, waiting for any run in progress to finish first.

        Returns:
            True if the task completed without raising
        """
        with self._run_lock:
            self.stats.run_count += 1
            self.stats.last_run = datetime.now()
            try:
                self.task()
                return True
            except Exception as e:
                self.stats.error_count += 1
                self.stats.last_error = str(e)
                logger.exception(f"Refresh stream {self.name} failed")
                return False

    def request_refresh(self) -> None:
        """
        Ask for an immediate run.

        Requests made before the worker picks them up collapse into a single
        run. Without a running worker the task runs on the calling thread.
        """
        if self.token.cancelled:
            return

        with self._state_lock:
            self._manual_pending = True

        if self.is_running:
            self._wake.set()
        else:
            self.tick()

    def tick(self) -> bool:
        """
        Perform one scheduling step.

        A pending manual request runs and pushes the next automatic run a
        full interval away. Otherwise the task runs only when it is due.

        Returns:
            True if the task ran
        """
        now = self.clock()
        with self._state_lock:
            manual = self._manual_pending
            due = now >= self._next_due
            if not manual and not due:
                return False
            self._manual_pending = False
            self._next_due = now + self.interval

        if manual:
            self.stats.manual_count += 1
            logger.debug(f"Manual refresh of {self.name}")
        self.run_once()
        return True

    def start(self) -> None:
        if self.is_running:
            return
        if self.token.cancelled:
            raise RuntimeError(f"Refresh stream {self.name} was stopped")
        self._thread = threading.Thread(
            target=self._loop, name=f"refresh-{self.name}", daemon=True
        )
        self._thread.start()
        logger.info(f"Started refresh stream {self.name} (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Cancel the stream and wait for the worker to exit.

        A worker still busy after `timeout` stays attached, so `is_running`
        keeps reporting it until it exits.

        Returns:
            True once no worker is left running
        """
        self.token.cancel()
        self._wake.set()
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"Refresh stream {self.name} did not stop within {timeout}s")
            return False
        logger.info(f"Stopped refresh stream {self.name}")
        self._thread = None
        return True

    def _loop(self) -> None:
        while not self.token.cancelled:
            with self._state_lock:
                pending = self._manual_pending
                delay = 0.0 if pending else max(0.0, self._next_due - self.clock())

            self._wake.wait(delay)
            self._wake.clear()

            if self.token.cancelled:
                break
            self.tick()


class Scheduler:
    """Owns the refresh streams of the service and tears them down together."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.token = CancellationToken()
        self.streams: dict[str, RefreshStream] = {}

    def add_stream(
        self, name: str, interval: float, task: Callable[[], Any]
    ) -> RefreshStream:
        if name in self.streams:
            raise ValueError(f"Duplicate refresh stream: {name}")
        stream = RefreshStream(name, interval, task, clock=self.clock)
        self.streams[name] = stream
        return stream

    def get(self, name: str) -> RefreshStream:
        try:
            return self.streams[name]
        except KeyError:
            raise ValueError(f"Unknown refresh stream: {name}") from None

    def request_refresh(self, name: str) -> None:
        self.get(name).request_refresh()

    def start(self) -> None:
        for stream in self.streams.values():
            stream.start()

    def shutdown(self, timeout: Optional[float] = 5.0) -> bool:
        """Stop every stream; True when no worker is left running."""
        self.token.cancel()
        stopped = [stream.stop(timeout) for stream in self.streams.values()]
        return all(stopped)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown; True once the scheduler is shut down."""
        return self.token.wait(timeout)
