"""
Frame hand-off and per-tracker worker threads.

A producer pushes the newest frame into a ``LatestSlot``; a ``TrackerWorker``
consumes it on its own thread. Unconsumed frames are overwritten, so the
tracker always works on the most recent image and never builds a backlog.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Generic, Iterator, Optional, TypeVar

import numpy as np

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class LatestSlot(Generic[T]):
    """Single-producer/single-consumer slot holding only the latest value."""

    def __init__(self, initial: Optional[T] = None):
        self._lock = threading.Lock()
        self._new_data = threading.Condition(self._lock)
        self._value: Optional[T] = initial
        self._has_new = False

    @property
    def has_new(self) -> bool:
        with self._lock:
            return self._has_new

    def put(self, value: T):
        """Store ``value``, replacing anything not yet taken."""
        with self._new_data:
            self._value = value
            self._has_new = True
            self._new_data.notify()

    def take(self, timeout: Optional[float] = None) -> Optional[T]:
        """Return the new value and clear the flag.

        Blocks up to ``timeout`` seconds while nothing new is available
        (``timeout=0`` polls). Returns None when the wait expires.
        """
        with self._new_data:
            if not self._has_new:
                if timeout == 0:
                    return None
                self._new_data.wait_for(lambda: self._has_new, timeout=timeout)
                if not self._has_new:
                    return None
            self._has_new = False
            return self._value

    def read(self) -> Optional[T]:
        """Return a copy of the latest value without consuming it."""
        with self._lock:
            value = self._value
        if isinstance(value, np.ndarray):
            return value.copy()
        return copy.copy(value)

    def write(self, value: T):
        """Replace the stored value without raising the new-data flag."""
        with self._lock:
            self._value = value

    @contextmanager
    def holding(self) -> Iterator[Optional[T]]:
        """Scoped access to the stored value under the slot's lock."""
        with self._lock:
            yield self._value


class TrackerWorker:
    """
    Runs ``tracker.process`` on a dedicated thread.

    ``submit`` never blocks the producer. The stop flag is checked between
    frames only, so a frame in progress always completes.
    """

    def __init__(self, tracker: Any, name: Optional[str] = None, poll_interval: float = 0.05):
        self.tracker = tracker
        self.frames: LatestSlot[np.ndarray] = LatestSlot()
        self.poll_interval = poll_interval
        self.processed_frames = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._name = name or f"tracker-worker-{id(self):x}"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        LOGGER.debug("Worker %s started", self._name)

    def submit(self, frame: np.ndarray):
        """Hand the latest frame to the worker (drops any pending one)."""
        self.frames.put(frame)

    def stop(self, join: bool = True, timeout: Optional[float] = 2.0):
        self._stop_event.set()
        if join and self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                LOGGER.warning("Worker %s did not stop within %.1fs", self._name, timeout)
            else:
                LOGGER.debug("Worker %s stopped after %d frames", self._name, self.processed_frames)

    def get_model_view_matrix(self) -> np.ndarray:
        return self.tracker.get_model_view_matrix()

    def _run(self):
        while not self._stop_event.is_set():
            frame = self.frames.take(timeout=self.poll_interval)
            if frame is None:
                continue
            try:
                self.tracker.process(frame)
            except ValueError as e:
                LOGGER.warning("Worker %s skipped a frame: %s", self._name, e)
            except Exception:
                LOGGER.exception("Worker %s failed while processing a frame", self._name)
            self.processed_frames += 1
