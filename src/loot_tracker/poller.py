"""Background polling of the kill feed while an activity is running."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Optional

from .engine import PollReport, TrackerEngine

logger = logging.getLogger(__name__)


class PollScheduler:
    """Run :meth:`TrackerEngine.poll` on a fixed interval in a background thread.

    The first poll happens as soon as the thread starts. The loop ends on
    :meth:`stop` or once the engine no longer has an active activity.
    """

    def __init__(self, engine: TrackerEngine, interval: Optional[timedelta] = None) -> None:
        self.engine = engine
        self.interval = interval or engine.settings.poll_interval
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    def start(self) -> bool:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return False
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run_loop,
                args=(stop_event,),
                name="kill-poller",
                daemon=True,
            )
            self._thread = thread
            self._stop_event = stop_event
            thread.start()
        logger.info(
            "Kill poller started; polling every %d seconds.",
            int(self.interval.total_seconds()),
        )
        return True

    def stop(self) -> None:
        thread: Optional[threading.Thread] = None
        with self._lock:
            if not self._thread or not self._stop_event:
                return
            self._stop_event.set()
            thread = self._thread
            self._thread = None
            self._stop_event = None
        if thread is not threading.current_thread():
            thread.join(timeout=10)
        logger.info("Kill poller stopped.")

    def is_running(self) -> bool:
        with self._lock:
            return bool(self._thread and self._thread.is_alive())

    def tick(self) -> Optional[PollReport]:
        """Poll once. Returns None when there is nothing left to poll for."""
        activity = self.engine.current_activity
        if activity is None or not activity.is_active:
            return None
        try:
            return self.engine.poll()
        except Exception:
            logger.exception("Scheduled poll failed; retrying next interval.")
            return PollReport(skipped=True)

    def _run_loop(self, stop_event: threading.Event) -> None:
        interval = self.interval.total_seconds()
        while not stop_event.is_set():
            if self.tick() is None:
                logger.info("No active activity; kill poller exiting.")
                break
            stop_event.wait(interval)
        with self._lock:
            if self._stop_event is stop_event:
                self._thread = None
                self._stop_event = None
