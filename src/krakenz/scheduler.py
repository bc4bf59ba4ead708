"""Run the LCD frame task and the cooling task side by side.

Both tasks share one ``KrakenTransport``; its re-entrant lock orders every
command exchange and bulk sequence, so an upload's start/header/payload/end
is never split by a speed command.  A single ``threading.Event`` stops
both tasks; each checks it only between completed device operations.
"""
from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .cooling import CoolingLoop
from .display import FramePresenter
from .frames import Frame
from .telemetry import TelemetrySample, TelemetrySource, TempSource

log = logging.getLogger(__name__)


class SharedTelemetry(TelemetrySource):
    """Cache readings so both tasks share one sensor poll per tick.

    A sample younger than *max_age* seconds is reused; failures are never
    cached.
    """

    def __init__(self, source: TelemetrySource, max_age: float = 1.0):
        self.source = source
        self.max_age = max_age
        self._lock = threading.Lock()
        self._cache: Dict[TempSource, Tuple[float, TelemetrySample]] = {}
        self.reads = 0

    def read(self, source: TempSource) -> TelemetrySample:
        with self._lock:
            cached = self._cache.get(source)
            now = time.monotonic()
            if cached is not None and now - cached[0] < self.max_age:
                return cached[1]
            sample = self.source.read(source)
            self.reads += 1
            self._cache[source] = (time.monotonic(), sample)
            return sample


class UnifiedScheduler:
    """Owns the stop signal and the two worker threads."""

    def __init__(self, cooling: Optional[CoolingLoop] = None,
                 presenter: Optional[FramePresenter] = None,
                 frames: Any = None,
                 stop_event: Optional[threading.Event] = None):
        if presenter is not None and frames is None:
            raise ValueError("a presenter needs a frame source")
        if cooling is None and presenter is None:
            raise ValueError("nothing to schedule")
        self.stop_event = stop_event or threading.Event()
        self.cooling = cooling
        self.presenter = presenter
        self.frames = frames
        # One stop signal for every participant
        for part in (cooling, presenter, frames):
            if part is not None and hasattr(part, 'stop_event'):
                part.stop_event = self.stop_event
        self._errors: List[BaseException] = []
        self._threads: List[threading.Thread] = []

    def _frame_stream(self) -> Iterable[Frame]:
        frames = self.frames
        return frames.frames() if hasattr(frames, 'frames') else frames

    def _guard(self, name: str, target, *args) -> None:
        try:
            target(*args)
        except BaseException as e:
            log.error("%s task failed: %s", name, e)
            self._errors.append(e)
            self.stop_event.set()

    def run(self, max_ticks: Optional[int] = None,
            max_frames: Optional[int] = None) -> None:
        """Block until both tasks finish or one fails.

        The first task error stops the other task and is re-raised here.
        Buckets and speeds are left as last applied.
        """
        self._errors.clear()
        self._threads = []
        if self.presenter is not None:
            self._threads.append(threading.Thread(
                target=self._guard, name='krakenz-frames', daemon=True,
                args=('frame', self.presenter.run, self._frame_stream(), max_frames),
            ))
        if self.cooling is not None:
            self._threads.append(threading.Thread(
                target=self._guard, name='krakenz-cooling', daemon=True,
                args=('cooling', self.cooling.run, self.stop_event, max_ticks),
            ))

        log.info("Scheduler starting %d task(s)", len(self._threads))
        for t in self._threads:
            t.start()
        for t in self._threads:
            # Short joins keep the main thread responsive to signals
            while t.is_alive():
                t.join(0.2)
        log.info("Scheduler stopped")
        if self._errors:
            raise self._errors[0]

    def stop(self) -> None:
        log.info("Stop requested")
        self.stop_event.set()

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()


def install_signal_handlers(scheduler: UnifiedScheduler) -> Dict[int, Any]:
    """Route SIGINT/SIGTERM to ``scheduler.stop()``.  Main thread only.

    Returns the previous handlers so callers can restore them.
    """
    def _handler(signum, _frame):
        log.info("Received signal %d", signum)
        scheduler.stop()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous
