"""Bounded-cadence progress reporting for scans."""

from __future__ import annotations

import logging
import queue
import time
from typing import Callable, Optional

from filescout.models import ScanProgress, ScanStage

LOGGER = logging.getLogger(__name__)

ProgressSink = Callable[[ScanProgress], None]


def log_sink(progress: ScanProgress) -> None:
    """Sink that writes progress events to the module logger."""
    if progress.stage in (ScanStage.COMPLETE, ScanStage.PHASE2_SCAN_COMPLETE):
        LOGGER.info("%s: %d files", progress.stage.value, progress.current)
        return
    if progress.total:
        LOGGER.debug(
            "%s %d/%d %s",
            progress.stage.value,
            progress.current,
            progress.total,
            progress.current_file,
        )
    else:
        LOGGER.debug("%s %d %s", progress.stage.value, progress.current, progress.current_file)


class QueueSink:
    """Sink that feeds a bounded queue, dropping the oldest event when full.

    The producer never blocks on a slow consumer.
    """

    def __init__(self, maxsize: int = 100) -> None:
        self.queue: "queue.Queue[ScanProgress]" = queue.Queue(maxsize=maxsize)

    def __call__(self, progress: ScanProgress) -> None:
        while True:
            try:
                self.queue.put_nowait(progress)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                except queue.Empty:
                    pass

    def drain(self) -> list[ScanProgress]:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events


# Stages that mark a phase boundary; they go out as soon as they are reached.
MILESTONE_STAGES = frozenset(
    {
        ScanStage.PHASE2_DISCOVERY,
        ScanStage.PHASE2_SCAN_COMPLETE,
        ScanStage.COMPLETE,
    }
)


class ProgressReporter:
    """Forward progress to a sink at a bounded rate.

    The first event, a forced event and the first event of a milestone stage
    always go out. Otherwise an event goes out once the item count has advanced
    by ``every`` since the last one sent, or once ``min_interval`` seconds have
    passed. All stages share one count.
    """

    def __init__(
        self,
        sink: Optional[ProgressSink] = None,
        *,
        every: int = 200,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.every = max(1, every)
        self.min_interval = min_interval
        self._clock = clock
        self._last_stage: Optional[ScanStage] = None
        self._last_count = 0
        self._last_time = 0.0

    def emit(
        self,
        stage: ScanStage,
        current: int = 0,
        total: int = 0,
        current_file: str = "",
        *,
        force: bool = False,
    ) -> bool:
        """Send an event if the cadence allows it. Returns True if it was sent."""
        if self.sink is None:
            return False
        now = self._clock()
        due = (
            force
            or self._last_stage is None
            or (stage in MILESTONE_STAGES and stage is not self._last_stage)
            or current - self._last_count >= self.every
            or now - self._last_time >= self.min_interval
        )
        if not due:
            return False

        self._last_stage = stage
        # Stages count at different paces; keep the high-water mark.
        self._last_count = max(self._last_count, current)
        self._last_time = now
        try:
            self.sink(ScanProgress(stage, current, total, current_file))
        except Exception:  # noqa: BLE001 - a broken consumer must not stop a scan
            LOGGER.exception("Progress sink failed for stage %s", stage.value)
        return True
