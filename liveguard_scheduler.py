"""
LiveGuard - Frame Scheduler
===========================
Interleaves the expensive checks across an M-frame duty cycle so that the
corner check, the ensemble check and main detection never share a frame.

  M = max(1, ceil(delay_ms * fps / 1000)), raised to at least 3 by
  stretching the delay when the measured FPS is too low.

Per cycle (position p = frame_index mod M):
  - feature (ensemble) check at floor(0.4 * M), with a fallback on the
    cycle's last frame if it has not run yet in this cycle
  - corner check at floor(0.8 * M), pulled back to floor(0.6 * M) when
    that lands on the last frame and M > 3
  - main detection when frame_index - last_main_index >= M
"""

from __future__ import annotations

import math

from liveguard_types import DetectionPeriod
from liveguard_utils_core import setup_logger

_log = setup_logger('GuardSched')

MIN_INTERVAL = 3


class FrameScheduler:
    """Pure scheduling arithmetic; holds only the delay and FPS."""

    def __init__(self, frame_delay_ms: float = 100, fps: float = 30.0):
        self.base_delay_ms = float(frame_delay_ms)
        self.frame_delay_ms = self.base_delay_ms
        self.fps = float(fps) if fps and fps > 0 else 30.0

    def update_fps(self, fps: float):
        if fps and fps > 0:
            self.fps = float(fps)

    @property
    def interval(self) -> int:
        return max(1, math.ceil(self.frame_delay_ms * self.fps / 1000.0))

    def adjust_frame_delay(self) -> float:
        """Derive the delay from the configured one, raised if needed so the
        interval is at least 3 frames. A recovered FPS lowers it again.

        Returns:
            The effective delay in ms.
        """
        delay = self.base_delay_ms
        if math.ceil(delay * self.fps / 1000.0) < MIN_INTERVAL:
            delay = float(math.ceil(MIN_INTERVAL * 1000.0 / self.fps))
        if delay != self.frame_delay_ms:
            _log.debug("Frame delay %.0f -> %.0f ms (fps %.1f)",
                       self.frame_delay_ms, delay, self.fps)
            self.frame_delay_ms = delay
        return self.frame_delay_ms

    def should_run_main(self, frame_index: int, last_main_index: int) -> bool:
        return frame_index - last_main_index >= self.interval

    def corner_position(self) -> int:
        m = self.interval
        position = int(math.floor(0.8 * m))
        if position == m - 1 and m > 3:
            position = int(math.floor(0.6 * m))
        return position

    def feature_position(self) -> int:
        return int(math.floor(0.4 * self.interval))

    def should_check_corners(self, frame_index: int, period: DetectionPeriod) -> bool:
        if period == DetectionPeriod.DETECT:
            return False
        m = self.interval
        if m <= 2:
            return False
        return frame_index % m == self.corner_position()

    def should_check_features(self, frame_index: int, period: DetectionPeriod,
                              last_feature_index: int) -> bool:
        if period == DetectionPeriod.DETECT:
            return False
        m = self.interval
        position = frame_index % m
        if position == self.feature_position():
            return True
        cycle_start = (frame_index // m) * m
        return position == m - 1 and last_feature_index < cycle_start

    def should_capture(self, frame_index: int, period: DetectionPeriod,
                       last_main_index: int, last_feature_index: int) -> bool:
        return (period != DetectionPeriod.DETECT
                or self.should_run_main(frame_index, last_main_index)
                or self.should_check_corners(frame_index, period)
                or self.should_check_features(frame_index, period, last_feature_index))

    def plan(self, frame_index: int, period: DetectionPeriod,
             last_main_index: int, last_feature_index: int) -> dict:
        """All decisions for one tick."""
        return {
            "main": self.should_run_main(frame_index, last_main_index),
            "corners": self.should_check_corners(frame_index, period),
            "features": self.should_check_features(frame_index, period, last_feature_index),
            "capture": self.should_capture(frame_index, period, last_main_index,
                                          last_feature_index),
        }
