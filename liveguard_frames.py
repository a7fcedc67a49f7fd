"""
LiveGuard - Frame & Native-Buffer Manager
=========================================
Owns every per-frame pixel buffer used by the capture core.

Components:
  1. FrameBufferManager: resolution-sized gray/color buffers reused across
     ticks, released and re-allocated on resolution change.
  2. VideoFrameCollector: bounded, timestamped history of gray + BGR frames
     shared by the multi-frame attack detectors, plus a smoothed FPS
     estimate weighted toward recent inter-frame deltas.

Detectors only ever receive borrowed views of these buffers. A view is
valid for the tick that produced it; anything kept longer is copied into
the collector history.
"""

from __future__ import annotations

import time
from collections import deque
from typing import List, Optional, Tuple

import cv2
import numpy as np

from liveguard_types import BufferAllocationError, FrameSample
from liveguard_utils_core import setup_logger

_log = setup_logger('GuardFrames')


# ===================================================================
# COMPONENT 1: REUSABLE FRAME BUFFERS
# ===================================================================

class FrameBufferManager:
    """Reusable gray/color buffers sized to the current stream resolution."""

    def __init__(self):
        self._gray: Optional[np.ndarray] = None
        self._color: Optional[np.ndarray] = None
        self._size: Tuple[int, int] = (0, 0)     # (width, height)
        self.allocation_count = 0
        self.release_count = 0

    @property
    def allocated(self) -> bool:
        return self._gray is not None and self._color is not None

    @property
    def size(self) -> Tuple[int, int]:
        return self._size

    @property
    def current_color(self) -> Optional[np.ndarray]:
        """Color buffer of the latest tick (borrowed, may be None)."""
        return self._color

    def _allocate(self, width: int, height: int):
        # Old storage is dropped before the new one is created
        if self.allocated:
            self.release_all()
        try:
            self._gray = np.empty((height, width), dtype=np.uint8)
            self._color = np.empty((height, width, 3), dtype=np.uint8)
        except (MemoryError, ValueError) as e:
            self.release_all()
            raise BufferAllocationError(
                f"Could not allocate {width}x{height} frame buffers: {e}") from e
        self._size = (width, height)
        self.allocation_count += 1
        _log.debug("Allocated frame buffers %dx%d", width, height)

    def capture(self, frame_bgr: np.ndarray, timestamp: float,
                frame_index: int) -> FrameSample:
        """Materialize the gray and color samples for one tick.

        Args:
            frame_bgr: HxWx3 uint8 BGR frame (HxW grayscale is accepted too).
            timestamp: Frame time in seconds.
            frame_index: Monotonic tick counter.

        Returns:
            FrameSample whose arrays alias the manager's buffers.

        Raises:
            BufferAllocationError: when the buffers cannot be (re)allocated.
        """
        if frame_bgr is None or frame_bgr.size == 0:
            raise ValueError("Empty frame")

        height, width = frame_bgr.shape[:2]
        if not self.allocated or self._size != (width, height):
            self._allocate(width, height)

        if frame_bgr.ndim == 2:
            np.copyto(self._gray, frame_bgr)
            cv2.cvtColor(frame_bgr, cv2.COLOR_GRAY2BGR, dst=self._color)
        else:
            np.copyto(self._color, frame_bgr[:, :, :3])
            cv2.cvtColor(self._color, cv2.COLOR_BGR2GRAY, dst=self._gray)

        return FrameSample(
            gray=self._gray,
            color=self._color,
            width=width,
            height=height,
            timestamp=timestamp,
            frame_index=frame_index,
        )

    def release_all(self):
        if self._gray is not None or self._color is not None:
            self.release_count += 1
        self._gray = None
        self._color = None
        self._size = (0, 0)


# ===================================================================
# COMPONENT 2: SHARED FRAME HISTORY + FPS
# ===================================================================

FPS_HISTORY_SIZE = 30
FPS_SIMPLE_MEAN_BELOW = 5


class VideoFrameCollector:
    """Bounded circular history of gray/BGR frames with timestamps.

    A single collector is shared by every method of the screen ensemble so
    that a frame is copied once per tick no matter how many detectors need
    multi-frame context.
    """

    def __init__(self, buffer_size: int = 60):
        self.buffer_size = max(1, int(buffer_size))
        self._gray = deque(maxlen=self.buffer_size)
        self._bgr = deque(maxlen=self.buffer_size)
        self._timestamps = deque(maxlen=self.buffer_size)
        self._fps_history = deque(maxlen=FPS_HISTORY_SIZE)
        self._last_timestamp: Optional[float] = None
        self.total_frames_added = 0

    def add_frame(self, gray: np.ndarray, bgr: Optional[np.ndarray] = None,
                  timestamp: Optional[float] = None):
        """Copy one frame into the history. Timestamps are in seconds."""
        ts = time.monotonic() if timestamp is None else float(timestamp)

        self._gray.append(gray.copy())
        self._bgr.append(bgr.copy() if bgr is not None else None)
        self._timestamps.append(ts)
        self.total_frames_added += 1

        if self._last_timestamp is not None:
            delta = ts - self._last_timestamp
            if delta > 0:
                self._fps_history.append(1.0 / delta)
        self._last_timestamp = ts

    def get_gray_frames(self, n: Optional[int] = None) -> List[np.ndarray]:
        frames = list(self._gray)
        return frames if n is None else frames[-n:] if n > 0 else []

    def get_bgr_frames(self, n: Optional[int] = None) -> List[np.ndarray]:
        frames = [f for f in self._bgr if f is not None]
        return frames if n is None else frames[-n:] if n > 0 else []

    def get_last_n_frames(self, n: int) -> List[Tuple[np.ndarray, Optional[np.ndarray], float]]:
        """Last n (gray, bgr, timestamp) triples, oldest first."""
        triples = list(zip(self._gray, self._bgr, self._timestamps))
        return triples[-n:] if n > 0 else []

    def get_frame_size(self) -> Optional[Tuple[int, int]]:
        if not self._gray:
            return None
        height, width = self._gray[-1].shape[:2]
        return width, height

    def get_buffer_fill(self) -> int:
        return len(self._gray)

    def get_average_fps(self) -> float:
        """Smoothed FPS.

        Below 5 samples: plain mean. Otherwise a linearly recency-weighted
        mean (weight (i + 1) / n for the i-th oldest sample).
        """
        samples = list(self._fps_history)
        if not samples:
            return 0.0
        if len(samples) < FPS_SIMPLE_MEAN_BELOW:
            return sum(samples) / len(samples)
        n = len(samples)
        weights = [(i + 1) / n for i in range(n)]
        return sum(w * s for w, s in zip(weights, samples)) / sum(weights)

    def clear_frames(self):
        """Drop pixel history, keep FPS statistics.

        The next frame starts a fresh delta chain, so an idle gap between
        sessions never enters the FPS history.
        """
        self._gray.clear()
        self._bgr.clear()
        self._timestamps.clear()
        self._last_timestamp = None

    def reset(self):
        self.clear_frames()
        self._fps_history.clear()
        self.total_frames_added = 0

    def get_stats(self) -> dict:
        return {
            "buffer_size": self.buffer_size,
            "buffered_frames": len(self._gray),
            "total_frames_added": self.total_frames_added,
            "average_fps": round(self.get_average_fps(), 2),
            "frame_size": self.get_frame_size(),
        }
