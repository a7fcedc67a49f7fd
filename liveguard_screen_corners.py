"""
LiveGuard - Screen Corners Detector (fast path)
===============================================
Cheap single-frame check for a phone / tablet / monitor bezel in view.

GaussianBlur -> Canny -> external contours -> 4-point polygons whose
opposite sides have near-equal length. The threshold is deliberately
strict so rectangular backgrounds behind a real face do not reject it.
"""

from __future__ import annotations

import math
import time
from typing import Optional

import cv2
import numpy as np

from liveguard_types import ScreenCornersResult
from liveguard_utils_core import setup_logger

_log = setup_logger('GuardCorners')


DEFAULT_CONFIG = {
    "canny_low": 35,
    "canny_high": 110,
    "min_contour_area": 1200,
    "confidence_threshold": 0.75,
    "boundary_ratio_threshold": 0.25,
}

# Opposite sides may differ by at most this fraction of the longer one
SIDE_TOLERANCE = 0.2


def is_rectangle_shape(polygon: np.ndarray) -> bool:
    """True when a 4-point polygon has both pairs of opposite sides within 20%."""
    points = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    if len(points) != 4:
        return False
    sides = [math.dist(points[i], points[(i + 1) % 4]) for i in range(4)]
    for a, b in ((sides[0], sides[2]), (sides[1], sides[3])):
        if abs(a - b) >= max(a, b) * SIDE_TOLERANCE:
            return False
    return True


class ScreenCornersContourDetector:
    """Counts screen-like rectangles in one grayscale frame."""

    def __init__(self, config: Optional[dict] = None):
        self.config = {**DEFAULT_CONFIG, **(config or {})}

    def detect(self, gray: np.ndarray) -> ScreenCornersResult:
        t0 = time.perf_counter()
        if gray is None or gray.size == 0:
            return ScreenCornersResult(is_screen_capture=False, confidence=0.0)

        count, ratio = self._screen_contours(gray)
        confidence = self.confidence(count, ratio)
        return ScreenCornersResult(
            is_screen_capture=confidence >= self.config["confidence_threshold"],
            confidence=confidence,
            screen_rect_count=count,
            boundary_ratio=ratio,
            processing_time_ms=(time.perf_counter() - t0) * 1000,
        )

    def _screen_contours(self, gray: np.ndarray):
        blurred = cv2.GaussianBlur(gray, (5, 5), 1.0)
        edges = cv2.Canny(blurred, self.config["canny_low"], self.config["canny_high"])
        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        count = 0
        total_area = 0.0
        for contour in contours:
            area = cv2.contourArea(contour)
            if area < self.config["min_contour_area"]:
                continue
            approx = cv2.approxPolyDP(contour, 0.02 * cv2.arcLength(contour, True), True)
            if len(approx) == 4 and is_rectangle_shape(approx):
                count += 1
                total_area += area

        image_area = gray.shape[0] * gray.shape[1]
        return count, (total_area / image_area if image_area else 0.0)

    def confidence(self, count: int, boundary_ratio: float) -> float:
        count_score = min(count, 1.0)
        boundary_score = min(boundary_ratio / self.config["boundary_ratio_threshold"], 1.0)
        return min(count_score * 0.7 + boundary_score * 0.3, 1.0)

    @staticmethod
    def get_message(confidence: float) -> str:
        if confidence < 0.3:
            return "No screen detected"
        if confidence < 0.6:
            return "Possible screen detected"
        return "Screen detected"
