"""
LiveGuard - Screen Capture Detector (slow path ensemble)
========================================================
Fuses the screen / replay attack methods over a shared frame history.

Cascade:
  1. Temporal and projector methods run first, in order: flicker (LCD/OLED),
     response time (e-ink), DLP color wheel, optical distortion. An
     available, positive verdict above the method's decisive threshold ends
     the cascade (high risk, medium for optical distortion).
  2. Otherwise every enabled method runs and the available confidences
     are averaged with fixed weights (re-normalized over the available
     subset). Unavailable methods never count as "not an attack".

The detector reports `ready` once the shared collector holds the minimum
frame history; only a ready, negative verdict may be trusted as "real".
"""

from __future__ import annotations

import time
from typing import Dict, Optional

import numpy as np

from liveguard_frames import VideoFrameCollector
from liveguard_screen_methods import (
    DLPColorWheelDetector,
    DLP_MIN_FRAMES,
    OpticalDistortionDetector,
    RESPONSE_TIME_MIN_FRAMES,
    ScreenFlickerDetector,
    ScreenResponseTimeDetector,
    detect_moire_pattern,
    detect_pixel_grid,
    detect_rgb_emission_pattern,
)
from liveguard_types import AttackVerdict, ScreenCaptureDetectionResult
from liveguard_utils_core import DEFAULT_OPTIONS, setup_logger

_log = setup_logger('GuardScreen')


METHOD_WEIGHTS = {
    "flicker": 0.15,
    "response_time": 0.10,
    "dlp_color_wheel": 0.15,
    "optical_distortion": 0.10,
    "moire": 0.20,
    "rgb_emission": 0.20,
    "pixel_grid": 0.10,
}

METHOD_ORDER = ("flicker", "response_time", "dlp_color_wheel", "optical_distortion",
                "moire", "rgb_emission", "pixel_grid")

ENABLE_KEYS = {method: f"screen_enable_{method}" for method in METHOD_ORDER}

# Decisive thresholds of the methods that may end the cascade
FLICKER_DECISIVE = 0.70
RESPONSE_TIME_DECISIVE = 0.65
OPTICAL_DECISIVE = 0.60


def calc_options_by_fps(fps: Optional[float]) -> dict:
    """Scale the frame-count based options so they cover the same time span."""
    if not fps or fps <= 0:
        _log.warning("Invalid FPS value %r, using 30", fps)
        fps = 30.0
    ratio = fps / 30.0
    sizes = {
        "flicker_buffer_size": max(5, int(round(15 * ratio))),
        "response_time_buffer_size": max(10, int(round(30 * ratio))),
        "dlp_color_wheel_buffer_size": max(8, int(round(20 * ratio))),
        "optical_distortion_buffer_size": max(1, int(round(3 * ratio))),
    }
    sizes["collector_buffer_size"] = max(sizes.values())
    return sizes


def _risk_level(confidence: float) -> str:
    if confidence > 0.7:
        return "high"
    if confidence > 0.5:
        return "medium"
    return "low"


class ScreenCaptureDetector:
    """Multi-method screen recapture detector sharing one frame history."""

    def __init__(self, fps: float = 30.0, options: Optional[dict] = None,
                 rng: Optional[np.random.Generator] = None):
        self.options = {**DEFAULT_OPTIONS, **(options or {})}
        self.fps_options = calc_options_by_fps(fps)
        self.rng = rng if rng is not None else np.random.default_rng()

        opts, sizes = self.options, self.fps_options
        self.collector = VideoFrameCollector(sizes["collector_buffer_size"])
        self.flicker_detector = ScreenFlickerDetector(self.collector, {
            "buffer_size": sizes["flicker_buffer_size"],
            "min_period": opts["screen_flicker_min_period"],
            "max_period": opts["screen_flicker_max_period"],
            "correlation_threshold": opts["screen_flicker_correlation_threshold"],
            "passing_pixel_ratio": opts["screen_flicker_passing_pixel_ratio"],
            "sampling_stride": opts["screen_flicker_sampling_stride"],
        })
        self.response_time_detector = ScreenResponseTimeDetector(self.collector, {
            "buffer_size": sizes["response_time_buffer_size"],
            "min_pixel_delta": opts["screen_response_time_min_pixel_delta"],
            "eink_threshold_ms": opts["screen_response_time_threshold"],
            "passing_pixel_ratio": opts["screen_response_time_passing_pixel_ratio"],
            "sampling_stride": opts["screen_response_time_sampling_stride"],
        })
        self.dlp_detector = DLPColorWheelDetector(self.collector, {
            "buffer_size": sizes["dlp_color_wheel_buffer_size"],
            "edge_threshold": opts["screen_dlp_edge_threshold"],
            "min_channel_separation_pixels": opts["screen_dlp_channel_separation_threshold"],
            "separation_confidence_threshold": opts["screen_dlp_confidence_threshold"],
            "sampling_stride": opts["screen_dlp_sampling_stride"],
        })
        self.optical_detector = OpticalDistortionDetector(self.collector, {
            "buffer_size": sizes["optical_distortion_buffer_size"],
            "keystone_threshold": opts["screen_optical_keystone_threshold"],
            "barrel_threshold": opts["screen_optical_barrel_threshold"],
            "chromatic_threshold": opts["screen_optical_chromatic_threshold"],
            "vignette_threshold": opts["screen_optical_vignette_threshold"],
            "sampling_stride": opts["screen_optical_sampling_stride"],
            "weights": opts["screen_optical_feature_weights"],
        })

        self._frames_offered = 0
        self._frames_dropped = 0

    # ─── Frame Feed ───────────────────────────────────────────

    def add_video_frame(self, gray, bgr=None, timestamp: Optional[float] = None) -> bool:
        """Offer one frame to the shared history.

        With a non-zero `screen_frame_drop_rate` a matching fraction of frames
        is discarded to simulate an unstable camera.

        Returns:
            True if the frame was stored, False if it was dropped.
        """
        self._frames_offered += 1
        drop_rate = float(self.options.get("screen_frame_drop_rate", 0.0))
        if drop_rate > 0 and self.rng.random() < drop_rate:
            self._frames_dropped += 1
            return False
        self.collector.add_frame(gray, bgr, timestamp)
        return True

    def get_frame_drop_stats(self) -> dict:
        offered = self._frames_offered
        return {
            "total_frames": offered,
            "dropped_frames": self._frames_dropped,
            "actual_drop_rate": self._frames_dropped / offered if offered else 0.0,
            "configured_drop_rate": float(self.options.get("screen_frame_drop_rate", 0.0)),
        }

    def reset_frame_drop_stats(self):
        self._frames_offered = 0
        self._frames_dropped = 0

    def reset_video_frame_buffer(self):
        """Drop buffered frames. FPS statistics describe the stream and are kept."""
        self.collector.clear_frames()

    def get_average_fps(self) -> float:
        return self.collector.get_average_fps()

    def _method_frames(self, method: str):
        """(buffered, required) frame counts of one method."""
        if method == "flicker":
            return (self.flicker_detector.get_buffered_frame_count(),
                    self.flicker_detector.min_frames)
        if method == "response_time":
            return (self.response_time_detector.get_buffered_frame_count(),
                    RESPONSE_TIME_MIN_FRAMES)
        if method == "dlp_color_wheel":
            return self.dlp_detector.get_buffered_frame_count(), DLP_MIN_FRAMES
        if method == "optical_distortion":
            return self.optical_detector.get_buffered_frame_count(), 1
        return self.collector.get_buffer_fill(), 1

    def get_video_frame_buffer_status(self) -> Dict[str, dict]:
        status = {}
        for method in METHOD_ORDER:
            buffered, required = self._method_frames(method)
            status[method] = {
                "enabled": self._enabled(method),
                "buffered": buffered,
                "required": required,
                "ready": buffered >= required,
            }
        status["ensemble"] = {
            "buffered": self.collector.get_buffer_fill(),
            "capacity": self.collector.buffer_size,
            "required": int(self.options["screen_ready_frame_count"]),
            "ready": self.is_ready(),
            "average_fps": round(self.collector.get_average_fps(), 2),
        }
        return status

    def is_ready(self) -> bool:
        return self.collector.get_buffer_fill() >= int(self.options["screen_ready_frame_count"])

    # ─── Detection ────────────────────────────────────────────

    def _enabled(self, method: str) -> bool:
        return bool(self.options.get(ENABLE_KEYS[method], True))

    def _run_method(self, method: str) -> AttackVerdict:
        gray_frames = self.collector.get_gray_frames(1)
        bgr_frames = self.collector.get_bgr_frames(1)
        gray = gray_frames[-1] if gray_frames else None
        bgr = bgr_frames[-1] if bgr_frames else None

        if method == "flicker":
            return self.flicker_detector.analyze()
        if method == "response_time":
            return self.response_time_detector.analyze()
        if method == "dlp_color_wheel":
            return self.dlp_detector.analyze()
        if method == "optical_distortion":
            return self.optical_detector.analyze()
        if method == "moire":
            return detect_moire_pattern(gray, {
                "threshold": self.options["screen_moire_pattern_threshold"],
                "enable_dct": self.options["screen_moire_pattern_enable_dct"],
                "enable_edge_detection": self.options["screen_moire_pattern_enable_edge_detection"],
            })
        if method == "rgb_emission":
            return detect_rgb_emission_pattern(bgr, {
                "low_freq_start_percent": self.options["screen_rgb_low_freq_start_percent"],
                "low_freq_end_percent": self.options["screen_rgb_low_freq_end_percent"],
                "energy_ratio_normalization_factor": self.options["screen_rgb_energy_ratio_normalization_factor"],
                "channel_difference_normalization_factor": self.options["screen_rgb_channel_difference_normalization_factor"],
                "energy_score_weight": self.options["screen_rgb_energy_score_weight"],
                "asymmetry_score_weight": self.options["screen_rgb_asymmetry_score_weight"],
                "difference_factor_weight": self.options["screen_rgb_difference_factor_weight"],
                "confidence_threshold": self.options["screen_rgb_confidence_threshold"],
            })
        return detect_pixel_grid(gray, {
            "high_freq_threshold": self.options["screen_pixel_grid_high_freq_threshold"],
            "grid_strength_threshold": self.options["screen_pixel_grid_strength_threshold"],
        })

    def _safe_run(self, method: str) -> AttackVerdict:
        try:
            return self._run_method(method)
        except Exception as e:
            _log.warning("Method %s failed: %s", method, e)
            return AttackVerdict.unavailable(method, f"error: {e}")

    def _decisive(self, method: str):
        """(threshold, risk level) for methods that may end the cascade."""
        if method == "flicker":
            return FLICKER_DECISIVE, "high"
        if method == "response_time":
            return RESPONSE_TIME_DECISIVE, "high"
        if method == "dlp_color_wheel":
            return float(self.options["screen_dlp_confidence_threshold"]), "high"
        if method == "optical_distortion":
            return OPTICAL_DECISIVE, "medium"
        return None

    def detect(self) -> ScreenCaptureDetectionResult:
        """Run the cascade on the buffered history."""
        t0 = time.perf_counter()
        executed = []

        for method in METHOD_ORDER:
            if not self._enabled(method):
                continue
            verdict = self._safe_run(method)
            executed.append(verdict)

            decisive = self._decisive(method)
            if (decisive is not None and verdict.available
                    and verdict.is_attack and verdict.confidence > decisive[0]):
                return ScreenCaptureDetectionResult(
                    is_screen_capture=True,
                    confidence_score=verdict.confidence,
                    executed_methods=executed,
                    risk_level=decisive[1],
                    processing_time_ms=(time.perf_counter() - t0) * 1000,
                    ready=self.is_ready(),
                    decisive_method=method,
                )

        available = [v for v in executed if v.available]
        total_weight = sum(METHOD_WEIGHTS[v.method] for v in available)
        if total_weight > 0:
            confidence = sum(METHOD_WEIGHTS[v.method] * v.confidence
                             for v in available) / total_weight
        else:
            confidence = 0.0

        is_screen = bool(available) and confidence > self.options["screen_capture_confidence_threshold"]
        return ScreenCaptureDetectionResult(
            is_screen_capture=is_screen,
            confidence_score=confidence,
            executed_methods=executed,
            risk_level=_risk_level(confidence),
            processing_time_ms=(time.perf_counter() - t0) * 1000,
            ready=self.is_ready(),
            decisive_method="composite" if is_screen else None,
        )
