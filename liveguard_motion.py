"""
LiveGuard - Motion Liveness Analyzer
====================================
Decides from a short rolling window whether a face moves like a live
subject or sits still like a printed photo.

Signals (per call, over the last `frame_buffer_size` frames):
  - Dense Farneback optical flow between the two newest gray frames
  - Keypoint variance: std of the per-step mean landmark displacement
  - Eye / mouth aspect-ratio variation (blink, speech)
  - Face-area variation (breathing)

Guards:
  - Motion consistency: flow and landmark motion must agree
  - Physical plausibility: flow acceleration must be smooth

The verdict carries `ready`; callers must ignore `is_lively` until the
frame window is full.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Optional, Sequence

import cv2
import numpy as np

from liveguard_types import LandmarkSnapshot, MotionType, MotionVerdict
from liveguard_utils_core import (
    LEFT_EYE,
    MOUTH,
    RIGHT_EYE,
    compute_ear,
    compute_mar,
    setup_logger,
)

_log = setup_logger('GuardMotion')


DEFAULT_CONFIG = {
    "min_motion_score": 0.15,
    "min_keypoint_variance": 0.02,
    "frame_buffer_size": 5,
    "eye_aspect_ratio_threshold": 0.15,
    "min_optical_flow_threshold": 0.02,
    "motion_consistency_threshold": 0.3,
    "strict_photo_detection": False,
}

# (flow, keypoint variance, consistency, eye, mouth)
FUSION_WEIGHTS = (0.45, 0.35, 0.10, 0.05, 0.05)
STRICT_FUSION_WEIGHTS = (0.55, 0.25, 0.20, 0.0, 0.0)

# A signal below this is treated as absent
MEANINGFUL_SIGNAL = 0.01
CONSISTENCY_FLOOR = 0.5
SINGLE_SIGNAL_ATTENUATION = 0.5

PLAUSIBILITY_RATIO = 3.0
STRICT_PLAUSIBILITY_RATIO = 2.0

FLOW_NORMALIZATION_PX = 20.0
KEYPOINT_NORMALIZATION_PX = 5.0
EXPECTED_BLINK_VARIATION = 0.05
EXPECTED_MOUTH_VARIATION = 0.02
BREATHING_AREA_VARIATION = 0.001

# Types driven by small, slow signals get half the consistency floor
LOW_ENERGY_TYPES = (MotionType.BREATHING, MotionType.MICRO_EXPRESSION)


def farneback_flow_magnitude(prev_gray: np.ndarray, curr_gray: np.ndarray) -> float:
    """Mean dense-flow magnitude, normalized by 20 px/frame and clamped to [0, 1]."""
    if prev_gray.shape != curr_gray.shape:
        return 0.0
    flow = cv2.calcOpticalFlowFarneback(
        prev_gray, curr_gray, None, 0.5, 3, 15, 3, 5, 1.2, 0)
    magnitude = np.sqrt(flow[..., 0] ** 2 + flow[..., 1] ** 2)
    return min(float(magnitude.mean()) / FLOW_NORMALIZATION_PX, 1.0)


def _std(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return float(np.std(values))


class MotionLivenessDetector:
    """Rolling-window motion liveness analyzer.

    Usage:
        detector = MotionLivenessDetector(config)
        verdict = detector.analyze_motion(gray, snapshot, gray.shape)
        if verdict.ready and not verdict.is_lively:
            reject()
    """

    def __init__(self, config: Optional[dict] = None,
                 flow_estimator: Optional[Callable[[np.ndarray, np.ndarray], float]] = None):
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.frame_buffer_size = max(2, int(self.config["frame_buffer_size"]))
        self.flow_estimator = flow_estimator or farneback_flow_magnitude

        size = self.frame_buffer_size
        self._frames = deque(maxlen=size)
        self._keypoints = deque(maxlen=size)
        self._face_areas = deque(maxlen=size)
        self._ear_history = deque(maxlen=size)
        self._mar_history = deque(maxlen=size)
        self._flow_history = deque(maxlen=size)

    @property
    def strict(self) -> bool:
        return bool(self.config["strict_photo_detection"])

    def is_ready(self) -> bool:
        return len(self._frames) >= self.frame_buffer_size

    def reset(self):
        """Clear every history. The instance itself is kept."""
        self._frames.clear()
        self._keypoints.clear()
        self._face_areas.clear()
        self._ear_history.clear()
        self._mar_history.clear()
        self._flow_history.clear()

    def get_options(self) -> dict:
        return dict(self.config)

    def get_statistics(self) -> dict:
        return {
            "buffer_size": len(self._frames),
            "keypoint_history_size": len(self._keypoints),
            "face_area_history_size": len(self._face_areas),
            "eye_aspect_ratio_history_size": len(self._ear_history),
            "mouth_aspect_ratio_history_size": len(self._mar_history),
            "flow_history_size": len(self._flow_history),
        }

    # ─── Main Entry ───────────────────────────────────────────

    def analyze_motion(self, gray: np.ndarray, snapshot: LandmarkSnapshot,
                       frame_shape) -> MotionVerdict:
        """Push one frame + landmark snapshot and return the current verdict.

        Args:
            gray: Grayscale frame (copied into the window).
            snapshot: Landmarks of the single tracked face.
            frame_shape: (height, width[, channels]) of the frame.
        """
        self._push(gray, snapshot, frame_shape)

        if len(self._frames) < 2:
            return self._empty_verdict()

        flow = self._optical_flow()
        self._flow_history.append(flow)

        keypoint_variance = self._keypoint_variance()
        eye_score = self._eye_motion_score()
        mouth_score = self._mouth_motion_score()
        area_variation = _std(list(self._face_areas))

        motion_type = self._classify(flow, keypoint_variance, area_variation)
        consistency = self._consistency(flow, keypoint_variance)
        plausible, accel_ratio = self._physically_plausible()

        weights = STRICT_FUSION_WEIGHTS if self.strict else FUSION_WEIGHTS
        score = (flow * weights[0]
                 + keypoint_variance * weights[1]
                 + consistency * weights[2]
                 + eye_score * weights[3]
                 + mouth_score * weights[4])
        score = min(1.0, max(0.0, score))

        is_lively = self._is_lively(flow, score, keypoint_variance,
                                    motion_type, consistency, plausible)

        return MotionVerdict(
            motion_score=score,
            optical_flow_magnitude=flow,
            keypoint_variance=keypoint_variance,
            eye_motion_score=eye_score,
            mouth_motion_score=mouth_score,
            motion_type=motion_type,
            is_lively=is_lively,
            ready=self.is_ready(),
            consistency=consistency,
            physically_plausible=plausible,
            details={
                "frame_count": len(self._frames),
                "avg_keypoint_distance": self._mean_or_zero(self._step_displacements()),
                "max_keypoint_distance": max(self._step_displacements(), default=0.0),
                "face_area_variance": area_variation,
                "eye_aspect_ratio_variance": _std(list(self._ear_history)),
                "mouth_aspect_ratio_variance": _std(list(self._mar_history)),
                "acceleration_ratio": accel_ratio,
            },
        )

    # ─── History ──────────────────────────────────────────────

    def _push(self, gray, snapshot: LandmarkSnapshot, frame_shape):
        self._frames.append(np.array(gray, copy=True))

        mesh = np.asarray(snapshot.mesh, dtype=np.float64) if snapshot is not None else None
        if mesh is not None and mesh.ndim == 2 and mesh.shape[0] >= 468 and mesh.shape[1] >= 2:
            self._keypoints.append(mesh[:, :2].copy())
            left = compute_ear(mesh[LEFT_EYE])
            right = compute_ear(mesh[RIGHT_EYE])
            self._ear_history.append((left + right) / 2.0)
            self._mar_history.append(compute_mar(mesh[MOUTH]))
        else:
            self._keypoints.append(None)

        height, width = frame_shape[:2]
        if snapshot is not None and width > 0 and height > 0:
            _, _, w, h = snapshot.box[:4]
            self._face_areas.append(float(w) * float(h) / float(width * height))

    # ─── Signals ──────────────────────────────────────────────

    def _optical_flow(self) -> float:
        try:
            flow = float(self.flow_estimator(self._frames[-2], self._frames[-1]))
        except (cv2.error, ValueError) as e:
            _log.warning("Optical flow failed: %s", e)
            return 0.0
        return min(1.0, max(0.0, flow))

    def _step_displacements(self) -> list:
        """Mean landmark displacement (px) between consecutive snapshots."""
        steps = []
        history = list(self._keypoints)
        for prev, curr in zip(history, history[1:]):
            if prev is None or curr is None or prev.shape != curr.shape:
                continue
            steps.append(float(np.linalg.norm(curr - prev, axis=1).mean()))
        return steps

    def _keypoint_variance(self) -> float:
        steps = self._step_displacements()
        if not steps:
            return 0.0
        return min(_std(steps) / KEYPOINT_NORMALIZATION_PX, 1.0)

    def _eye_motion_score(self) -> float:
        variation = _std(list(self._ear_history))
        if variation < self.config["eye_aspect_ratio_threshold"]:
            return 0.0
        return min(variation / EXPECTED_BLINK_VARIATION, 1.0)

    def _mouth_motion_score(self) -> float:
        variation = _std(list(self._mar_history))
        return min(variation / EXPECTED_MOUTH_VARIATION, 1.0)

    # ─── Guards ───────────────────────────────────────────────

    @staticmethod
    def _consistency(flow: float, keypoint_variance: float) -> float:
        flow_ok = flow >= MEANINGFUL_SIGNAL
        kv_ok = keypoint_variance >= MEANINGFUL_SIGNAL
        if flow_ok and kv_ok:
            ratio = min(flow, keypoint_variance) / max(flow, keypoint_variance)
            return max(ratio, CONSISTENCY_FLOOR)
        if flow_ok:
            return flow * SINGLE_SIGNAL_ATTENUATION
        if kv_ok:
            return keypoint_variance * SINGLE_SIGNAL_ATTENUATION
        return 0.0

    def _physically_plausible(self):
        """Smooth flow acceleration check. Returns (plausible, var/mean ratio)."""
        history = list(self._flow_history)
        if len(history) < 3:
            return True, 0.0

        accelerations = [abs(history[i + 1] - 2 * history[i] + history[i - 1])
                         for i in range(1, len(history) - 1)]
        mean_accel = sum(accelerations) / len(accelerations)
        if mean_accel < 1e-9:
            return True, 0.0

        ratio = float(np.var(accelerations)) / mean_accel
        bound = STRICT_PLAUSIBILITY_RATIO if self.strict else PLAUSIBILITY_RATIO
        return ratio <= bound, ratio

    def _classify(self, flow: float, keypoint_variance: float,
                  area_variation: float) -> MotionType:
        if keypoint_variance < MEANINGFUL_SIGNAL and flow < 0.1:
            return MotionType.NONE

        if keypoint_variance > flow * 2:
            if _std(list(self._ear_history)) > self.config["eye_aspect_ratio_threshold"]:
                return MotionType.MICRO_EXPRESSION
            return MotionType.ROTATION

        if flow > keypoint_variance * 2:
            return MotionType.TRANSLATION

        if area_variation > BREATHING_AREA_VARIATION:
            return MotionType.BREATHING

        return MotionType.MICRO_EXPRESSION

    def consistency_floor(self, motion_type: MotionType) -> float:
        floor = float(self.config["motion_consistency_threshold"])
        if motion_type in LOW_ENERGY_TYPES:
            return floor * 0.5
        return floor

    def _is_lively(self, flow, score, keypoint_variance, motion_type,
                   consistency, plausible) -> bool:
        if flow < self.config["min_optical_flow_threshold"]:
            return False
        if score < self.config["min_motion_score"]:
            return False
        if keypoint_variance < self.config["min_keypoint_variance"]:
            return False
        if motion_type == MotionType.NONE:
            return False
        if consistency < self.consistency_floor(motion_type):
            return False
        return plausible

    # ─── Helpers ──────────────────────────────────────────────

    @staticmethod
    def _mean_or_zero(values) -> float:
        return sum(values) / len(values) if values else 0.0

    def _empty_verdict(self) -> MotionVerdict:
        return MotionVerdict(
            ready=self.is_ready(),
            details={"frame_count": len(self._frames)},
        )
