"""
LiveGuard - Shared Utility Module
=================================
Centralized helpers shared by every LiveGuard component.

Contains 4 Components:
  A) Configuration: defaults, YAML loading, nested option merging
  B) Logging setup (one stream handler per component logger)
  C) Landmark geometry: EAR / MAR on MediaPipe 468-mesh sub-landmarks
  D) Collection gates: frontal pose score and image quality score

All thresholds used by the capture protocol live in DEFAULT_OPTIONS so that
a host can override any of them through config.yaml or a plain dict.
"""

from __future__ import annotations

import copy
import logging
import math
from typing import Optional, Sequence

import cv2
import numpy as np
import yaml


# ===================================================================
# COMPONENT A: CONFIGURATION
# ===================================================================

# Nested feature dicts are merged key by key instead of being replaced.
NESTED_OPTION_KEYS = (
    "collect_face_frontal_features",
    "collect_image_quality_features",
    "screen_optical_feature_weights",
)

DEFAULT_OPTIONS = {
    # Detection loop
    "detect_video_ideal_width": 1920,
    "detect_video_ideal_height": 1080,
    "detect_video_load_timeout": 5000,    # ms until the first frame must arrive
    "detect_frame_delay": 100,            # ms between main detections
    "detect_error_retry_delay": 200,      # ms before retrying a failed tick

    # Collection gates
    "collect_min_collect_count": 3,
    "collect_min_face_ratio": 0.5,
    "collect_max_face_ratio": 0.9,
    "collect_min_face_frontal": 0.9,
    "collect_min_image_quality": 0.5,
    "collect_face_frontal_features": {
        "yaw_threshold": 3,
        "pitch_threshold": 4,
        "roll_threshold": 2,
    },
    "collect_image_quality_features": {
        "require_full_face_in_bounds": False,
        "min_laplacian_variance": 40,
        "min_gradient_sharpness": 0.15,
        "min_blur_score": 0.6,
    },

    # Challenge-response actions
    "action_liveness_action_list": ["blink", "mouth_open", "nod"],
    "action_liveness_action_count": 1,
    "action_liveness_action_randomize": True,
    "action_liveness_verify_timeout": 60000,   # ms per action
    "action_liveness_min_mouth_open_percent": 0.2,
    "action_liveness_fail_on_mismatch": False,

    # Motion liveness
    "motion_liveness_min_motion_score": 0.15,
    "motion_liveness_min_keypoint_variance": 0.02,
    "motion_liveness_frame_buffer_size": 5,
    "motion_liveness_eye_aspect_ratio_threshold": 0.15,
    "motion_liveness_min_optical_flow_threshold": 0.02,
    "motion_liveness_motion_consistency_threshold": 0.3,
    "motion_liveness_strict_photo_detection": False,

    # Screen corners (fast path)
    "screen_corners_canny_low": 35,
    "screen_corners_canny_high": 110,
    "screen_corners_min_contour_area": 1200,
    "screen_corners_confidence_threshold": 0.75,
    "screen_corners_boundary_ratio_threshold": 0.25,

    # Screen ensemble (slow path)
    "screen_capture_confidence_threshold": 0.5,
    "screen_ready_frame_count": 5,
    "screen_frame_drop_rate": 0.0,
    "screen_enable_moire": True,
    "screen_enable_rgb_emission": True,
    "screen_enable_dlp_color_wheel": True,
    "screen_enable_pixel_grid": True,
    "screen_enable_flicker": True,
    "screen_enable_response_time": True,
    "screen_enable_optical_distortion": True,

    "screen_moire_pattern_threshold": 0.50,
    "screen_moire_pattern_enable_dct": True,
    "screen_moire_pattern_enable_edge_detection": True,

    "screen_rgb_low_freq_start_percent": 0.12,
    "screen_rgb_low_freq_end_percent": 0.40,
    "screen_rgb_energy_ratio_normalization_factor": 8,
    "screen_rgb_channel_difference_normalization_factor": 40,
    "screen_rgb_energy_score_weight": 0.45,
    "screen_rgb_asymmetry_score_weight": 0.35,
    "screen_rgb_difference_factor_weight": 0.20,
    "screen_rgb_confidence_threshold": 0.40,

    "screen_dlp_edge_threshold": 80,
    "screen_dlp_channel_separation_threshold": 3,
    "screen_dlp_confidence_threshold": 0.65,
    "screen_dlp_sampling_stride": 2,

    "screen_pixel_grid_high_freq_threshold": 0.15,
    "screen_pixel_grid_strength_threshold": 0.6,

    "screen_flicker_min_period": 1,
    "screen_flicker_max_period": 3,
    "screen_flicker_correlation_threshold": 0.65,
    "screen_flicker_passing_pixel_ratio": 0.40,
    "screen_flicker_sampling_stride": 1,

    "screen_response_time_min_pixel_delta": 30,
    "screen_response_time_threshold": 150,     # ms, e-ink settles in 200-500
    "screen_response_time_passing_pixel_ratio": 0.45,
    "screen_response_time_sampling_stride": 1,

    "screen_optical_keystone_threshold": 0.15,
    "screen_optical_barrel_threshold": 0.10,
    "screen_optical_chromatic_threshold": 3.0,  # px
    "screen_optical_vignette_threshold": 0.20,
    "screen_optical_sampling_stride": 2,
    "screen_optical_feature_weights": {
        "keystone": 0.35,
        "barrel": 0.30,
        "chromatic": 0.20,
        "vignette": 0.15,
    },

    # Debug event channel
    "debug_mode": False,
    "debug_log_level": "info",
    "debug_log_stages": None,
    "debug_log_throttle_ms": 100,

    # Perception provider
    "perception_landmarker_model": "face_landmarker.task",
    "perception_max_faces": 2,
    "perception_min_detection_confidence": 0.5,
}


def load_config(path: str) -> dict:
    """Load a YAML configuration file. An empty file yields an empty dict."""
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def merge_options(user_config: Optional[dict] = None) -> dict:
    """Merge user options over DEFAULT_OPTIONS.

    The nested frontal / image-quality feature dicts are merged key by key.
    Keys whose value is None are ignored so that a partially filled YAML file
    never blanks a default.

    Args:
        user_config: Partial option dict (may be None).

    Returns:
        A new, fully resolved option dict. DEFAULT_OPTIONS is never mutated.
    """
    merged = copy.deepcopy(DEFAULT_OPTIONS)
    if not user_config:
        return merged

    for key, value in user_config.items():
        if value is None:
            continue
        if key in NESTED_OPTION_KEYS and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            if key not in merged:
                _log.warning("Unknown option %r (kept as-is)", key)
            merged[key] = copy.deepcopy(value)
    return merged


# ===================================================================
# COMPONENT B: LOGGING
# ===================================================================

def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Create a configured logger for LiveGuard modules."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '[%(asctime)s] %(name)-12s %(levelname)-7s %(message)s',
            datefmt='%H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(level)
    return logger


_log = setup_logger('GuardUtils')


# ===================================================================
# COMPONENT C: LANDMARK GEOMETRY
# ===================================================================

# MediaPipe 468-mesh sub-landmarks used by the motion analyzer.
# Eye order: [corner, upper1, upper2, corner, lower2, lower1]
LEFT_EYE = [362, 385, 387, 390, 25, 55]
RIGHT_EYE = [33, 160, 158, 133, 153, 144]
# Mouth: first five points upper lip, last five lower lip
MOUTH = [61, 185, 40, 39, 37, 0, 267, 269, 270, 409]


def point_distance(p1, p2) -> float:
    """Euclidean distance between two (x, y[, z]) points, using x and y only."""
    if p1 is None or p2 is None or len(p1) < 2 or len(p2) < 2:
        return 0.0
    return math.hypot(float(p1[0]) - float(p2[0]), float(p1[1]) - float(p2[1]))


def compute_ear(eye_points: Sequence) -> float:
    """Eye Aspect Ratio for a 6-point eye contour.

    EAR = (||p1 - p5|| + ||p2 - p4||) / (2 * ||p0 - p3||)

    Returns 0.0 for degenerate input (fewer than 6 points, zero width).
    """
    if eye_points is None or len(eye_points) < 6:
        return 0.0

    horizontal = point_distance(eye_points[0], eye_points[3])
    if horizontal < 1e-9:
        return 0.0

    vertical_left = point_distance(eye_points[1], eye_points[5])
    vertical_right = point_distance(eye_points[2], eye_points[4])
    return (vertical_left + vertical_right) / (2.0 * horizontal)


def compute_mar(mouth_points: Sequence) -> float:
    """Mouth Aspect Ratio: upper/lower lip vertical gap over mouth width."""
    if mouth_points is None or len(mouth_points) < 10:
        return 0.0

    width = point_distance(mouth_points[0], mouth_points[5])
    if width < 1e-9:
        return 0.0

    upper_y = sum(float(p[1]) for p in mouth_points[:5]) / 5.0
    lower_y = sum(float(p[1]) for p in mouth_points[5:]) / 5.0
    return abs(upper_y - lower_y) / width


# ===================================================================
# COMPONENT D: COLLECTION GATES
# ===================================================================

# Per-degree decay applied to the excess angle beyond each axis threshold
FRONTAL_DECAY_BASE = 0.91
FRONTAL_WEIGHTS = {"yaw": 0.6, "pitch": 0.25, "roll": 0.15}


def calc_face_frontal(
    head_pose: Sequence[float],
    features: dict,
    gestures: Optional[Sequence[str]] = None,
) -> float:
    """Score how frontal a face is, in [0, 1].

    Each axis contributes 1.0 while |angle| stays within its threshold and
    decays exponentially with the excess degrees beyond it. Yaw weighs the
    most, roll the least.

    When gesture labels are supplied and none of them reports the subject
    facing the camera, the score is scaled by 0.75.

    Args:
        head_pose: (yaw, pitch, roll) in degrees.
        features: dict with yaw_threshold / pitch_threshold / roll_threshold.
        gestures: Optional gesture labels from the perception provider.

    Returns:
        Frontal score in [0.0, 1.0].
    """
    yaw, pitch, roll = (float(a) for a in head_pose)
    thresholds = {
        "yaw": float(features.get("yaw_threshold", 3)),
        "pitch": float(features.get("pitch_threshold", 4)),
        "roll": float(features.get("roll_threshold", 2)),
    }
    angles = {"yaw": yaw, "pitch": pitch, "roll": roll}

    score = 0.0
    for axis, weight in FRONTAL_WEIGHTS.items():
        excess = max(0.0, abs(angles[axis]) - thresholds[axis])
        score += weight * (FRONTAL_DECAY_BASE ** excess)

    if gestures:
        facing = any(
            ("facing center" in g) or ("facing camera" in g) for g in gestures
        )
        if not facing:
            score *= 0.75

    return max(0.0, min(1.0, score))


def _box_completeness(box, image_width: int, image_height: int,
                      require_full_face_in_bounds: bool) -> float:
    """Fraction of the face box lying inside the frame."""
    if box is None or len(box) < 4:
        return 0.0
    x, y, w, h = (float(v) for v in box[:4])
    face_area = w * h
    if face_area <= 0:
        return 0.0

    overlap_x = min(max(x + w, 0.0), image_width) - max(x, 0.0)
    overlap_y = min(max(y + h, 0.0), image_height) - max(y, 0.0)
    completeness = max(0.0, overlap_x) * max(0.0, overlap_y) / face_area

    if require_full_face_in_bounds:
        fully_inside = (x >= 0 and y >= 0
                        and x + w <= image_width and y + h <= image_height)
        if not fully_inside and completeness < 0.9:
            completeness *= 0.5
    return min(1.0, completeness)


def _face_roi(gray: np.ndarray, box) -> np.ndarray:
    """Face region plus 10% padding, clipped to the frame."""
    if box is None or len(box) < 4:
        return gray
    x, y, w, h = (float(v) for v in box[:4])
    pad = min(w, h) * 0.1
    rows, cols = gray.shape[:2]
    x1 = max(0, int(math.floor(x - pad)))
    y1 = max(0, int(math.floor(y - pad)))
    x2 = min(cols, int(math.floor(x + w + pad)))
    y2 = min(rows, int(math.floor(y + h + pad)))
    if x2 - x1 < 3 or y2 - y1 < 3:
        return gray
    return gray[y1:y2, x1:x2]


def calc_image_quality(
    gray: np.ndarray,
    box,
    features: dict,
    threshold: float,
) -> dict:
    """Image quality gate on the grayscale frame.

    Score = 0.4 * completeness + 0.6 * sharpness, where sharpness blends the
    Laplacian variance (normalized by 150) and the mean Sobel gradient
    magnitude (normalized by 100) with weights 0.4 / 0.6.

    Returns:
        dict(passed, score, completeness, laplacian_variance,
             gradient_sharpness, sharpness, reasons)
    """
    rows, cols = gray.shape[:2]
    reasons = []

    completeness = _box_completeness(
        box, cols, rows, bool(features.get("require_full_face_in_bounds", False)))
    completeness_min = 1.0 if features.get("require_full_face_in_bounds") else 0.8
    if completeness < completeness_min:
        reasons.append(f"face completeness {completeness:.2f} < {completeness_min}")

    roi = _face_roi(gray, box)
    laplacian = cv2.Laplacian(roi, cv2.CV_64F)
    lap_var = float(laplacian.var())
    min_lap = float(features.get("min_laplacian_variance", 40))
    if lap_var < min_lap:
        reasons.append(f"laplacian variance {lap_var:.1f} < {min_lap}")

    grad_x = cv2.Sobel(roi, cv2.CV_64F, 1, 0, ksize=3)
    grad_y = cv2.Sobel(roi, cv2.CV_64F, 0, 1, ksize=3)
    gradient = min(1.0, float(cv2.magnitude(grad_x, grad_y).mean()) / 100.0)
    min_grad = float(features.get("min_gradient_sharpness", 0.15))
    if gradient < min_grad:
        reasons.append(f"gradient sharpness {gradient:.2f} < {min_grad}")

    sharpness = min(1.0, 0.4 * min(1.0, lap_var / 150.0) + 0.6 * gradient)
    score = min(1.0, completeness) * 0.4 + sharpness * 0.6

    return {
        "passed": score >= threshold,
        "score": score,
        "completeness": completeness,
        "laplacian_variance": lap_var,
        "gradient_sharpness": gradient,
        "sharpness": sharpness,
        "reasons": reasons,
    }
