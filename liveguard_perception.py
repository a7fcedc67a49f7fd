"""
LiveGuard - Perception Provider
===============================
Turns a BGR frame into LandmarkSnapshot objects for the capture engine.

MediaPipePerceptionProvider:
  - MediaPipe FaceLandmarker, VIDEO running mode, blendshapes enabled
  - 478-point mesh scaled to pixel coordinates
  - Head pose (yaw, pitch, roll) from cv2.solvePnP on six mesh points
  - Gesture labels derived from blendshapes + pose (derive_gestures)

The engine only depends on the PerceptionProvider interface, so tests and
other hosts can plug in any detector.
"""

from __future__ import annotations

import time
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from liveguard_types import LandmarkSnapshot
from liveguard_utils_core import setup_logger

_log = setup_logger('GuardPercept')


# ===================================================================
# GESTURES
# ===================================================================

GESTURE_DEFAULTS = {
    "blink_threshold": 0.5,        # eyeBlinkLeft / eyeBlinkRight score
    "mouth_open_min_percent": 5,   # jawOpen below this is not reported
    "nod_pitch_degrees": 10.0,
    "center_yaw_degrees": 10.0,
    "center_pitch_degrees": 10.0,
}


def derive_gestures(blendshapes: Dict[str, float],
                    head_pose: Sequence[float],
                    config: Optional[dict] = None) -> List[str]:
    """Gesture labels for one face.

    Labels: "blink left eye", "blink right eye", "mouth NN% open",
    "head up", "head down", "facing center".

    Args:
        blendshapes: MediaPipe blendshape name -> score.
        head_pose: (yaw, pitch, roll) in degrees; positive pitch is head up.
        config: Optional overrides for GESTURE_DEFAULTS.
    """
    cfg = {**GESTURE_DEFAULTS, **(config or {})}
    yaw, pitch, _ = (float(a) for a in head_pose)
    gestures = []

    if blendshapes.get("eyeBlinkLeft", 0.0) > cfg["blink_threshold"]:
        gestures.append("blink left eye")
    if blendshapes.get("eyeBlinkRight", 0.0) > cfg["blink_threshold"]:
        gestures.append("blink right eye")

    mouth_percent = int(round(blendshapes.get("jawOpen", 0.0) * 100))
    if mouth_percent >= cfg["mouth_open_min_percent"]:
        gestures.append(f"mouth {min(mouth_percent, 100)}% open")

    if pitch > cfg["nod_pitch_degrees"]:
        gestures.append("head up")
    elif pitch < -cfg["nod_pitch_degrees"]:
        gestures.append("head down")

    if abs(yaw) < cfg["center_yaw_degrees"] and abs(pitch) < cfg["center_pitch_degrees"]:
        gestures.append("facing center")

    return gestures


# ===================================================================
# HEAD POSE
# ===================================================================

# Generic 3D face model (mm) and the matching mesh indices:
# nose tip, chin, left eye outer, right eye outer, mouth left, mouth right
POSE_MESH_INDICES = [1, 152, 263, 33, 291, 61]
POSE_MODEL_POINTS = np.array([
    (0.0, 0.0, 0.0),
    (0.0, -330.0, -65.0),
    (225.0, 170.0, -135.0),
    (-225.0, 170.0, -135.0),
    (150.0, -150.0, -125.0),
    (-150.0, -150.0, -125.0),
], dtype=np.float64)


def _normalize_angle(angle: float) -> float:
    # decomposeProjectionMatrix can report 180-flipped solutions
    if angle > 90:
        angle -= 180
    elif angle < -90:
        angle += 180
    return angle


def estimate_head_pose(mesh_px: np.ndarray, frame_size: Tuple[int, int]) -> Tuple[float, float, float]:
    """(yaw, pitch, roll) in degrees from a pixel-space mesh.

    Returns (0, 0, 0) when solvePnP fails.
    """
    width, height = frame_size
    if mesh_px is None or len(mesh_px) <= max(POSE_MESH_INDICES):
        return 0.0, 0.0, 0.0

    image_points = np.asarray(mesh_px, dtype=np.float64)[POSE_MESH_INDICES, :2]
    focal = float(width)
    camera_matrix = np.array([
        [focal, 0, width / 2.0],
        [0, focal, height / 2.0],
        [0, 0, 1],
    ], dtype=np.float64)
    dist_coeffs = np.zeros((4, 1))

    ok, rvec, tvec = cv2.solvePnP(POSE_MODEL_POINTS, image_points, camera_matrix,
                                  dist_coeffs, flags=cv2.SOLVEPNP_ITERATIVE)
    if not ok:
        return 0.0, 0.0, 0.0

    rotation, _ = cv2.Rodrigues(rvec)
    projection = np.hstack((rotation, tvec))
    euler = cv2.decomposeProjectionMatrix(projection)[6]
    pitch, yaw, roll = (float(a) for a in euler.flatten()[:3])
    return _normalize_angle(yaw), -_normalize_angle(pitch), _normalize_angle(roll)


# ===================================================================
# PROVIDERS
# ===================================================================

class PerceptionProvider:
    """Interface: one LandmarkSnapshot per detected face."""

    def open(self):
        pass

    def detect(self, frame_bgr: np.ndarray) -> List[LandmarkSnapshot]:
        raise NotImplementedError

    def close(self):
        pass


class MediaPipePerceptionProvider(PerceptionProvider):
    """MediaPipe FaceLandmarker in VIDEO mode."""

    def __init__(self, model_path: str = "face_landmarker.task", max_faces: int = 2,
                 min_detection_confidence: float = 0.5,
                 gesture_config: Optional[dict] = None):
        self.model_path = model_path
        self.max_faces = max_faces
        self.min_detection_confidence = min_detection_confidence
        self.gesture_config = gesture_config or {}
        self._landmarker = None
        self._mp = None
        self._last_timestamp_ms = -1

    def open(self):
        import mediapipe as mp
        from mediapipe.tasks import python as mp_tasks
        from mediapipe.tasks.python import vision

        options = vision.FaceLandmarkerOptions(
            base_options=mp_tasks.BaseOptions(model_asset_path=self.model_path),
            running_mode=vision.RunningMode.VIDEO,
            num_faces=self.max_faces,
            min_face_detection_confidence=self.min_detection_confidence,
            min_face_presence_confidence=self.min_detection_confidence,
            min_tracking_confidence=0.5,
            output_face_blendshapes=True,
        )
        self._mp = mp
        self._landmarker = vision.FaceLandmarker.create_from_options(options)
        _log.info("FaceLandmarker loaded (%s, max_faces=%d)", self.model_path, self.max_faces)

    def _next_timestamp_ms(self) -> int:
        # VIDEO mode rejects non-increasing timestamps
        ts = int(time.monotonic() * 1000)
        if ts <= self._last_timestamp_ms:
            ts = self._last_timestamp_ms + 1
        self._last_timestamp_ms = ts
        return ts

    def detect(self, frame_bgr: np.ndarray) -> List[LandmarkSnapshot]:
        if self._landmarker is None:
            raise RuntimeError("Perception provider not opened")

        height, width = frame_bgr.shape[:2]
        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb)
        result = self._landmarker.detect_for_video(image, self._next_timestamp_ms())

        snapshots = []
        for i, landmarks in enumerate(result.face_landmarks or []):
            mesh = np.array([(lm.x * width, lm.y * height, lm.z * width) for lm in landmarks],
                            dtype=np.float64)
            x_min, y_min = mesh[:, 0].min(), mesh[:, 1].min()
            x_max, y_max = mesh[:, 0].max(), mesh[:, 1].max()
            box = (float(x_min), float(y_min), float(x_max - x_min), float(y_max - y_min))

            blendshapes = {}
            if result.face_blendshapes and i < len(result.face_blendshapes):
                blendshapes = {c.category_name: c.score for c in result.face_blendshapes[i]}

            head_pose = estimate_head_pose(mesh, (width, height))
            snapshots.append(LandmarkSnapshot(
                box=box,
                mesh=mesh,
                gestures=derive_gestures(blendshapes, head_pose, self.gesture_config),
                head_pose=head_pose,
            ))
        return snapshots

    def close(self):
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
