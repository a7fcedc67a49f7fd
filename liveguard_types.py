"""
LiveGuard - Shared Types
========================
Enums, result dataclasses, outbound events and the exception hierarchy
shared by every LiveGuard component.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


# ═══════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════

class EngineState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    DETECTING = "detecting"


class DetectionPeriod(str, Enum):
    DETECT = "detect"     # waiting for a single, well-framed face
    COLLECT = "collect"   # accumulating quality-gated frames
    VERIFY = "verify"     # challenge-response actions


class LivenessAction(str, Enum):
    BLINK = "blink"
    MOUTH_OPEN = "mouth_open"
    NOD = "nod"


class LivenessActionStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    TIMEOUT = "timeout"
    MISMATCH = "mismatch"


class DetectionCode(str, Enum):
    VIDEO_NO_FACE = "VIDEO_NO_FACE"
    MULTIPLE_FACE = "MULTIPLE_FACE"
    FACE_TOO_SMALL = "FACE_TOO_SMALL"
    FACE_TOO_LARGE = "FACE_TOO_LARGE"
    FACE_NOT_FRONTAL = "FACE_NOT_FRONTAL"
    FACE_NOT_REAL = "FACE_NOT_REAL"
    FACE_NOT_LIVE = "FACE_NOT_LIVE"
    FACE_LOW_QUALITY = "FACE_LOW_QUALITY"
    FACE_CHECK_PASS = "FACE_CHECK_PASS"


class ErrorCode(str, Enum):
    DETECTOR_NOT_INITIALIZED = "DETECTOR_NOT_INITIALIZED"
    CAMERA_ACCESS_DENIED = "CAMERA_ACCESS_DENIED"
    STREAM_ACQUISITION_FAILED = "STREAM_ACQUISITION_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class MotionType(str, Enum):
    NONE = "none"
    ROTATION = "rotation"
    TRANSLATION = "translation"
    BREATHING = "breathing"
    MICRO_EXPRESSION = "micro_expression"


# ═══════════════════════════════════════════════════════════════
# Exceptions
# ═══════════════════════════════════════════════════════════════

class LiveGuardError(Exception):
    """Base error. Carries the ErrorCode surfaced to the host."""
    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class EngineNotReadyError(LiveGuardError):
    code = ErrorCode.DETECTOR_NOT_INITIALIZED


class CameraAccessError(LiveGuardError):
    code = ErrorCode.CAMERA_ACCESS_DENIED


class StreamAcquisitionError(LiveGuardError):
    code = ErrorCode.STREAM_ACQUISITION_FAILED


class BufferAllocationError(LiveGuardError):
    code = ErrorCode.INTERNAL_ERROR


# ═══════════════════════════════════════════════════════════════
# Per-tick data
# ═══════════════════════════════════════════════════════════════

@dataclass
class LandmarkSnapshot:
    """One face as reported by the perception provider.

    Attributes:
        box: (x, y, w, h) bounding box in pixels.
        mesh: (N, 2) or (N, 3) array, N >= 468, pixel coordinates.
        gestures: Gesture labels such as "blink left eye", "mouth 35% open",
                  "head up", "facing center".
        head_pose: (yaw, pitch, roll) in degrees.
        confidence: Detection confidence [0.0, 1.0].
    """
    box: Tuple[float, float, float, float]
    mesh: np.ndarray = field(default_factory=lambda: np.empty((0, 2)))
    gestures: List[str] = field(default_factory=list)
    head_pose: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    confidence: float = 1.0


@dataclass
class FrameSample:
    """Grayscale + color view of the current frame.

    Both arrays are storage owned by FrameBufferManager and are only valid
    during the tick that produced them.
    """
    gray: np.ndarray
    color: np.ndarray
    width: int
    height: int
    timestamp: float
    frame_index: int


# ═══════════════════════════════════════════════════════════════
# Detector results
# ═══════════════════════════════════════════════════════════════

@dataclass
class AttackVerdict:
    """Outcome of a single presentation-attack method."""
    method: str
    is_attack: bool = False
    confidence: float = 0.0
    available: bool = True
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unavailable(cls, method: str, reason: str) -> "AttackVerdict":
        return cls(method=method, is_attack=False, confidence=0.0,
                   available=False, details={"reason": reason})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScreenCaptureDetectionResult:
    """Fused verdict of the screen / replay attack ensemble."""
    is_screen_capture: bool
    confidence_score: float
    executed_methods: List[AttackVerdict] = field(default_factory=list)
    risk_level: str = "low"            # low | medium | high
    processing_time_ms: float = 0.0
    ready: bool = False
    decisive_method: Optional[str] = None

    def get_message(self) -> str:
        if not self.executed_methods:
            return "No screen detection methods executed"
        summary = ", ".join(
            f"{m.method}:{m.confidence:.2f}" for m in self.executed_methods if m.available
        ) or "no method had enough data"
        if self.is_screen_capture:
            return (f"Screen capture detected (confidence {self.confidence_score:.2f}, "
                    f"risk {self.risk_level}) [{summary}]")
        return f"No screen capture (confidence {self.confidence_score:.2f}) [{summary}]"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScreenCornersResult:
    """Fast rectangle / contour screen-boundary verdict."""
    is_screen_capture: bool
    confidence: float
    screen_rect_count: int = 0
    boundary_ratio: float = 0.0
    processing_time_ms: float = 0.0

    def to_verdict(self) -> AttackVerdict:
        return AttackVerdict(
            method="screen_corners",
            is_attack=self.is_screen_capture,
            confidence=self.confidence,
            details={
                "screen_rect_count": self.screen_rect_count,
                "boundary_ratio": self.boundary_ratio,
            },
        )


@dataclass
class MotionVerdict:
    """Motion-based liveness verdict. Do not act on is_lively until ready."""
    motion_score: float = 0.0
    optical_flow_magnitude: float = 0.0
    keypoint_variance: float = 0.0
    eye_motion_score: float = 0.0
    mouth_motion_score: float = 0.0
    motion_type: MotionType = MotionType.NONE
    is_lively: bool = False
    ready: bool = False
    consistency: float = 0.0
    physically_plausible: bool = True
    details: Dict[str, Any] = field(default_factory=dict)

    def get_message(self, min_motion_score: float, min_keypoint_variance: float) -> str:
        if self.is_lively:
            return f"Liveness confirmed ({self.motion_type.value}, score {self.motion_score:.2f})"
        if self.motion_type == MotionType.NONE:
            return "No facial motion detected - possible photo attack"
        if not self.physically_plausible:
            return "Implausible motion pattern - possible replay attack"
        if self.motion_score < min_motion_score:
            return (f"Motion score too low: {self.motion_score:.3f} "
                    f"(required {min_motion_score})")
        if self.keypoint_variance < min_keypoint_variance:
            return (f"Keypoint variance too low: {self.keypoint_variance:.3f} "
                    f"(required {min_keypoint_variance})")
        return f"Motion inconsistent (consistency {self.consistency:.2f})"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["motion_type"] = self.motion_type.value
        return data


@dataclass
class ActionChallenge:
    """The single active challenge-response action."""
    action: LivenessAction
    status: LivenessActionStatus = LivenessActionStatus.STARTED
    deadline: float = 0.0        # monotonic seconds
    token: int = 0               # matches timeout messages to this challenge


# ═══════════════════════════════════════════════════════════════
# Outbound events
# ═══════════════════════════════════════════════════════════════

@dataclass
class DetectorLoadedEvent:
    success: bool
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class DetectorErrorEvent:
    code: ErrorCode
    message: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class DetectorDebugEvent:
    level: str
    stage: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class DetectorInfoEvent:
    code: DetectionCode
    message: str
    passed: bool = False
    metrics: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class DetectorActionEvent:
    action: LivenessAction
    status: LivenessActionStatus
    message: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class DetectorFinishEvent:
    success: bool
    silent_passed_count: int
    action_passed_count: int
    total_time_ms: float
    best_quality_score: float
    best_frame: Optional[np.ndarray] = None
    best_face: Optional[np.ndarray] = None
    timestamp: float = field(default_factory=time.time)
