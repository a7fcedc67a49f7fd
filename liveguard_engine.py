"""
LiveGuard - CaptureEngine (Capture Orchestrator)
================================================
Drives one face-capture session from a live video source.

Per tick (cooperative, never re-entered):
  1. Consume timer messages (action timeouts) from the command queue
  2. Pull one frame, materialize gray/color samples (FrameBufferManager)
  3. Ask the FrameScheduler which checks run on this frame
  4. Fast corner check / slow screen ensemble on their duty-cycle slots
  5. Main detection: perception -> motion -> face ratio -> frontal ->
     image quality -> collect -> challenge-response actions

Periods: DETECT -> COLLECT -> VERIFY. Any rejection performs a partial
reset back to DETECT; detector objects and frame buffers survive it.

Events (loaded / error / debug / info / action / finish) go to an outbound
queue.Queue; hosts poll them with drain_events().
"""

from __future__ import annotations

import gc
import queue
import re
import threading
import time
import psutil
from typing import Callable, List, Optional

import cv2
import numpy as np

from liveguard_frames import FrameBufferManager
from liveguard_motion import MotionLivenessDetector
from liveguard_perception import PerceptionProvider
from liveguard_scheduler import FrameScheduler
from liveguard_screen import ScreenCaptureDetector
from liveguard_screen_corners import ScreenCornersContourDetector
from liveguard_state import CaptureSession, EngineStateMachine
from liveguard_types import (
    ActionChallenge,
    BufferAllocationError,
    CameraAccessError,
    DetectionCode,
    DetectionPeriod,
    DetectorActionEvent,
    DetectorDebugEvent,
    DetectorErrorEvent,
    DetectorFinishEvent,
    DetectorInfoEvent,
    DetectorLoadedEvent,
    EngineNotReadyError,
    EngineState,
    ErrorCode,
    LandmarkSnapshot,
    LivenessAction,
    LivenessActionStatus,
    StreamAcquisitionError,
)
from liveguard_utils_core import (
    NESTED_OPTION_KEYS,
    calc_face_frontal,
    calc_image_quality,
    merge_options,
    setup_logger,
)

_log = setup_logger('GuardEngine')


DEBUG_LEVEL_PRIORITY = {"info": 0, "warn": 1, "error": 2}

MOUTH_OPEN_PATTERN = re.compile(r"mouth\s+(\d+)%\s+open", re.IGNORECASE)
NOD_PATTERN = re.compile(r"head\s+(up|down)", re.IGNORECASE)

MEMORY_GROWTH_GC_BYTES = 500 * 1024 * 1024


def recognized_actions(gestures: List[str], min_mouth_open_percent: float) -> set:
    """Actions a list of gesture labels satisfies."""
    actions = set()
    for label in gestures or []:
        if "blink" in label.lower():
            actions.add(LivenessAction.BLINK)
        match = MOUTH_OPEN_PATTERN.search(label)
        if match and int(match.group(1)) / 100.0 > min_mouth_open_percent:
            actions.add(LivenessAction.MOUTH_OPEN)
        if NOD_PATTERN.search(label):
            actions.add(LivenessAction.NOD)
    return actions


def _motion_config(options: dict) -> dict:
    return {
        "min_motion_score": options["motion_liveness_min_motion_score"],
        "min_keypoint_variance": options["motion_liveness_min_keypoint_variance"],
        "frame_buffer_size": options["motion_liveness_frame_buffer_size"],
        "eye_aspect_ratio_threshold": options["motion_liveness_eye_aspect_ratio_threshold"],
        "min_optical_flow_threshold": options["motion_liveness_min_optical_flow_threshold"],
        "motion_consistency_threshold": options["motion_liveness_motion_consistency_threshold"],
        "strict_photo_detection": options["motion_liveness_strict_photo_detection"],
    }


def _corners_config(options: dict) -> dict:
    return {
        "canny_low": options["screen_corners_canny_low"],
        "canny_high": options["screen_corners_canny_high"],
        "min_contour_area": options["screen_corners_min_contour_area"],
        "confidence_threshold": options["screen_corners_confidence_threshold"],
        "boundary_ratio_threshold": options["screen_corners_boundary_ratio_threshold"],
    }


class CaptureEngine:
    """
    Face PAD / liveness capture orchestrator.

    Usage:
        engine = CaptureEngine(options, perception=MediaPipePerceptionProvider())
        engine.initialize()
        engine.start_detection(0)
        engine.run()
        for event in engine.drain_events():
            ...
    """

    def __init__(self, options: Optional[dict] = None,
                 perception: Optional[PerceptionProvider] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 motion_detector: Optional[MotionLivenessDetector] = None,
                 corners_detector: Optional[ScreenCornersContourDetector] = None,
                 screen_detector: Optional[ScreenCaptureDetector] = None,
                 rng: Optional[np.random.Generator] = None):
        self.options = merge_options(options)
        self.perception = perception
        self.clock = clock
        self.sleep = sleep
        self.rng = rng if rng is not None else np.random.default_rng()

        self.state_machine = EngineStateMachine()
        self.session = CaptureSession()
        self.buffers = FrameBufferManager()
        self.events: "queue.Queue" = queue.Queue()
        self.commands: "queue.Queue" = queue.Queue()

        self._injected = {
            "motion": motion_detector,
            "corners": corners_detector,
            "screen": screen_detector,
        }
        self._build_components()

        self._source = None
        self._owns_source = False
        self._pending_frame: Optional[np.ndarray] = None
        self._last_frame_time = 0.0

        self._lock = threading.RLock()
        self._tick_active = False
        self._tick_scheduled = False
        self._full_reset_pending = False
        self._next_delay_s = 0.0

        self._action_timer: Optional[threading.Timer] = None
        self._action_token = 0

        self._debug_throttle = {}
        self._memory_baseline = psutil.Process().memory_info().rss

    def _build_components(self):
        opts = self.options
        self.scheduler = FrameScheduler(opts["detect_frame_delay"])
        self.motion = self._injected["motion"] or MotionLivenessDetector(_motion_config(opts))
        self.corners = self._injected["corners"] or ScreenCornersContourDetector(_corners_config(opts))
        self.screen = self._injected["screen"] or ScreenCaptureDetector(
            fps=self.scheduler.fps, options=opts, rng=self.rng)

    # ═══════════════════════════════════════════════════════════
    # Accessors
    # ═══════════════════════════════════════════════════════════

    @property
    def state(self) -> EngineState:
        return self.state_machine.state

    def get_engine_state(self) -> EngineState:
        return self.state_machine.state

    def get_options(self) -> dict:
        return dict(self.options)

    def update_options(self, options: dict) -> bool:
        """Apply option overrides. Refused while a session is running."""
        if self.state == EngineState.DETECTING:
            _log.warning("update_options ignored while detecting")
            return False
        combined = dict(self.options)
        for key, value in (options or {}).items():
            if key in NESTED_OPTION_KEYS and isinstance(value, dict):
                combined[key] = {**self.options[key], **value}
            else:
                combined[key] = value
        self.options = merge_options(combined)
        self._build_components()
        return True

    def get_status(self) -> dict:
        rss = psutil.Process().memory_info().rss
        return {
            "engine": self.state_machine.get_summary(),
            "session": self.session.to_dict(),
            "interval": self.scheduler.interval,
            "frame_delay_ms": self.scheduler.frame_delay_ms,
            "fps": round(self.scheduler.fps, 2),
            "buffers_allocated": self.buffers.allocated,
            "video_buffer": self.screen.get_video_frame_buffer_status(),
            "motion": self.motion.get_statistics(),
            "memory_mb": round(rss / 1e6, 1),
        }

    def drain_events(self) -> list:
        drained = []
        while True:
            try:
                drained.append(self.events.get_nowait())
            except queue.Empty:
                return drained

    # ═══════════════════════════════════════════════════════════
    # Event helpers
    # ═══════════════════════════════════════════════════════════

    def _emit(self, event):
        self.events.put(event)

    def _error(self, code: ErrorCode, message: str):
        _log.error("%s: %s", code.value, message)
        self._emit(DetectorErrorEvent(code=code, message=message))

    def _info(self, code: DetectionCode, message: str, passed: bool = False, **metrics):
        _log.debug("%s %s", code.value, message)
        self._emit(DetectorInfoEvent(code=code, message=message, passed=passed, metrics=metrics))

    def _debug(self, level: str, stage: str, message: str, details: Optional[dict] = None):
        """Host-facing debug event, filtered by level and stage, info-level throttled."""
        opts = self.options
        if not opts["debug_mode"]:
            return
        wanted = DEBUG_LEVEL_PRIORITY.get(str(opts["debug_log_level"]).lower(), 0)
        if DEBUG_LEVEL_PRIORITY.get(level, 0) < wanted:
            return
        stages = opts["debug_log_stages"]
        if stages and stage not in stages:
            return
        if level == "info":
            key = f"{stage}:{message}"
            now_ms = self.clock() * 1000.0
            last = self._debug_throttle.get(key)
            if last is not None and now_ms - last < opts["debug_log_throttle_ms"]:
                return
            self._debug_throttle[key] = now_ms
        self._emit(DetectorDebugEvent(level=level, stage=stage, message=message,
                                      details=details or {}))

    # ═══════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════

    def initialize(self) -> bool:
        """Load the perception provider. READY on success, IDLE on failure."""
        if not self.state_machine.transition(EngineState.INITIALIZING):
            return False
        self._debug("info", "initialize", "Loading perception provider")
        try:
            if self.perception is not None:
                self.perception.open()
        except Exception as e:
            _log.error("Perception provider failed to load: %s", e)
            self.state_machine.transition(EngineState.IDLE)
            self._emit(DetectorLoadedEvent(success=False, error=str(e)))
            return False

        self._memory_baseline = psutil.Process().memory_info().rss
        self.state_machine.transition(EngineState.READY)
        self._emit(DetectorLoadedEvent(success=True))
        _log.info("Engine ready")
        return True

    def _open_source(self, source):
        if source is not None and hasattr(source, "read"):
            self._source, self._owns_source = source, False
        else:
            cap = cv2.VideoCapture(0 if source is None else source)
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.options["detect_video_ideal_width"])
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.options["detect_video_ideal_height"])
            self._source, self._owns_source = cap, True

        opened = getattr(self._source, "isOpened", None)
        if opened is not None and not opened():
            self._release_source()
            raise CameraAccessError(f"Cannot open video source {source!r}")

    def _wait_first_frame(self):
        timeout_s = self.options["detect_video_load_timeout"] / 1000.0
        started = self.clock()
        while True:
            ok, frame = self._source.read()
            if ok and frame is not None:
                self._pending_frame = frame
                self._last_frame_time = self.clock()
                return
            if self.clock() - started >= timeout_s:
                raise StreamAcquisitionError(
                    f"No frame within {self.options['detect_video_load_timeout']} ms")
            self.sleep(0.01)

    def start_detection(self, source=None):
        """Open the video source and begin a new session.

        Args:
            source: cv2.VideoCapture argument (index / path / URL) or any
                    object with read() -> (ok, frame).

        Raises:
            EngineNotReadyError: engine is not READY.
            CameraAccessError: source could not be opened.
            StreamAcquisitionError: no frame arrived within the load timeout.
        """
        if self.state != EngineState.READY:
            self._error(ErrorCode.DETECTOR_NOT_INITIALIZED,
                        f"start_detection called in state {self.state.value}")
            raise EngineNotReadyError("Engine is not ready")

        self.partial_reset()
        try:
            self._open_source(source)
            self._wait_first_frame()
        except (CameraAccessError, StreamAcquisitionError) as e:
            self._error(e.code, str(e))
            self._release_source()
            raise

        self.session.begin(self.clock())
        self.scheduler = FrameScheduler(self.options["detect_frame_delay"], self.scheduler.fps)
        self.scheduler.adjust_frame_delay()
        self.state_machine.transition(EngineState.DETECTING)
        self._tick_scheduled = True
        self._debug("info", "detection", "Detection started",
                    {"interval": self.scheduler.interval,
                     "frame_delay_ms": self.scheduler.frame_delay_ms})

    def stop_detection(self, success: bool = False):
        """Cancel the pending tick, force READY, release buffers and timers."""
        self._tick_scheduled = False
        self._cancel_action_timer()
        if self.state == EngineState.DETECTING:
            self.state_machine.transition(EngineState.READY)
        self._release_source()
        self.full_reset()
        _log.info("Detection stopped (success=%s)", success)

    def _release_source(self):
        if self._source is not None and self._owns_source:
            self._source.release()
        self._source = None
        self._owns_source = False
        self._pending_frame = None

    def close(self):
        self.stop_detection(False)
        if self.perception is not None:
            self.perception.close()
        self.state_machine.transition(EngineState.IDLE)

    # ═══════════════════════════════════════════════════════════
    # Resets
    # ═══════════════════════════════════════════════════════════

    def partial_reset(self):
        """Clear session counters and flags, keep detectors and buffers."""
        self._cancel_action_timer()
        self.session.reset()
        self.motion.reset()
        self.screen.reset_video_frame_buffer()

    def full_reset(self):
        """Partial reset plus buffer release; deferred while a tick is active."""
        with self._lock:
            if self._tick_active:
                self._full_reset_pending = True
                return
        self._do_full_reset()

    def _do_full_reset(self):
        self._full_reset_pending = False
        self.partial_reset()
        self.screen.reset_frame_drop_stats()
        self.buffers.release_all()
        self._debug_throttle.clear()

    # ═══════════════════════════════════════════════════════════
    # Action timer
    # ═══════════════════════════════════════════════════════════

    def _post_command(self, command: tuple):
        self.commands.put(command)

    def _cancel_action_timer(self):
        if self._action_timer is not None:
            self._action_timer.cancel()
            self._action_timer = None

    def _start_action_timer(self, token: int, timeout_s: float):
        self._cancel_action_timer()
        timer = threading.Timer(timeout_s, self._post_command, args=(("action_timeout", token),))
        timer.daemon = True
        timer.start()
        self._action_timer = timer

    def _process_commands(self):
        current = self.session.current_action
        if current is not None and self.clock() >= current.deadline:
            self._post_command(("action_timeout", current.token))

        while True:
            try:
                command, token = self.commands.get_nowait()
            except queue.Empty:
                return
            if command == "action_timeout":
                self._on_action_timeout(token)

    def _on_action_timeout(self, token: int):
        current = self.session.current_action
        if current is None or current.token != token:
            return
        self._emit(DetectorActionEvent(action=current.action,
                                       status=LivenessActionStatus.TIMEOUT,
                                       message="Action timed out"))
        self._debug("warn", "action", f"Action {current.action.value} timed out")
        self.partial_reset()

    # ═══════════════════════════════════════════════════════════
    # Tick loop
    # ═══════════════════════════════════════════════════════════

    def tick(self) -> bool:
        """Run one cooperative tick. Returns False when no tick ran."""
        with self._lock:
            if self._tick_active or not self._tick_scheduled:
                return False
            if self.state != EngineState.DETECTING:
                return False
            self._tick_active = True
            self._tick_scheduled = False

        self._next_delay_s = 0.0
        try:
            self._process_commands()
            if self.state == EngineState.DETECTING:
                self._tick_body()
        finally:
            with self._lock:
                self._tick_active = False
                pending = self._full_reset_pending
                if self.state == EngineState.DETECTING and self._source is not None:
                    self._tick_scheduled = True
            if pending:
                self._do_full_reset()
        return True

    def run(self, max_ticks: Optional[int] = None) -> int:
        """Tick until detection stops (or max_ticks). Returns ticks run."""
        count = 0
        while max_ticks is None or count < max_ticks:
            if not self.tick():
                break
            count += 1
            if self._next_delay_s > 0:
                self.sleep(self._next_delay_s)
        return count

    @property
    def next_delay_s(self) -> float:
        """Pause the host loop should take before the next tick."""
        return self._next_delay_s

    def _read_frame(self) -> Optional[np.ndarray]:
        if self._pending_frame is not None:
            frame, self._pending_frame = self._pending_frame, None
            return frame

        ok, frame = self._source.read()
        if ok and frame is not None:
            self._last_frame_time = self.clock()
            return frame

        timeout_s = self.options["detect_video_load_timeout"] / 1000.0
        if self.clock() - self._last_frame_time >= timeout_s:
            self._error(ErrorCode.STREAM_ACQUISITION_FAILED, "Video stream stopped delivering frames")
            self.stop_detection(False)
        else:
            self._next_delay_s = self.options["detect_error_retry_delay"] / 1000.0
        return None

    def _tick_body(self):
        frame = self._read_frame()
        if frame is None:
            return

        session = self.session
        session.frame_index += 1
        index = session.frame_index
        timestamp = self.clock()

        fps = self.screen.get_average_fps()
        if fps > 0:
            self.scheduler.update_fps(fps)
            self.scheduler.adjust_frame_delay()

        plan = self.scheduler.plan(index, session.period,
                                   session.last_detection_frame_index,
                                   session.last_feature_frame_index)
        if not plan["capture"]:
            return

        try:
            sample = self.buffers.capture(frame, timestamp, index)
        except BufferAllocationError as e:
            self._error(ErrorCode.INTERNAL_ERROR, str(e))
            self.stop_detection(False)
            return

        if session.period != DetectionPeriod.DETECT:
            self.screen.add_video_frame(sample.gray, sample.color, timestamp)

        if plan["corners"] and not self._check_corners(sample):
            return
        if plan["features"] and not self._check_features(index):
            return
        if plan["main"]:
            session.last_detection_frame_index = index
            self._main_detection(sample)

    # ═══════════════════════════════════════════════════════════
    # Attack checks
    # ═══════════════════════════════════════════════════════════

    def _check_corners(self, sample) -> bool:
        self.session.last_corner_frame_index = sample.frame_index
        verdict = self.corners.detect(sample.gray).to_verdict()
        self._debug("info", "screen_corners", self.corners.get_message(verdict.confidence),
                    {"confidence": verdict.confidence, **verdict.details})
        if verdict.is_attack:
            self._info(DetectionCode.FACE_NOT_REAL, "Screen boundary detected",
                       confidence=verdict.confidence, method=verdict.method)
            self.partial_reset()
            return False
        return True

    def _check_features(self, index: int) -> bool:
        self.session.last_feature_frame_index = index
        result = self.screen.detect()
        self._debug("info", "screen_capture", result.get_message(),
                    {"confidence": result.confidence_score, "ready": result.ready})
        if result.is_screen_capture:
            self._info(DetectionCode.FACE_NOT_REAL, result.get_message(),
                       confidence=result.confidence_score, risk=result.risk_level)
            self.partial_reset()
            return False
        if result.ready and any(v.available for v in result.executed_methods):
            self.session.realness = True
        return True

    # ═══════════════════════════════════════════════════════════
    # Main detection
    # ═══════════════════════════════════════════════════════════

    def _detect_faces(self, frame_bgr) -> Optional[List[LandmarkSnapshot]]:
        if self.perception is None:
            return []
        try:
            return list(self.perception.detect(frame_bgr) or [])
        except Exception as e:
            _log.warning("Perception failed, frame skipped: %s", e)
            self._debug("error", "perception", f"Perception failed: {e}")
            self._next_delay_s = self.options["detect_error_retry_delay"] / 1000.0
            return None

    def _main_detection(self, sample):
        session = self.session
        faces = self._detect_faces(sample.color)
        if faces is None:
            return

        if len(faces) != 1:
            code = DetectionCode.VIDEO_NO_FACE if not faces else DetectionCode.MULTIPLE_FACE
            self._info(code, f"{len(faces)} faces detected", face_count=len(faces))
            if session.period != DetectionPeriod.DETECT:
                self.partial_reset()
            return

        face = faces[0]
        opts = self.options

        motion = self.motion.analyze_motion(sample.gray, face, sample.gray.shape)
        if motion.ready:
            if not motion.is_lively:
                self._info(DetectionCode.FACE_NOT_LIVE,
                           motion.get_message(opts["motion_liveness_min_motion_score"],
                                              opts["motion_liveness_min_keypoint_variance"]),
                           motion=motion.to_dict())
                self.partial_reset()
                return
            session.liveness = True

        x, y, w, h = (float(v) for v in face.box[:4])
        ratio = (w * h) / float(sample.width * sample.height)
        if ratio <= opts["collect_min_face_ratio"]:
            self._info(DetectionCode.FACE_TOO_SMALL, f"Face ratio {ratio:.2f}", face_ratio=ratio)
            return
        if ratio >= opts["collect_max_face_ratio"]:
            self._info(DetectionCode.FACE_TOO_LARGE, f"Face ratio {ratio:.2f}", face_ratio=ratio)
            return

        frontal = None
        if session.period != DetectionPeriod.VERIFY:
            frontal = calc_face_frontal(face.head_pose, opts["collect_face_frontal_features"],
                                        face.gestures)
            if frontal < opts["collect_min_face_frontal"]:
                self._info(DetectionCode.FACE_NOT_FRONTAL, f"Frontal score {frontal:.2f}",
                           frontal=frontal)
                return

        quality = calc_image_quality(sample.gray, face.box,
                                     opts["collect_image_quality_features"],
                                     opts["collect_min_image_quality"])
        if not quality["passed"]:
            self._info(DetectionCode.FACE_LOW_QUALITY,
                       "; ".join(quality["reasons"]) or f"Quality {quality['score']:.2f}",
                       quality=quality["score"])
            return

        self._info(DetectionCode.FACE_CHECK_PASS, "Face check passed", passed=True,
                   face_ratio=ratio, frontal=frontal, quality=quality["score"])

        if session.period == DetectionPeriod.DETECT:
            session.advance_period(DetectionPeriod.COLLECT)

        if session.period == DetectionPeriod.COLLECT:
            session.offer_best_frame(quality["score"], sample.color,
                                     self._face_crop(sample.color, face.box))
            session.collect_count += 1

            if session.is_ready_to_verify(opts["collect_min_collect_count"]):
                if self._required_action_count() == 0:
                    self._finish(True)
                    return
                session.advance_period(DetectionPeriod.VERIFY)
                self._start_next_action()
            return

        if session.period == DetectionPeriod.VERIFY:
            self._verify_action(face)

    @staticmethod
    def _face_crop(color: np.ndarray, box) -> Optional[np.ndarray]:
        rows, cols = color.shape[:2]
        x, y, w, h = (int(round(float(v))) for v in box[:4])
        x1, y1 = max(0, x), max(0, y)
        x2, y2 = min(cols, x + w), min(rows, y + h)
        if x2 <= x1 or y2 <= y1:
            return None
        return color[y1:y2, x1:x2]

    # ═══════════════════════════════════════════════════════════
    # Challenge-response actions
    # ═══════════════════════════════════════════════════════════

    def _required_action_count(self) -> int:
        count = int(self.options["action_liveness_action_count"])
        if count <= 0:
            return 0
        return min(count, len(self.options["action_liveness_action_list"]))

    def _select_action(self) -> Optional[LivenessAction]:
        valid = set(a.value for a in LivenessAction)
        candidates = [LivenessAction(a) for a in self.options["action_liveness_action_list"]
                      if a in valid and LivenessAction(a) not in self.session.completed_actions]
        if not candidates:
            return None
        if self.options["action_liveness_action_randomize"]:
            return candidates[int(self.rng.integers(len(candidates)))]
        return candidates[0]

    def _start_next_action(self):
        action = self._select_action()
        if action is None:
            self._error(ErrorCode.INTERNAL_ERROR, "No liveness action available")
            self._finish(False)
            return

        self._action_token += 1
        timeout_s = self.options["action_liveness_verify_timeout"] / 1000.0
        self.session.current_action = ActionChallenge(
            action=action,
            deadline=self.clock() + timeout_s,
            token=self._action_token,
        )
        self._start_action_timer(self._action_token, timeout_s)
        self._emit(DetectorActionEvent(action=action, status=LivenessActionStatus.STARTED,
                                       message=f"Please perform: {action.value}"))

    def _verify_action(self, face: LandmarkSnapshot):
        current = self.session.current_action
        if current is None:
            return
        seen = recognized_actions(face.gestures,
                                  self.options["action_liveness_min_mouth_open_percent"])
        if not seen:
            return

        if current.action in seen:
            self._cancel_action_timer()
            current.status = LivenessActionStatus.COMPLETED
            self.session.complete_current_action()
            self._emit(DetectorActionEvent(action=current.action,
                                           status=LivenessActionStatus.COMPLETED,
                                           message="Action completed"))
            if len(self.session.completed_actions) >= self._required_action_count():
                self._finish(True)
            else:
                self._start_next_action()
            return

        current.status = LivenessActionStatus.MISMATCH
        self._emit(DetectorActionEvent(
            action=current.action, status=LivenessActionStatus.MISMATCH,
            message=f"Expected {current.action.value}, saw "
                    f"{', '.join(sorted(a.value for a in seen))}"))
        if self.options["action_liveness_fail_on_mismatch"]:
            self._finish(False)

    # ═══════════════════════════════════════════════════════════
    # Finish
    # ═══════════════════════════════════════════════════════════

    def _finish(self, success: bool):
        session = self.session
        rss = psutil.Process().memory_info().rss
        if rss - self._memory_baseline > MEMORY_GROWTH_GC_BYTES:
            gc.collect()
            _log.warning("Memory growth > 500MB, GC forced")

        self._emit(DetectorFinishEvent(
            success=success,
            silent_passed_count=session.collect_count,
            action_passed_count=len(session.completed_actions),
            total_time_ms=(self.clock() - session.start_time) * 1000.0,
            best_quality_score=session.best_quality_score,
            best_frame=session.best_frame,
            best_face=session.best_face_crop,
        ))
        self._debug("info", "finish", "Session finished",
                    {"success": success, "memory_mb": round(rss / 1e6, 1),
                     "drop_stats": self.screen.get_frame_drop_stats()})
        self.stop_detection(success)
