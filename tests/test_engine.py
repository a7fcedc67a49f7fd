import numpy as np
import pytest

from liveguard_engine import CaptureEngine
from liveguard_motion import MotionLivenessDetector
from liveguard_screen import ScreenCaptureDetector
from liveguard_screen_corners import ScreenCornersContourDetector
from liveguard_types import (
    AttackVerdict,
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
    LivenessAction,
    LivenessActionStatus,
    ScreenCaptureDetectionResult,
    ScreenCornersResult,
    StreamAcquisitionError,
)

from conftest import FakePerception, FakeSource


class QuietScreen(ScreenCaptureDetector):
    """Ensemble that always reports a ready, clean history."""

    def __init__(self, ready: bool = True, available: bool = True):
        super().__init__()
        self.ready = ready
        self.available = available
        self.calls = 0

    def detect(self):
        self.calls += 1
        verdict = AttackVerdict("moire") if self.available else AttackVerdict.unavailable("moire", "no frame")
        return ScreenCaptureDetectionResult(False, 0.0, [verdict], ready=self.ready)


class QuietCorners(ScreenCornersContourDetector):
    def detect(self, gray):
        return ScreenCornersResult(is_screen_capture=False, confidence=0.0)


class LoudCorners(ScreenCornersContourDetector):
    def detect(self, gray):
        return ScreenCornersResult(is_screen_capture=True, confidence=0.9,
                                   screen_rect_count=1, boundary_ratio=0.5)


class LoudScreen(QuietScreen):
    def detect(self):
        self.calls += 1
        return ScreenCaptureDetectionResult(
            True, 0.9, [AttackVerdict("flicker", is_attack=True, confidence=0.9)],
            risk_level="high", ready=True, decisive_method="flicker")


class ResettingPerception(FakePerception):
    """Requests a full reset from inside the tick that is running."""

    def __init__(self):
        super().__init__()
        self.engine = None
        self.seen = []

    def detect(self, frame_bgr):
        self.engine.full_reset()
        self.seen.append((self.engine._full_reset_pending, self.engine.buffers.allocated))
        return super().detect(frame_bgr)


class BrokenPerception(FakePerception):
    def open(self):
        raise RuntimeError("model file missing")


def _engine(clock, perception=None, screen=None, corners=None, **options):
    options.setdefault("action_liveness_action_count", 0)
    options.setdefault("action_liveness_action_randomize", False)
    return CaptureEngine(
        options,
        perception=perception if perception is not None else FakePerception(),
        clock=clock,
        sleep=clock.advance,
        motion_detector=MotionLivenessDetector(flow_estimator=lambda prev, curr: 0.3),
        corners_detector=corners or QuietCorners(),
        screen_detector=screen or QuietScreen(),
    )


def _started(engine, clock, frame):
    engine.initialize()
    source = FakeSource(frame, clock=clock)
    engine.start_detection(source)
    return source


def _of(events, kind):
    return [e for e in events if isinstance(e, kind)]


def _tick_until(engine, predicate, max_ticks=300):
    events = []
    for _ in range(max_ticks):
        engine.tick()
        events.extend(engine.drain_events())
        if predicate(events):
            break
    return events


# ─── Lifecycle ────────────────────────────────────────────────

def test_initialize_emits_loaded(clock) -> None:
    perception = FakePerception()
    engine = _engine(clock, perception)
    assert engine.initialize()

    loaded = _of(engine.drain_events(), DetectorLoadedEvent)
    assert loaded and loaded[0].success
    assert perception.opened
    assert engine.get_engine_state() == EngineState.READY


def test_initialize_failure_returns_to_idle(clock) -> None:
    engine = _engine(clock, BrokenPerception())
    assert not engine.initialize()

    loaded = _of(engine.drain_events(), DetectorLoadedEvent)
    assert not loaded[0].success
    assert "model file missing" in loaded[0].error
    assert engine.state == EngineState.IDLE


def test_start_before_initialize_raises(clock, noise_frame) -> None:
    engine = _engine(clock)
    with pytest.raises(EngineNotReadyError):
        engine.start_detection(FakeSource(noise_frame, clock=clock))

    errors = _of(engine.drain_events(), DetectorErrorEvent)
    assert errors[0].code == ErrorCode.DETECTOR_NOT_INITIALIZED
    assert engine.state == EngineState.IDLE


def test_unopened_camera_raises_access_error(clock, noise_frame) -> None:
    engine = _engine(clock)
    engine.initialize()
    with pytest.raises(CameraAccessError):
        engine.start_detection(FakeSource(noise_frame, clock=clock, opened=False))

    errors = _of(engine.drain_events(), DetectorErrorEvent)
    assert errors[-1].code == ErrorCode.CAMERA_ACCESS_DENIED
    assert engine.state == EngineState.READY


def test_silent_stream_raises_after_load_timeout(clock, noise_frame) -> None:
    engine = _engine(clock)
    engine.initialize()
    started = clock()
    with pytest.raises(StreamAcquisitionError):
        engine.start_detection(FakeSource(noise_frame, clock=clock, fail_reads=True))

    assert clock() - started >= 5.0
    errors = _of(engine.drain_events(), DetectorErrorEvent)
    assert errors[-1].code == ErrorCode.STREAM_ACQUISITION_FAILED
    assert engine.state == EngineState.READY


def test_stream_stall_mid_session_stops_detection(clock, noise_frame) -> None:
    engine = _engine(clock)
    source = _started(engine, clock, noise_frame)
    source.fail_reads = True

    engine.run(max_ticks=500)
    errors = _of(engine.drain_events(), DetectorErrorEvent)
    assert errors[-1].code == ErrorCode.STREAM_ACQUISITION_FAILED
    assert engine.state == EngineState.READY


def test_close_returns_to_idle(clock, noise_frame) -> None:
    perception = FakePerception()
    engine = _engine(clock, perception)
    _started(engine, clock, noise_frame)
    engine.close()
    assert engine.state == EngineState.IDLE
    assert perception.closed
    assert not engine.buffers.allocated


# ─── Main detection ───────────────────────────────────────────

def test_no_face_reported(clock, noise_frame) -> None:
    engine = _engine(clock, FakePerception(faces=0))
    _started(engine, clock, noise_frame)
    events = _tick_until(engine, lambda ev: _of(ev, DetectorInfoEvent), max_ticks=10)

    info = _of(events, DetectorInfoEvent)
    assert info[0].code == DetectionCode.VIDEO_NO_FACE
    assert engine.session.period == DetectionPeriod.DETECT


def test_multiple_faces_reported(clock, noise_frame) -> None:
    engine = _engine(clock, FakePerception(faces=2))
    _started(engine, clock, noise_frame)
    events = _tick_until(engine, lambda ev: _of(ev, DetectorInfoEvent), max_ticks=10)
    assert _of(events, DetectorInfoEvent)[0].code == DetectionCode.MULTIPLE_FACE


def test_small_face_rejected(clock, noise_frame) -> None:
    engine = _engine(clock, FakePerception(box=(60.0, 40.0, 40.0, 40.0)))
    _started(engine, clock, noise_frame)
    events = _tick_until(engine, lambda ev: _of(ev, DetectorInfoEvent), max_ticks=10)
    assert _of(events, DetectorInfoEvent)[0].code == DetectionCode.FACE_TOO_SMALL


def test_turned_face_rejected(clock, noise_frame) -> None:
    engine = _engine(clock, FakePerception(head_pose=(30.0, 0.0, 0.0), gestures=[]))
    _started(engine, clock, noise_frame)
    events = _tick_until(engine, lambda ev: _of(ev, DetectorInfoEvent), max_ticks=10)
    assert _of(events, DetectorInfoEvent)[0].code == DetectionCode.FACE_NOT_FRONTAL


def test_perception_failure_skips_frame(clock, noise_frame) -> None:
    engine = _engine(clock, FakePerception(fail=True))
    _started(engine, clock, noise_frame)
    engine.run(max_ticks=9)

    assert not _of(engine.drain_events(), DetectorInfoEvent)
    assert engine.state == EngineState.DETECTING


def test_perception_failure_sets_retry_delay(clock, noise_frame) -> None:
    engine = _engine(clock, FakePerception(fail=True), detect_error_retry_delay=250)
    _started(engine, clock, noise_frame)
    _tick_until(engine, lambda events: engine.next_delay_s > 0, max_ticks=9)

    assert engine.next_delay_s == pytest.approx(0.25)
    slept = []
    engine.sleep = slept.append
    engine.run(max_ticks=9)
    assert slept and all(s == pytest.approx(0.25) for s in slept)


def test_silent_liveness_session_succeeds(clock, noise_frame) -> None:
    engine = _engine(clock)
    _started(engine, clock, noise_frame)
    ticks = engine.run(max_ticks=300)

    events = engine.drain_events()
    finish = _of(events, DetectorFinishEvent)
    assert ticks < 300
    assert len(finish) == 1 and finish[0].success
    assert finish[0].silent_passed_count >= 3
    assert finish[0].action_passed_count == 0
    assert finish[0].best_frame is not None
    assert finish[0].best_quality_score > 0.5

    passes = [e for e in _of(events, DetectorInfoEvent) if e.code == DetectionCode.FACE_CHECK_PASS]
    assert all(e.passed for e in passes)
    assert engine.state == EngineState.READY
    assert not engine.buffers.allocated


def test_cold_screen_history_never_sets_realness(clock) -> None:
    for screen in (QuietScreen(ready=False), QuietScreen(available=False)):
        engine = _engine(clock, screen=screen)
        assert engine._check_features(4)
        assert not engine.session.realness


def test_static_face_rejected_as_not_live(clock, noise_frame) -> None:
    engine = _engine(clock)
    engine.motion = MotionLivenessDetector()          # real flow on a frozen frame
    engine.perception._offsets = [0.0] * 500
    _started(engine, clock, noise_frame)

    events = _tick_until(
        engine,
        lambda ev: any(e.code == DetectionCode.FACE_NOT_LIVE for e in _of(ev, DetectorInfoEvent)))
    codes = [e.code for e in _of(events, DetectorInfoEvent)]
    assert DetectionCode.FACE_NOT_LIVE in codes
    assert engine.session.period == DetectionPeriod.DETECT


# ─── Challenge-response ───────────────────────────────────────

def _action_engine(clock, gestures, **options):
    options.setdefault("action_liveness_action_count", 1)
    options.setdefault("action_liveness_action_list", ["blink"])
    return _engine(clock, FakePerception(gestures=gestures), **options)


def test_requested_action_completes_session(clock, noise_frame) -> None:
    engine = _action_engine(clock, ["facing center", "blink left eye"])
    _started(engine, clock, noise_frame)
    engine.run(max_ticks=300)

    events = engine.drain_events()
    actions = _of(events, DetectorActionEvent)
    assert [a.status for a in actions] == [LivenessActionStatus.STARTED,
                                           LivenessActionStatus.COMPLETED]
    assert actions[0].action == LivenessAction.BLINK
    finish = _of(events, DetectorFinishEvent)
    assert finish[0].success and finish[0].action_passed_count == 1


def test_action_timeout_returns_to_detect(clock, noise_frame) -> None:
    engine = _action_engine(clock, ["facing center"])
    _started(engine, clock, noise_frame)

    events = _tick_until(engine, lambda ev: _of(ev, DetectorActionEvent))
    assert engine.session.period == DetectionPeriod.VERIFY

    clock.advance(61.0)
    engine.tick()
    actions = _of(engine.drain_events(), DetectorActionEvent)
    assert actions[0].status == LivenessActionStatus.TIMEOUT
    assert engine.session.period == DetectionPeriod.DETECT
    assert engine.session.current_action is None
    assert engine.state == EngineState.DETECTING


def test_stale_timeout_token_is_ignored(clock, noise_frame) -> None:
    engine = _action_engine(clock, ["facing center"])
    _started(engine, clock, noise_frame)
    _tick_until(engine, lambda ev: _of(ev, DetectorActionEvent))

    engine.commands.put(("action_timeout", -1))
    engine.tick()
    assert not _of(engine.drain_events(), DetectorActionEvent)
    assert engine.session.period == DetectionPeriod.VERIFY


def test_mismatch_fails_when_configured(clock, noise_frame) -> None:
    engine = _action_engine(clock, ["facing center", "mouth 50% open"],
                            action_liveness_fail_on_mismatch=True)
    _started(engine, clock, noise_frame)
    engine.run(max_ticks=300)

    events = engine.drain_events()
    statuses = [a.status for a in _of(events, DetectorActionEvent)]
    assert LivenessActionStatus.MISMATCH in statuses
    assert not _of(events, DetectorFinishEvent)[0].success


def test_mismatch_tolerated_by_default(clock, noise_frame) -> None:
    engine = _action_engine(clock, ["facing center", "mouth 50% open"])
    _started(engine, clock, noise_frame)
    events = _tick_until(
        engine,
        lambda ev: any(a.status == LivenessActionStatus.MISMATCH for a in _of(ev, DetectorActionEvent)))

    assert not _of(events, DetectorFinishEvent)
    assert engine.state == EngineState.DETECTING
    engine.stop_detection()


def test_unknown_action_names_fail_session(clock, noise_frame) -> None:
    engine = _action_engine(clock, ["facing center"], action_liveness_action_list=["wink"])
    _started(engine, clock, noise_frame)
    engine.run(max_ticks=300)

    events = engine.drain_events()
    errors = _of(events, DetectorErrorEvent)
    assert errors[-1].code == ErrorCode.INTERNAL_ERROR
    assert not _of(events, DetectorFinishEvent)[0].success
    assert engine.state == EngineState.READY


# ─── Options / debug channel ──────────────────────────────────

def test_update_options_refused_while_detecting(clock, noise_frame) -> None:
    engine = _engine(clock)
    assert engine.update_options({"collect_face_frontal_features": {"yaw_threshold": 8}})
    assert engine.get_options()["collect_face_frontal_features"] == {
        "yaw_threshold": 8, "pitch_threshold": 4, "roll_threshold": 2,
    }

    _started(engine, clock, noise_frame)
    assert not engine.update_options({"detect_frame_delay": 300})
    assert engine.get_options()["detect_frame_delay"] == 100
    engine.stop_detection()


def test_debug_events_filtered_by_level_and_stage(clock) -> None:
    engine = _engine(clock, debug_mode=True, debug_log_level="warn",
                     debug_log_stages=["action"])
    engine._debug("info", "action", "hidden by level")
    engine._debug("warn", "perception", "hidden by stage")
    engine._debug("error", "action", "shown")

    debug = _of(engine.drain_events(), DetectorDebugEvent)
    assert [d.message for d in debug] == ["shown"]


def test_debug_info_events_throttled(clock) -> None:
    engine = _engine(clock, debug_mode=True)
    engine._debug("info", "screen_corners", "No screen detected")
    clock.advance(0.05)
    engine._debug("info", "screen_corners", "No screen detected")
    clock.advance(0.1)
    engine._debug("info", "screen_corners", "No screen detected")

    assert len(_of(engine.drain_events(), DetectorDebugEvent)) == 2


def test_debug_disabled_emits_nothing(clock) -> None:
    engine = _engine(clock)
    engine._debug("error", "perception", "boom")
    assert not engine.drain_events()


def test_status_snapshot(clock, noise_frame) -> None:
    engine = _engine(clock)
    _started(engine, clock, noise_frame)
    engine.run(max_ticks=3)

    status = engine.get_status()
    assert status["engine"]["current_state"] == "detecting"
    assert status["interval"] == 3
    assert status["buffers_allocated"]
    assert status["memory_mb"] > 0
    engine.stop_detection()


def test_partial_reset_twice_matches_once(clock, noise_frame) -> None:
    engine = _engine(clock)
    _started(engine, clock, noise_frame)
    engine.run(max_ticks=8)
    motion, screen, corners = engine.motion, engine.screen, engine.corners

    engine.partial_reset()
    once = engine.session.to_dict()
    engine.partial_reset()
    assert engine.session.to_dict() == once
    assert once["frame_index"] == 0 and once["collect_count"] == 0
    assert not once["liveness"] and not once["realness"]
    assert (engine.motion, engine.screen, engine.corners) == (motion, screen, corners)
    engine.stop_detection()
    assert not engine.buffers.allocated


# ─── Buffers / deferred reset ─────────────────────────────────

def test_detect_ticks_without_main_detection_skip_capture(clock, noise_frame) -> None:
    engine = _engine(clock)
    _started(engine, clock, noise_frame)
    captured = []
    capture = engine.buffers.capture

    def recording_capture(frame, timestamp, index):
        captured.append(index)
        return capture(frame, timestamp, index)

    engine.buffers.capture = recording_capture
    engine.tick()
    engine.tick()
    assert captured == []
    assert not engine.buffers.allocated

    engine.tick()
    assert captured == [3]
    assert engine.buffers.allocated
    engine.stop_detection()


def test_full_reset_inside_tick_is_deferred(clock, noise_frame) -> None:
    perception = ResettingPerception()
    engine = _engine(clock, perception)
    perception.engine = engine
    _started(engine, clock, noise_frame)

    engine.run(max_ticks=3)
    assert perception.seen == [(True, True)]
    assert not engine._full_reset_pending
    assert not engine.buffers.allocated
    assert engine.session.frame_index == 0
    assert engine.state == EngineState.DETECTING
    engine.stop_detection()


# ─── Attack rejection ─────────────────────────────────────────

def _tick_until_code(engine, code, max_ticks=30):
    """Tick one by one; returns (events of the matching tick, perception calls during it)."""
    for _ in range(max_ticks):
        calls = engine.perception.calls
        engine.tick()
        events = engine.drain_events()
        if any(e.code == code for e in _of(events, DetectorInfoEvent)):
            return events, engine.perception.calls - calls
    raise AssertionError(f"{code} never emitted")


def test_corner_hit_rejects_and_skips_main_detection(clock, noise_frame) -> None:
    engine = _engine(clock, corners=LoudCorners())
    _started(engine, clock, noise_frame)

    events, perception_calls = _tick_until_code(engine, DetectionCode.FACE_NOT_REAL)
    assert [e.code for e in _of(events, DetectorInfoEvent)] == [DetectionCode.FACE_NOT_REAL]
    assert _of(events, DetectorInfoEvent)[0].metrics["method"] == "screen_corners"
    assert perception_calls == 0
    session = engine.session.to_dict()
    assert session["period"] == "detect"
    assert session["collect_count"] == 0 and session["frame_index"] == 0
    assert not session["liveness"]


def test_ensemble_hit_rejects_and_skips_main_detection(clock, noise_frame) -> None:
    screen = LoudScreen()
    engine = _engine(clock, screen=screen)
    _started(engine, clock, noise_frame)

    events, perception_calls = _tick_until_code(engine, DetectionCode.FACE_NOT_REAL)
    info = _of(events, DetectorInfoEvent)
    assert [e.code for e in info] == [DetectionCode.FACE_NOT_REAL]
    assert info[0].metrics["risk"] == "high"
    assert perception_calls == 0
    assert screen.calls == 1
    assert engine.session.period == DetectionPeriod.DETECT
    assert engine.session.collect_count == 0
    assert not engine.session.realness


# ─── Remaining gates ──────────────────────────────────────────

def test_large_face_skipped_without_reset(clock, noise_frame) -> None:
    engine = _engine(clock, FakePerception(box=(0.0, 0.0, 160.0, 120.0)))
    _started(engine, clock, noise_frame)
    events = _tick_until(engine, lambda ev: _of(ev, DetectorInfoEvent), max_ticks=10)

    assert _of(events, DetectorInfoEvent)[0].code == DetectionCode.FACE_TOO_LARGE
    assert engine.session.frame_index == 3
    assert engine.session.last_detection_frame_index == 3


def test_blurry_face_skipped_without_reset(clock) -> None:
    flat = np.full((120, 160, 3), 128, dtype=np.uint8)
    engine = _engine(clock)
    _started(engine, clock, flat)
    events = _tick_until(engine, lambda ev: _of(ev, DetectorInfoEvent), max_ticks=10)

    info = _of(events, DetectorInfoEvent)[0]
    assert info.code == DetectionCode.FACE_LOW_QUALITY
    assert info.metrics["quality"] < 0.5
    assert engine.session.frame_index == 3
    assert engine.session.period == DetectionPeriod.DETECT
