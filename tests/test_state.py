import numpy as np

from liveguard_state import ALLOWED_TRANSITIONS, CaptureSession, EngineStateMachine
from liveguard_types import (
    ActionChallenge,
    DetectionPeriod,
    EngineState,
    LivenessAction,
)


# ─── Engine lifecycle ─────────────────────────────────────────

def test_happy_lifecycle() -> None:
    sm = EngineStateMachine()
    assert sm.transition(EngineState.INITIALIZING)
    assert sm.transition(EngineState.READY)
    assert sm.transition(EngineState.DETECTING)
    assert sm.transition(EngineState.READY)
    assert sm.state == EngineState.READY
    assert sm.get_summary()["total_transitions"] == 4


def test_illegal_transitions_are_rejected() -> None:
    sm = EngineStateMachine()
    assert not sm.transition(EngineState.READY)
    assert not sm.transition(EngineState.DETECTING)
    assert sm.state == EngineState.IDLE

    sm.transition(EngineState.INITIALIZING)
    assert not sm.transition(EngineState.DETECTING)
    assert sm.state == EngineState.INITIALIZING
    assert sm.get_summary()["rejected_transitions"] == 3


def test_same_state_and_idle_are_always_allowed() -> None:
    sm = EngineStateMachine()
    for target in (EngineState.INITIALIZING, EngineState.READY, EngineState.DETECTING):
        sm.transition(target)
    assert sm.transition(EngineState.DETECTING)
    assert sm.can_transition(EngineState.IDLE)
    assert sm.transition(EngineState.IDLE)
    assert sm.state == EngineState.IDLE


# ─── Capture session ──────────────────────────────────────────

def test_periods_only_move_forward() -> None:
    session = CaptureSession()
    assert not session.advance_period(DetectionPeriod.VERIFY)
    assert session.advance_period(DetectionPeriod.COLLECT)
    assert session.advance_period(DetectionPeriod.VERIFY)
    assert not session.advance_period(DetectionPeriod.DETECT)
    assert session.period == DetectionPeriod.VERIFY


def test_best_frame_ties_keep_first() -> None:
    session = CaptureSession()
    first = np.zeros((4, 4, 3), dtype=np.uint8)
    second = np.ones((4, 4, 3), dtype=np.uint8)

    assert session.offer_best_frame(0.8, first)
    assert not session.offer_best_frame(0.8, second)
    assert session.best_frame.sum() == 0
    assert session.offer_best_frame(0.81, second, second[:2, :2])
    assert session.best_quality_score == 0.81
    assert session.best_face_crop.shape == (2, 2, 3)


def test_best_frame_is_copied() -> None:
    session = CaptureSession()
    frame = np.zeros((4, 4, 3), dtype=np.uint8)
    session.offer_best_frame(0.5, frame)
    frame[:] = 255
    assert session.best_frame.sum() == 0


def test_ready_to_verify_requires_every_flag() -> None:
    session = CaptureSession()
    session.advance_period(DetectionPeriod.COLLECT)
    session.collect_count = 3
    session.liveness = True
    assert not session.is_ready_to_verify(3)
    session.realness = True
    assert session.is_ready_to_verify(3)
    assert not session.is_ready_to_verify(4)


def test_complete_current_action() -> None:
    session = CaptureSession()
    assert session.complete_current_action() is None
    session.current_action = ActionChallenge(LivenessAction.NOD, deadline=12.5, token=1)
    assert session.action_deadline == 12.5
    assert session.complete_current_action() == LivenessAction.NOD
    assert session.completed_actions == {LivenessAction.NOD}
    assert session.action_deadline is None


def test_reset_is_idempotent() -> None:
    session = CaptureSession()
    session.begin(5.0)
    session.advance_period(DetectionPeriod.COLLECT)
    session.collect_count = 2
    session.liveness = session.realness = True
    session.offer_best_frame(0.9, np.zeros((2, 2, 3), dtype=np.uint8))

    session.reset()
    once = session.to_dict()
    session.reset()
    assert session.to_dict() == once
    assert once["period"] == "detect"
    assert once["collect_count"] == 0
    assert not once["has_best_frame"]
    assert session.start_time == 5.0


def test_every_pair_outside_the_table_is_rejected() -> None:
    for start in EngineState:
        for target in EngineState:
            sm = EngineStateMachine(initial=start)
            allowed = (target == start or target == EngineState.IDLE
                       or target in ALLOWED_TRANSITIONS[start])
            assert sm.transition(target) == allowed
            assert sm.state == (target if allowed else start)
