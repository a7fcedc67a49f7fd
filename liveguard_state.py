"""
LiveGuard - Capture State
=========================
Engine lifecycle state machine and the per-session capture record.

EngineStateMachine:
    IDLE -> INITIALIZING -> READY -> DETECTING, with recovery to IDLE from
    any state. Illegal requests are rejected and logged; the state never
    changes silently.

CaptureSession:
    Mutable record of one capture attempt (period, counters, sticky
    liveness/realness flags, best frame, challenge progress). Only the
    engine mutates it, and only through the methods below.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Optional, Set

import numpy as np

from liveguard_types import (
    ActionChallenge,
    DetectionPeriod,
    EngineState,
    LivenessAction,
)
from liveguard_utils_core import setup_logger

_log = setup_logger('GuardState')


# ===================================================================
# ENGINE STATE MACHINE
# ===================================================================

ALLOWED_TRANSITIONS = {
    EngineState.IDLE: {EngineState.INITIALIZING},
    EngineState.INITIALIZING: {EngineState.READY, EngineState.IDLE},
    EngineState.READY: {EngineState.DETECTING, EngineState.INITIALIZING},
    EngineState.DETECTING: {EngineState.READY, EngineState.IDLE},
}


class EngineStateMachine:
    """Explicit transition table for the engine lifecycle."""

    def __init__(self, initial: EngineState = EngineState.IDLE):
        self.state = initial
        self._state_entry_time = time.monotonic()
        self._total_transitions = 0
        self._rejected_transitions = 0
        self._history: deque = deque(maxlen=50)

    def can_transition(self, target: EngineState) -> bool:
        if target == self.state or target == EngineState.IDLE:
            return True
        return target in ALLOWED_TRANSITIONS.get(self.state, set())

    def transition(self, target: EngineState) -> bool:
        """Move to `target` if the table allows it.

        Returns:
            True when the machine is in `target` afterwards.
        """
        target = EngineState(target)
        if target == self.state:
            return True
        if not self.can_transition(target):
            self._rejected_transitions += 1
            _log.warning("Illegal state transition %s -> %s rejected",
                         self.state.value, target.value)
            return False

        self._history.append((time.monotonic(), self.state, target))
        self.state = target
        self._total_transitions += 1
        self._state_entry_time = time.monotonic()
        return True

    def get_state_duration_ms(self) -> float:
        return (time.monotonic() - self._state_entry_time) * 1000.0

    def get_summary(self) -> dict:
        return {
            "current_state": self.state.value,
            "state_duration_ms": round(self.get_state_duration_ms(), 1),
            "total_transitions": self._total_transitions,
            "rejected_transitions": self._rejected_transitions,
            "history_length": len(self._history),
        }


# ===================================================================
# CAPTURE SESSION
# ===================================================================

PERIOD_ORDER = (DetectionPeriod.DETECT, DetectionPeriod.COLLECT, DetectionPeriod.VERIFY)


class CaptureSession:
    """State of one capture attempt."""

    def __init__(self):
        self.start_time = 0.0
        self.reset()

    def reset(self):
        """Clear every counter and flag. Returns the period to DETECT."""
        self.period = DetectionPeriod.DETECT
        self.frame_index = 0
        self.collect_count = 0
        self.best_quality_score = 0.0
        self.best_frame: Optional[np.ndarray] = None
        self.best_face_crop: Optional[np.ndarray] = None
        self.completed_actions: Set[LivenessAction] = set()
        self.current_action: Optional[ActionChallenge] = None
        self.liveness = False
        self.realness = False
        self.last_detection_frame_index = 0
        self.last_feature_frame_index = -1
        self.last_corner_frame_index = -1

    def begin(self, start_time: float):
        self.reset()
        self.start_time = start_time

    @property
    def action_deadline(self) -> Optional[float]:
        return self.current_action.deadline if self.current_action else None

    def advance_period(self, target: DetectionPeriod) -> bool:
        """Periods only move forward. Going back is a reset, not a transition."""
        if target == self.period:
            return True
        if PERIOD_ORDER.index(target) != PERIOD_ORDER.index(self.period) + 1:
            _log.warning("Illegal period change %s -> %s rejected",
                         self.period.value, target.value)
            return False
        self.period = target
        return True

    def offer_best_frame(self, score: float, frame: np.ndarray,
                         face_crop: Optional[np.ndarray] = None) -> bool:
        """Keep the frame if it beats the current best. Ties keep the old one."""
        if score <= self.best_quality_score:
            return False
        self.best_quality_score = score
        self.best_frame = frame.copy()
        self.best_face_crop = face_crop.copy() if face_crop is not None else None
        return True

    def is_ready_to_verify(self, min_collect_count: int) -> bool:
        return (self.period == DetectionPeriod.COLLECT
                and self.liveness
                and self.realness
                and self.collect_count >= min_collect_count)

    def complete_current_action(self) -> Optional[LivenessAction]:
        if self.current_action is None:
            return None
        action = self.current_action.action
        self.completed_actions.add(action)
        self.current_action = None
        return action

    def to_dict(self) -> dict:
        return {
            "period": self.period.value,
            "frame_index": self.frame_index,
            "collect_count": self.collect_count,
            "best_quality_score": round(self.best_quality_score, 4),
            "has_best_frame": self.best_frame is not None,
            "completed_actions": sorted(a.value for a in self.completed_actions),
            "current_action": self.current_action.action.value if self.current_action else None,
            "liveness": self.liveness,
            "realness": self.realness,
        }
