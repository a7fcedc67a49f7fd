import numpy as np
import pytest

from liveguard_perception import PerceptionProvider
from liveguard_types import LandmarkSnapshot


FRAME_W, FRAME_H = 160, 120
FACE_BOX = (20.0, 10.0, 120.0, 90.0)     # ratio 0.5625 of a 160x120 frame


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSource:
    """cv2.VideoCapture stand-in. Every read advances the clock by one frame."""

    def __init__(self, frame: np.ndarray, clock: FakeClock = None, fps: float = 30.0,
                 opened: bool = True, fail_reads: bool = False):
        self.frame = frame
        self.clock = clock
        self.fps = fps
        self.opened = opened
        self.fail_reads = fail_reads
        self.reads = 0
        self.released = False

    def isOpened(self) -> bool:
        return self.opened

    def read(self):
        self.reads += 1
        if self.clock is not None:
            self.clock.advance(1.0 / self.fps)
        if self.fail_reads:
            return False, None
        return True, self.frame.copy()

    def release(self) -> None:
        self.released = True


def make_mesh(seed: int = 0, points: int = 478) -> np.ndarray:
    rng = np.random.default_rng(seed)
    xs = rng.uniform(FACE_BOX[0] + 10, FACE_BOX[0] + FACE_BOX[2] - 10, points)
    ys = rng.uniform(FACE_BOX[1] + 10, FACE_BOX[1] + FACE_BOX[3] - 10, points)
    return np.stack([xs, ys], axis=1)


def translation_offsets(count: int, first_step: float = 0.2, increment: float = 0.15):
    """Cumulative x offsets whose per-frame step grows linearly."""
    offsets, total, step = [], 0.0, first_step
    for _ in range(count):
        offsets.append(total)
        total += step
        step += increment
    return offsets


class FakePerception(PerceptionProvider):
    """Returns one face whose mesh translates a little more every call."""

    def __init__(self, faces: int = 1, gestures=None, head_pose=(0.0, 0.0, 0.0),
                 box=FACE_BOX, fail: bool = False):
        self.faces = faces
        self.gestures = list(gestures) if gestures is not None else ["facing center"]
        self.head_pose = head_pose
        self.box = box
        self.fail = fail
        self.calls = 0
        self.opened = False
        self.closed = False
        self._base = make_mesh()
        self._offsets = translation_offsets(500)

    def open(self):
        self.opened = True

    def close(self):
        self.closed = True

    def detect(self, frame_bgr):
        if self.fail:
            raise RuntimeError("model crashed")
        offset = self._offsets[min(self.calls, len(self._offsets) - 1)]
        self.calls += 1
        mesh = self._base + np.array([offset, 0.0])
        return [
            LandmarkSnapshot(box=self.box, mesh=mesh, gestures=list(self.gestures),
                             head_pose=self.head_pose)
            for _ in range(self.faces)
        ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def noise_frame() -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, (FRAME_H, FRAME_W, 3), dtype=np.uint8)


@pytest.fixture
def gray_frame() -> np.ndarray:
    return np.full((480, 640), 128, dtype=np.uint8)
