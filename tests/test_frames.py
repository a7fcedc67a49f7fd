import numpy as np
import pytest

from liveguard_frames import FrameBufferManager, VideoFrameCollector


def _bgr(width: int, height: int, value: int = 50) -> np.ndarray:
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, :, 2] = value
    return frame


# ─── FrameBufferManager ───────────────────────────────────────

def test_capture_reuses_buffers_for_same_resolution() -> None:
    manager = FrameBufferManager()
    first = manager.capture(_bgr(64, 48), 0.0, 1)
    second = manager.capture(_bgr(64, 48, 200), 0.033, 2)

    assert manager.allocation_count == 1
    assert first.gray is second.gray
    assert first.color is second.color
    assert (second.width, second.height) == (64, 48)
    assert second.frame_index == 2


def test_capture_converts_to_gray() -> None:
    manager = FrameBufferManager()
    sample = manager.capture(_bgr(8, 8, 200), 0.0, 1)
    # pure red 200 -> 0.299 * 200
    assert sample.gray.shape == (8, 8)
    assert int(sample.gray[0, 0]) == pytest.approx(60, abs=1)


def test_resolution_change_releases_then_reallocates() -> None:
    manager = FrameBufferManager()
    manager.capture(_bgr(64, 48), 0.0, 1)
    sample = manager.capture(_bgr(32, 24), 0.1, 2)

    assert manager.release_count == 1
    assert manager.allocation_count == 2
    assert sample.gray.shape == (24, 32)
    assert manager.size == (32, 24)


def test_release_all_drops_buffers() -> None:
    manager = FrameBufferManager()
    manager.capture(_bgr(16, 16), 0.0, 1)
    manager.release_all()
    assert not manager.allocated
    assert manager.current_color is None


def test_capture_rejects_empty_frame() -> None:
    with pytest.raises(ValueError):
        FrameBufferManager().capture(np.zeros((0, 0, 3), dtype=np.uint8), 0.0, 1)


# ─── VideoFrameCollector ──────────────────────────────────────

def test_collector_is_bounded_and_copies() -> None:
    collector = VideoFrameCollector(buffer_size=3)
    frame = np.zeros((4, 4), dtype=np.uint8)
    for i in range(5):
        frame[:] = i
        collector.add_frame(frame, None, timestamp=i / 30.0)

    grays = collector.get_gray_frames()
    assert len(grays) == 3
    assert [int(g[0, 0]) for g in grays] == [2, 3, 4]
    assert collector.get_bgr_frames() == []
    assert collector.total_frames_added == 5


def test_collector_last_n_and_frame_size() -> None:
    collector = VideoFrameCollector(buffer_size=10)
    for i in range(4):
        collector.add_frame(np.zeros((6, 8), dtype=np.uint8), _bgr(8, 6), timestamp=float(i))

    assert collector.get_frame_size() == (8, 6)
    assert len(collector.get_bgr_frames(2)) == 2
    assert [t for _, _, t in collector.get_last_n_frames(2)] == [2.0, 3.0]


def test_fps_simple_mean_below_five_samples() -> None:
    collector = VideoFrameCollector()
    for ts in (0.0, 0.1, 0.15):      # 10 fps, then 20 fps
        collector.add_frame(np.zeros((2, 2), dtype=np.uint8), timestamp=ts)
    assert collector.get_average_fps() == pytest.approx(15.0)


def test_fps_weighted_toward_recent_samples() -> None:
    collector = VideoFrameCollector()
    ts = 0.0
    collector.add_frame(np.zeros((2, 2), dtype=np.uint8), timestamp=ts)
    for delta in (0.1, 0.1, 0.1, 0.1, 0.05):   # four 10 fps deltas, then one 20 fps
        ts += delta
        collector.add_frame(np.zeros((2, 2), dtype=np.uint8), timestamp=ts)

    # weights 0.2 .. 1.0, recent 20 fps sample carries the largest weight
    expected = (10 * (0.2 + 0.4 + 0.6 + 0.8) + 20 * 1.0) / 3.0
    assert collector.get_average_fps() == pytest.approx(expected)
    assert collector.get_average_fps() > 12.0


def test_clear_frames_keeps_fps_reset_drops_it() -> None:
    collector = VideoFrameCollector()
    for ts in (0.0, 0.1, 0.2):
        collector.add_frame(np.zeros((2, 2), dtype=np.uint8), timestamp=ts)

    collector.clear_frames()
    assert collector.get_buffer_fill() == 0
    assert collector.get_average_fps() == pytest.approx(10.0)

    collector.reset()
    assert collector.get_average_fps() == 0.0
    assert collector.get_stats()["total_frames_added"] == 0


def test_idle_gap_after_clear_is_not_an_fps_sample() -> None:
    collector = VideoFrameCollector()
    for ts in (0.0, 1 / 30.0):
        collector.add_frame(np.zeros((2, 2), dtype=np.uint8), timestamp=ts)

    collector.clear_frames()
    collector.add_frame(np.zeros((2, 2), dtype=np.uint8), timestamp=2.0)
    assert collector.get_average_fps() == pytest.approx(30.0)

    collector.add_frame(np.zeros((2, 2), dtype=np.uint8), timestamp=2.0 + 1 / 30.0)
    assert collector.get_average_fps() == pytest.approx(30.0)
