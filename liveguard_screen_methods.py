"""
LiveGuard - Screen Attack Methods
=================================
Individual presentation-attack signals fused by ScreenCaptureDetector.

  1. Moire / periodicity: DCT peak analysis of a morphological-gradient
     image plus Canny edge periodicity and edge-direction consistency.
  2. RGB sub-pixel emission: per-channel DCT band energy, channel-mean
     asymmetry and the largest channel-mean difference.
  3. DLP color wheel: per-channel derivative peaks across high-contrast
     edges; R leading and B lagging G means a color-wheel projector.
  4. Pixel grid: Laplacian high-frequency energy and Laplacian spread.
  5. Flicker: per-pixel temporal autocorrelation at short lags.
  6. Response time: duration of the sharpest per-pixel transition (e-ink).
  7. Optical distortion: keystone, boundary bending, red/blue shift and
     vignetting of projected images.

Every function returns an AttackVerdict. Confidence is the attack
likelihood in [0, 1]; `available=False` means the method had no data.
"""

from __future__ import annotations

import math
from typing import List, Optional

import cv2
import numpy as np

from liveguard_types import AttackVerdict
from liveguard_utils_core import setup_logger

_log = setup_logger('GuardMethods')


def _even_crop(image: np.ndarray) -> np.ndarray:
    # cv2.dct only accepts even-sized arrays
    rows, cols = image.shape[:2]
    return image[:rows - rows % 2, :cols - cols % 2]


# ===================================================================
# METHOD 1: MOIRE PATTERN
# ===================================================================

MOIRE_DEFAULTS = {
    "threshold": 0.50,
    "enable_dct": True,
    "enable_edge_detection": True,
}

MOIRE_WORKING_SIZE = 256
MOIRE_AC_LIMIT = 64


def _hamming_window(length: int) -> np.ndarray:
    if length < 2:
        return np.ones(length, dtype=np.float32)
    n = np.arange(length, dtype=np.float32)
    return (0.54 - 0.46 * np.cos(2 * np.pi * n / (length - 1))).astype(np.float32)


def _moire_dct_strength(gray: np.ndarray):
    """DCT periodicity/directionality of the high-pass image.

    Returns:
        (strength, dominant_frequencies)
    """
    work = gray
    if gray.shape[0] > MOIRE_WORKING_SIZE or gray.shape[1] > MOIRE_WORKING_SIZE:
        work = cv2.resize(gray, (MOIRE_WORKING_SIZE, MOIRE_WORKING_SIZE))

    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (5, 5))
    filtered = cv2.morphologyEx(work, cv2.MORPH_GRADIENT, kernel)
    filtered = _even_crop(filtered).astype(np.float32)
    if filtered.shape[0] < 4 or filtered.shape[1] < 4:
        return 0.0, []

    rows, cols = filtered.shape
    windowed = filtered * np.outer(_hamming_window(rows), _hamming_window(cols))
    coefficients = np.abs(cv2.dct(windowed))

    region = coefficients[1:min(rows, MOIRE_AC_LIMIT), 1:min(cols, MOIRE_AC_LIMIT)]
    avg_energy = float(region.mean()) if region.size else 0.0
    if avg_energy <= 0:
        return 0.0, []

    ys, xs = np.nonzero(region > avg_energy * 2)
    radii = np.hypot(xs + 1, ys + 1)
    peak_count = len(radii)

    periodicity = min(peak_count / 20.0, 1.0) if peak_count > 3 else 0.0
    directionality = 0.0
    if peak_count >= 2:
        mean_radius = float(radii.mean())
        directionality = max(0.0, 1.0 - float(radii.std()) / mean_radius)

    dominant = [round(float(r), 2) for r in radii[:3]]
    return periodicity * 0.6 + directionality * 0.4, dominant


def _line_periodicity(line: np.ndarray) -> float:
    """Best shift self-similarity of one binary edge line.

    Mismatches are normalized by the edge pixels involved, so empty or
    sparse lines do not look periodic.
    """
    edges = line > 0
    length = len(edges)
    if length < 10 or np.count_nonzero(edges) < 2:
        return 0.0

    best = 0.0
    max_period = min(length / 4.0, 100)
    for period in range(5, int(math.ceil(max_period)), 2):
        if period >= max_period:
            break
        a, b = edges[:-period], edges[period:]
        active = np.count_nonzero(a | b)
        if active == 0:
            continue
        corr = 1.0 - np.count_nonzero(a != b) / active
        best = max(best, corr)
    return best


def _edge_periodicity(edges: np.ndarray) -> float:
    rows = edges[:min(edges.shape[0], 100), :]
    cols = edges[:, :min(edges.shape[1], 100)].T
    horizontal = float(np.mean([_line_periodicity(r) for r in rows])) if len(rows) else 0.0
    vertical = float(np.mean([_line_periodicity(c) for c in cols])) if len(cols) else 0.0
    return max(horizontal, vertical)


def _edge_direction_consistency(edges: np.ndarray) -> float:
    """1 - normalized spread of gradient angles on sampled edge pixels."""
    sobel_x = cv2.Sobel(edges, cv2.CV_32F, 1, 0, ksize=3)
    sobel_y = cv2.Sobel(edges, cv2.CV_32F, 0, 1, ksize=3)

    flat = edges.reshape(-1)[:10000:100]
    idx = np.nonzero(flat > 50)[0] * 100
    if len(idx) < 20:
        return 0.0

    angles = np.arctan2(sobel_y.reshape(-1)[idx], sobel_x.reshape(-1)[idx])
    return 1.0 - min(float(angles.std()) / math.pi, 1.0)


def detect_moire_pattern(gray: Optional[np.ndarray], config: Optional[dict] = None) -> AttackVerdict:
    """Moire / periodic interference from recapturing a pixel display."""
    cfg = {**MOIRE_DEFAULTS, **(config or {})}
    if gray is None or gray.size == 0:
        return AttackVerdict.unavailable("moire", "no frame")

    strength = 0.0
    dominant: List[float] = []
    periodicity = direction = 0.0

    if cfg["enable_dct"]:
        dct_strength, dominant = _moire_dct_strength(gray)
        strength += dct_strength * 0.6

    if cfg["enable_edge_detection"]:
        edges = cv2.Canny(gray, 50, 150)
        periodicity = _edge_periodicity(edges)
        direction = _edge_direction_consistency(edges)
        strength += (periodicity + direction) * 0.5 * 0.4

    return AttackVerdict(
        method="moire",
        is_attack=strength > cfg["threshold"],
        confidence=min(1.0, max(0.0, strength)),
        details={
            "moire_strength": strength,
            "dominant_frequencies": dominant,
            "edge_periodicity": periodicity,
            "direction_consistency": direction,
        },
    )


# ===================================================================
# METHOD 2: RGB SUB-PIXEL EMISSION
# ===================================================================

RGB_DEFAULTS = {
    "low_freq_start_percent": 0.12,
    "low_freq_end_percent": 0.40,
    "energy_ratio_normalization_factor": 8,
    "channel_difference_normalization_factor": 40,
    "energy_score_weight": 0.45,
    "asymmetry_score_weight": 0.35,
    "difference_factor_weight": 0.20,
    "confidence_threshold": 0.40,
}


def _channel_band_energy(channel: np.ndarray, cfg: dict) -> float:
    data = _even_crop(channel).astype(np.float32)
    if data.shape[0] < 4 or data.shape[1] < 2:
        return 0.0

    spectrum = np.abs(cv2.dct(data)).mean(axis=1)
    start = int(math.floor(len(spectrum) * cfg["low_freq_start_percent"]))
    end = int(math.floor(len(spectrum) * cfg["low_freq_end_percent"]))
    if end <= start:
        return 0.0

    peak = float(spectrum[start:end].max())
    ratio = peak / (float(spectrum.mean()) + 1e-6)
    return min(1.0, ratio / cfg["energy_ratio_normalization_factor"])


def detect_rgb_emission_pattern(bgr: Optional[np.ndarray], config: Optional[dict] = None) -> AttackVerdict:
    """Independent R/G/B emission of a display vs. near-uniform skin reflectance."""
    cfg = {**RGB_DEFAULTS, **(config or {})}
    if bgr is None or bgr.ndim != 3 or bgr.shape[2] < 3:
        return AttackVerdict.unavailable("rgb_emission", "no color frame")

    b, g, r = cv2.split(bgr[:, :, :3])
    energies = [_channel_band_energy(c, cfg) for c in (b, g, r)]
    avg_energy = sum(energies) / 3.0

    means = np.array([float(c.mean()) for c in (b, g, r)])
    asymmetry = min(1.0, float(means.std()) / (float(means.mean()) + 1.0))
    max_difference = float(means.max() - means.min())

    score = (min(1.0, avg_energy) * cfg["energy_score_weight"]
             + asymmetry * cfg["asymmetry_score_weight"]
             + min(1.0, max_difference / cfg["channel_difference_normalization_factor"])
             * cfg["difference_factor_weight"])
    score = min(1.0, max(0.0, score))

    return AttackVerdict(
        method="rgb_emission",
        is_attack=score > cfg["confidence_threshold"],
        confidence=score,
        details={
            "channel_energy": {"b": energies[0], "g": energies[1], "r": energies[2]},
            "channel_means": {"b": means[0], "g": means[1], "r": means[2]},
            "asymmetry": asymmetry,
            "max_channel_difference": max_difference,
        },
    )


# ===================================================================
# METHOD 3: DLP COLOR WHEEL
# ===================================================================

DLP_DEFAULTS = {
    "buffer_size": 20,
    "edge_threshold": 80,
    "min_channel_separation_pixels": 3,
    "separation_confidence_threshold": 0.65,
    "sampling_stride": 2,
}

DLP_MIN_FRAMES = 3
DLP_EDGE_WINDOW = 10
DLP_MAX_EDGES = 400


class DLPColorWheelDetector:
    """Color-wheel rainbow artifact of single-chip DLP projectors.

    Reads BGR frames from the shared VideoFrameCollector; keeps no pixel
    history of its own.
    """

    def __init__(self, collector, config: Optional[dict] = None):
        self.collector = collector
        self.config = {**DLP_DEFAULTS, **(config or {})}

    def get_buffered_frame_count(self) -> int:
        return len(self.collector.get_bgr_frames(self.config["buffer_size"]))

    def _high_contrast_edges(self, bgr: np.ndarray) -> List[tuple]:
        stride = max(1, int(self.config["sampling_stride"]))
        rows, cols = bgr.shape[:2]
        if rows <= 2 * stride or cols <= 2 * stride:
            return []

        gray = np.rint(0.299 * bgr[:, :, 2] + 0.587 * bgr[:, :, 1]
                       + 0.114 * bgr[:, :, 0])
        ys = np.arange(stride, rows - stride, stride)
        xs = np.arange(stride, cols - stride, stride)
        center = gray[np.ix_(ys, xs)]
        left = gray[np.ix_(ys, xs - stride)]
        right = gray[np.ix_(ys, xs + stride)]

        threshold = self.config["edge_threshold"]
        mask = (np.abs(center - left) > threshold) | (np.abs(center - right) > threshold)
        yi, xi = np.nonzero(mask)
        return list(zip(xs[xi].tolist(), ys[yi].tolist()))[:DLP_MAX_EDGES]

    @staticmethod
    def _channel_offsets(bgr: np.ndarray, x: int, y: int):
        """(red_lead, blue_lag) of derivative peaks around one edge, relative to G."""
        cols = bgr.shape[1]
        start = max(0, x - DLP_EDGE_WINDOW)
        end = min(cols, x + DLP_EDGE_WINDOW)
        segment = bgr[y, start:end].astype(np.int32)
        if len(segment) < 2:
            return 0, 0
        derivative = np.abs(np.diff(segment, axis=0))
        b_peak, g_peak, r_peak = (int(np.argmax(derivative[:, c])) for c in range(3))
        return r_peak - g_peak, b_peak - g_peak

    def analyze(self) -> AttackVerdict:
        frames = self.collector.get_bgr_frames(self.config["buffer_size"])
        if len(frames) < DLP_MIN_FRAMES:
            return AttackVerdict.unavailable(
                "dlp_color_wheel", f"insufficient frames: {len(frames)} < {DLP_MIN_FRAMES}")

        reference = frames[0]
        edges = self._high_contrast_edges(reference)
        if not edges:
            return AttackVerdict.unavailable("dlp_color_wheel", "no high-contrast edges")

        separations, red_leads, blue_lags = [], [], []
        for x, y in edges:
            red_lead, blue_lag = self._channel_offsets(reference, x, y)
            distance = abs(red_lead - blue_lag)
            if distance > 0:
                separations.append(distance)
                red_leads.append(red_lead)
                blue_lags.append(blue_lag)

        if not separations:
            return AttackVerdict(
                method="dlp_color_wheel",
                details={"sampled_edges": len(edges), "has_color_separation": False},
            )

        avg_separation = float(np.mean(separations))
        avg_red_lead = float(np.mean(red_leads))
        avg_blue_lag = float(np.mean(blue_lags))

        has_separation = avg_separation >= self.config["min_channel_separation_pixels"]
        typical_pattern = avg_red_lead > 1 and avg_blue_lag < -1

        confidence = 0.0
        if typical_pattern:
            confidence = min(1.0, (abs(avg_red_lead) + abs(avg_blue_lag)) / 5.0)
        elif has_separation:
            confidence = min(1.0, avg_separation / 10.0 * 0.5)

        return AttackVerdict(
            method="dlp_color_wheel",
            is_attack=confidence > self.config["separation_confidence_threshold"],
            confidence=confidence,
            details={
                "sampled_edges": len(edges),
                "has_color_separation": has_separation,
                "typical_dlp_pattern": typical_pattern,
                "color_separation_pixels": avg_separation,
                "red_lead_pixels": avg_red_lead,
                "blue_lag_pixels": avg_blue_lag,
            },
        )


# ===================================================================
# METHOD 4: PIXEL GRID
# ===================================================================

PIXEL_GRID_DEFAULTS = {
    "high_freq_threshold": 0.15,
    "grid_strength_threshold": 0.6,
}


def detect_pixel_grid(gray: Optional[np.ndarray], config: Optional[dict] = None) -> AttackVerdict:
    """Regular sub-pixel lattice of LCD/OLED panels."""
    cfg = {**PIXEL_GRID_DEFAULTS, **(config or {})}
    if gray is None or gray.size == 0:
        return AttackVerdict.unavailable("pixel_grid", "no frame")

    laplacian = cv2.Laplacian(gray, cv2.CV_32F)
    rows, cols = gray.shape[:2]
    high_freq = float(np.abs(laplacian).sum()) / (rows * cols * 255.0)
    strength = min(float(laplacian.std()) / 50.0, 1.0)

    is_attack = (high_freq > cfg["high_freq_threshold"]
                 and strength > cfg["grid_strength_threshold"])
    return AttackVerdict(
        method="pixel_grid",
        is_attack=is_attack,
        confidence=min(1.0, (min(high_freq, 1.0) + strength) / 2.0),
        details={
            "high_frequency_energy": high_freq,
            "grid_strength": strength,
            "grid_period": 1.0,
        },
    )


# ===================================================================
# METHOD 5: SCREEN FLICKER (LCD / OLED)
# ===================================================================

FLICKER_DEFAULTS = {
    "buffer_size": 15,
    "min_period": 1,
    "max_period": 3,
    "correlation_threshold": 0.65,
    "passing_pixel_ratio": 0.40,
    "sampling_stride": 1,
}

# (max pixel count, sampling stride, passing pixel ratio)
FLICKER_RESOLUTION_BANDS = (
    (100_000, 1, 0.35),
    (300_000, 2, 0.38),
    (900_000, 2, 0.40),
)
FLICKER_HIGH_RES = (3, 0.42)


class ScreenFlickerDetector:
    """Periodic brightness changes beating between refresh rate and camera FPS.

    A displayed face inherits the panel refresh (60-144 Hz), which aliases
    into a short per-pixel period in the captured frames. Real skin under
    normal light has no such period. Autocorrelation runs on frame-to-frame
    differences, so slow exposure drifts do not read as periodic.
    """

    def __init__(self, collector, config: Optional[dict] = None):
        self.collector = collector
        self.config = {**FLICKER_DEFAULTS, **(config or {})}

    @property
    def min_frames(self) -> int:
        return int(self.config["max_period"]) + 2

    def get_buffered_frame_count(self) -> int:
        return len(self.collector.get_gray_frames(self.config["buffer_size"]))

    def effective_max_period(self) -> int:
        """Longest period worth testing at the measured FPS."""
        limit = int(self.config["max_period"])
        fps = self.collector.get_average_fps()
        if fps < 10:
            return limit
        if fps >= 50:
            return min(3, limit)
        if fps >= 30:
            return min(4, limit)
        if fps >= 15:
            return min(8, limit)
        return limit

    @staticmethod
    def resolution_adaptation(width: int, height: int):
        """(sampling stride, passing pixel ratio) for a frame size."""
        pixels = width * height
        for limit, stride, ratio in FLICKER_RESOLUTION_BANDS:
            if pixels < limit:
                return stride, ratio
        return FLICKER_HIGH_RES

    def analyze(self) -> AttackVerdict:
        frames = self.collector.get_gray_frames(self.config["buffer_size"])
        if len(frames) < self.min_frames:
            return AttackVerdict.unavailable(
                "flicker", f"insufficient frames: {len(frames)} < {self.min_frames}")

        height, width = frames[-1].shape[:2]
        stride, passing_ratio = self.resolution_adaptation(width, height)
        max_period = self.effective_max_period()
        min_period = max(1, int(self.config["min_period"]))

        series = np.stack([f[::stride, ::stride].reshape(-1) for f in frames]).astype(np.float32)
        steps = np.diff(series, axis=0)
        centered = steps - steps.mean(axis=0)
        variance = (centered ** 2).mean(axis=0)
        varying = variance > 1e-6
        sampled = series.shape[1]

        counts = {}
        for lag in range(min_period, max_period + 1):
            if lag >= len(steps):
                break
            covariance = (centered[:-lag] * centered[lag:]).mean(axis=0)
            correlation = np.where(varying, covariance / np.maximum(variance, 1e-6), 0.0)
            counts[lag] = int(np.count_nonzero(correlation >= self.config["correlation_threshold"]))

        dominant, best = 0, 0
        for lag, count in counts.items():
            if count > best:
                dominant, best = lag, count

        ratio = best / sampled if sampled else 0.0
        confidence = min(1.0, ratio * 1.5)
        fps = self.collector.get_average_fps()
        return AttackVerdict(
            method="flicker",
            is_attack=ratio >= passing_ratio,
            confidence=confidence,
            details={
                "dominant_period_frames": dominant or None,
                "estimated_refresh_hz": fps / dominant if dominant and fps > 0 else None,
                "passing_pixel_ratio": ratio,
                "sampled_pixels": sampled,
                "lag_counts": counts,
            },
        )


# ===================================================================
# METHOD 6: RESPONSE TIME (E-INK)
# ===================================================================

RESPONSE_TIME_DEFAULTS = {
    "buffer_size": 30,
    "min_pixel_delta": 30,
    "eink_threshold_ms": 150,
    "passing_pixel_ratio": 0.45,
    "sampling_stride": 1,
}

RESPONSE_TIME_MIN_FRAMES = 10
FAST_PANEL_MS = 20


class ScreenResponseTimeDetector:
    """Slow pixel transitions of e-ink panels.

    For every sampled pixel the largest single-frame change is located and
    extended over neighbouring frames that keep moving in the same
    direction. The duration of that transition, measured on the frame
    timestamps, is the pixel's response time. LCD/OLED settle within one
    frame, e-ink needs 200-500 ms.
    """

    def __init__(self, collector, config: Optional[dict] = None):
        self.collector = collector
        self.config = {**RESPONSE_TIME_DEFAULTS, **(config or {})}

    def get_buffered_frame_count(self) -> int:
        return len(self.collector.get_gray_frames(self.config["buffer_size"]))

    def _transition_bounds(self, steps: np.ndarray, peak: np.ndarray, active: np.ndarray):
        """First and one-past-last frame of each pixel's transition."""
        count, pixels = steps.shape
        cols = np.arange(pixels)
        direction = np.sign(steps[peak, cols])
        moving = steps * direction > self.config["min_pixel_delta"] / 4.0

        start = peak.copy()
        end = peak + 1
        alive = active.copy()
        for _ in range(count):
            nxt = np.minimum(end, count - 1)
            alive &= (end < count) & moving[nxt, cols]
            if not alive.any():
                break
            end += alive
        alive = active.copy()
        for _ in range(count):
            prev = np.maximum(start - 1, 0)
            alive &= (start > 0) & moving[prev, cols]
            if not alive.any():
                break
            start -= alive
        return start, end

    def analyze(self) -> AttackVerdict:
        triples = self.collector.get_last_n_frames(self.config["buffer_size"])
        if len(triples) < RESPONSE_TIME_MIN_FRAMES:
            return AttackVerdict.unavailable(
                "response_time",
                f"insufficient frames: {len(triples)} < {RESPONSE_TIME_MIN_FRAMES}")

        stride = max(1, int(self.config["sampling_stride"]))
        series = np.stack([g[::stride, ::stride].reshape(-1) for g, _, _ in triples]).astype(np.float32)
        timestamps = np.array([t for _, _, t in triples], dtype=np.float64)

        steps = np.diff(series, axis=0)
        peak = np.argmax(np.abs(steps), axis=0)
        peak_delta = np.abs(steps[peak, np.arange(steps.shape[1])])
        active = peak_delta >= self.config["min_pixel_delta"]
        if not active.any():
            return AttackVerdict.unavailable("response_time", "no significant pixel changes")

        start, end = self._transition_bounds(steps, peak, active)
        response_ms = (timestamps[end] - timestamps[start])[active] * 1000.0

        average = float(response_ms.mean())
        slow_ratio = float(np.count_nonzero(response_ms > self.config["eink_threshold_ms"])) / len(response_ms)

        is_attack = False
        if average > self.config["eink_threshold_ms"]:
            screen_type = "eink"
            is_attack = slow_ratio >= self.config["passing_pixel_ratio"]
        elif average < FAST_PANEL_MS:
            screen_type = "lcd"
        else:
            screen_type = "unknown"

        return AttackVerdict(
            method="response_time",
            is_attack=is_attack,
            confidence=min(1.0, slow_ratio * 1.5),
            details={
                "average_response_ms": average,
                "min_response_ms": float(response_ms.min()),
                "max_response_ms": float(response_ms.max()),
                "slow_pixel_ratio": slow_ratio,
                "responsive_pixels": int(len(response_ms)),
                "estimated_screen_type": screen_type,
            },
        )


# ===================================================================
# METHOD 7: OPTICAL DISTORTION (PROJECTORS)
# ===================================================================

OPTICAL_DEFAULTS = {
    "buffer_size": 3,
    "keystone_threshold": 0.15,
    "barrel_threshold": 0.10,
    "chromatic_threshold": 3.0,
    "vignette_threshold": 0.20,
    "sampling_stride": 2,
    "weights": {
        "keystone": 0.35,
        "barrel": 0.30,
        "chromatic": 0.20,
        "vignette": 0.15,
    },
}

OPTICAL_EDGE_DELTA = 50
OPTICAL_BOUNDARY_SEARCH = 50
OPTICAL_ATTACK_SCORE = 0.35


class OpticalDistortionDetector:
    """Lens artifacts of a projected image: keystone, barrel bending,
    chromatic aberration and vignetting."""

    def __init__(self, collector, config: Optional[dict] = None):
        self.collector = collector
        self.config = {**OPTICAL_DEFAULTS, **(config or {})}

    def get_buffered_frame_count(self) -> int:
        return len(self.collector.get_gray_frames(self.config["buffer_size"]))

    def _stride(self) -> int:
        return max(1, int(self.config["sampling_stride"]))

    def _edge_width(self, gray: np.ndarray, y: int) -> int:
        stride = self._stride()
        row = gray[y].astype(np.int32)
        if len(row) <= stride:
            return 0
        xs = np.arange(0, len(row) - stride, stride)
        hits = xs[np.abs(row[xs + stride] - row[xs]) > OPTICAL_EDGE_DELTA]
        if len(hits) == 0:
            return 0
        return int(hits[-1] - hits[0])

    def keystone_level(self, gray: np.ndarray) -> float:
        rows = gray.shape[0]
        top = self._edge_width(gray, int(rows * 0.1))
        bottom = self._edge_width(gray, int(rows * 0.9))
        if top == 0 or bottom == 0:
            return 0.0
        ratio = abs(top - bottom) / max(top, bottom)
        return min(1.0, ratio / 0.5)

    @staticmethod
    def _boundary_x(row: np.ndarray, start_x: int, left: bool) -> int:
        cols = len(row)
        if left:
            candidates = range(max(0, start_x - OPTICAL_BOUNDARY_SEARCH),
                               start_x + OPTICAL_BOUNDARY_SEARCH, 2)
            for x in candidates:
                if x + 2 < cols and abs(int(row[x + 2]) - int(row[x])) > OPTICAL_EDGE_DELTA:
                    return x
        else:
            candidates = range(min(cols - 1, start_x + OPTICAL_BOUNDARY_SEARCH),
                               start_x - OPTICAL_BOUNDARY_SEARCH, -2)
            for x in candidates:
                if x - 2 >= 0 and abs(int(row[x]) - int(row[x - 2])) > OPTICAL_EDGE_DELTA:
                    return x
        return start_x

    def barrel_level(self, gray: np.ndarray) -> float:
        """Spread of the left/right boundary positions down the frame."""
        rows, cols = gray.shape[:2]
        stride = self._stride()
        deviations = []
        for left, start_x in ((True, int(cols * 0.05)), (False, int(cols * 0.95))):
            positions = [self._boundary_x(gray[y], start_x, left) for y in range(0, rows, stride)]
            deviations.append(float(np.std(positions)) if len(positions) >= 2 else 0.0)
        return min(1.0, max(deviations) / (rows * 0.1))

    def chromatic_shift(self, bgr: Optional[np.ndarray]) -> float:
        """Pixel offset between the red and blue planes."""
        if bgr is None or bgr.ndim != 3:
            return 0.0
        blue = bgr[:, :, 0].astype(np.float32)
        red = bgr[:, :, 2].astype(np.float32)
        if float(blue.std()) < 1e-3 or float(red.std()) < 1e-3:
            return 0.0
        (dx, dy), _ = cv2.phaseCorrelate(blue, red)
        return float(math.hypot(dx, dy))

    def vignette_level(self, gray: np.ndarray) -> float:
        rows, cols = gray.shape[:2]
        stride = self._stride()
        center = float(gray[int(rows * 0.25):int(rows * 0.75):stride,
                            int(cols * 0.25):int(cols * 0.75):stride].mean())
        if center <= 0:
            return 0.0
        size = max(1, min(int(cols * 0.1), int(rows * 0.1)))
        corners = [
            gray[:size:stride, :size:stride],
            gray[:size:stride, cols - size::stride],
            gray[rows - size::stride, :size:stride],
            gray[rows - size::stride, cols - size::stride],
        ]
        corner_mean = float(np.mean([c.mean() for c in corners]))
        return min(1.0, max(0.0, (center - corner_mean) / center))

    def analyze(self) -> AttackVerdict:
        grays = self.collector.get_gray_frames(self.config["buffer_size"])
        if not grays:
            return AttackVerdict.unavailable("optical_distortion", "no frame")
        gray = grays[0]
        bgrs = self.collector.get_bgr_frames(self.config["buffer_size"])
        bgr = bgrs[0] if bgrs else None

        shift = self.chromatic_shift(bgr)
        levels = {
            "keystone": self.keystone_level(gray),
            "barrel": self.barrel_level(gray),
            "chromatic": min(1.0, shift / (self.config["chromatic_threshold"] * 2)),
            "vignette": self.vignette_level(gray),
        }
        thresholds = {
            "keystone": self.config["keystone_threshold"],
            "barrel": self.config["barrel_threshold"],
            "chromatic": 0.5,
            "vignette": self.config["vignette_threshold"],
        }
        weights = self.config["weights"]
        score = sum(levels[k] * weights[k] for k in levels)

        projector = "unknown"
        if sum(levels.values()) >= 0.3:
            if levels["chromatic"] > 0.3:
                projector = "dlp"
            elif levels["vignette"] > 0.3:
                projector = "lcd"
            elif levels["keystone"] > 0.3:
                projector = "lcos"

        return AttackVerdict(
            method="optical_distortion",
            is_attack=score > OPTICAL_ATTACK_SCORE,
            confidence=min(1.0, score),
            details={
                "levels": levels,
                "detected": {k: levels[k] > thresholds[k] for k in levels},
                "chromatic_shift_pixels": shift,
                "estimated_projector_type": projector,
            },
        )
