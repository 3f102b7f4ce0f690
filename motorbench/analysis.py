"""Post-run analysis: regression, smoothing and summary figures."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .constants import IR_CURRENT_NOISE_FLOOR_A
from .core.models import KvPoint, TelemetrySample, TestRun

LOGGER = logging.getLogger(__name__)

Point = Tuple[float, float]

DEFAULT_SMOOTHING_WINDOW = 5
MOTOR_TEMP_SMOOTHING_WINDOW = 10


@dataclass(frozen=True, slots=True)
class RegressionResult:
    slope: float
    intercept: float
    r2: float
    count: int


def linear_regression(points: Iterable[Point]) -> Optional[RegressionResult]:
    """Ordinary least squares fit of ``y = slope * x + intercept``.

    Returns ``None`` for fewer than two points or when every x is equal.
    When y has no variance the fit is exact and r2 is 1.
    """

    pts = np.asarray([(float(x), float(y)) for x, y in points], dtype=float).reshape(-1, 2)
    count = len(pts)
    if count < 2:
        return None

    x, y = pts[:, 0], pts[:, 1]
    if np.ptp(x) <= 1e-12 * max(1.0, float(np.abs(x).max())):
        return None

    slope, intercept = np.polyfit(x, y, 1)
    residuals = y - np.polyval((slope, intercept), x)
    ss_res = float(np.sum(residuals**2))
    ss_tot = float(np.sum((y - y.mean()) ** 2))
    r2 = 1.0 if ss_tot == 0.0 else 1.0 - ss_res / ss_tot

    return RegressionResult(slope=float(slope), intercept=float(intercept), r2=r2, count=count)


def smooth_centered(series: Sequence[float], window: int = DEFAULT_SMOOTHING_WINDOW) -> List[float]:
    """Symmetric moving average; the window shrinks at the series edges."""

    values = np.asarray(series, dtype=float)
    if values.size == 0:
        return []

    half = max(0, int(window) // 2)
    index = np.arange(values.size)
    start = np.clip(index - half, 0, None)
    end = np.clip(index + half + 1, None, values.size)
    totals = np.concatenate(([0.0], np.cumsum(values)))
    return ((totals[end] - totals[start]) / (end - start)).tolist()


def ir_points(samples: Sequence[TelemetrySample]) -> List[Point]:
    """(ΔI, ΔV) pairs between consecutive samples with a real current step."""

    points: List[Point] = []
    for previous, current in zip(samples, samples[1:]):
        delta_v = previous.voltage - current.voltage
        delta_i = current.current - previous.current
        if abs(delta_i) > IR_CURRENT_NOISE_FLOOR_A:
            points.append((delta_i, delta_v))
    return points


def estimate_ir(samples: Sequence[TelemetrySample]) -> Optional[RegressionResult]:
    """Battery internal resistance in ohms as the slope of ΔV over ΔI."""
    return linear_regression(ir_points(samples))


def estimate_kv(
    kv_points: Sequence[KvPoint] = (),
    samples: Sequence[TelemetrySample] = (),
) -> Optional[RegressionResult]:
    """RPM per volt from per-step means, or from raw samples without them."""

    if kv_points:
        points = [(point.voltage, point.rpm) for point in kv_points]
    else:
        points = [(sample.voltage, sample.rpm) for sample in samples]
    return linear_regression(points)


@dataclass(slots=True)
class RunSummary:
    sample_count: int = 0
    duration_seconds: float = 0.0
    peak_throttle: float = 0.0
    peak_rpm: float = 0.0
    peak_thrust_grams: float = 0.0
    peak_current: float = 0.0
    peak_power: float = 0.0
    mean_voltage: float = 0.0
    min_voltage: float = 0.0
    max_esc_temp_c: float = 0.0
    max_motor_temp_c: float = 0.0
    peak_efficiency_g_per_w: float = 0.0


def summarize(samples: Sequence[TelemetrySample]) -> RunSummary:
    if not samples:
        return RunSummary()

    efficiencies = [s.thrust_grams / s.power for s in samples if s.power > 0]
    return RunSummary(
        sample_count=len(samples),
        duration_seconds=samples[-1].timestamp - samples[0].timestamp,
        peak_throttle=max(s.throttle_pct for s in samples),
        peak_rpm=max(s.rpm for s in samples),
        peak_thrust_grams=max(s.thrust_grams for s in samples),
        peak_current=max(s.current for s in samples),
        peak_power=max(s.power for s in samples),
        mean_voltage=sum(s.voltage for s in samples) / len(samples),
        min_voltage=min(s.voltage for s in samples),
        max_esc_temp_c=max(s.esc_temp_c for s in samples),
        max_motor_temp_c=max(s.motor_temp_c for s in samples),
        peak_efficiency_g_per_w=max(efficiencies) if efficiencies else 0.0,
    )


@dataclass(slots=True)
class RunAnalysis:
    summary: RunSummary
    smoothed: Dict[str, List[float]] = field(default_factory=dict)
    kv: Optional[RegressionResult] = None
    ir: Optional[RegressionResult] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "summary": asdict(self.summary),
            "smoothed": {key: list(values) for key, values in self.smoothed.items()},
            "kv": asdict(self.kv) if self.kv else None,
            "ir": asdict(self.ir) if self.ir else None,
        }


def analyze_run(run: TestRun) -> RunAnalysis:
    samples = run.samples
    analysis = RunAnalysis(
        summary=summarize(samples),
        smoothed={
            "voltage": smooth_centered([s.voltage for s in samples], DEFAULT_SMOOTHING_WINDOW),
            "current": smooth_centered([s.current for s in samples], DEFAULT_SMOOTHING_WINDOW),
            "escTemp": smooth_centered([s.esc_temp_c for s in samples], DEFAULT_SMOOTHING_WINDOW),
            "motorTemp": smooth_centered(
                [s.motor_temp_c for s in samples], MOTOR_TEMP_SMOOTHING_WINDOW
            ),
        },
    )

    if run.mode == "kv":
        analysis.kv = estimate_kv(run.kv_points, samples)
        if analysis.kv:
            LOGGER.info("KV estimate: %.1f RPM/V (r2 %.3f)", analysis.kv.slope, analysis.kv.r2)
    elif run.mode == "ir":
        analysis.ir = estimate_ir(samples)
        if analysis.ir:
            LOGGER.info(
                "Internal resistance: %.1f mOhm (r2 %.3f)", analysis.ir.slope * 1000, analysis.ir.r2
            )
    return analysis
