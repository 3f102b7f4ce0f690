"""CSV export of run samples."""

from __future__ import annotations

import csv
import io
import logging
from pathlib import Path
from typing import Iterable, Optional

from .core.models import TelemetrySample, TestRun

LOGGER = logging.getLogger(__name__)

CSV_HEADER = (
    "Time (s)",
    "Throttle (%)",
    "Voltage (V)",
    "Current (A)",
    "Power (W)",
    "RPM",
    "Thrust (g)",
    "ESC Temp (°C)",
    "Motor Temp (°C)",
)


def default_filename(run: TestRun) -> str:
    stamp = run.started_at.strftime("%Y-%m-%dT%H-%M-%S")
    return f"analyze_{run.mode}_{stamp}.csv"


def _number(value: float) -> str:
    # Plain decimal, no exponent, no trailing zeros.
    text = f"{round(value, 4):f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def render_csv(samples: Iterable[TelemetrySample]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for sample in samples:
        writer.writerow(
            [
                f"{sample.timestamp:.2f}",
                _number(sample.throttle_pct),
                _number(sample.voltage),
                _number(sample.current),
                _number(sample.power),
                _number(sample.rpm),
                _number(sample.thrust_grams),
                _number(sample.esc_temp_c),
                _number(sample.motor_temp_c),
            ]
        )
    return buffer.getvalue()


def export_run_csv(run: TestRun, path: Optional[Path] = None) -> Path:
    """Write ``run`` as CSV; a directory (or nothing) gets the default filename."""

    target = path or Path.cwd()
    if target.is_dir():
        target = target / default_filename(run)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8", newline="") as stream:
        stream.write(render_csv(run.samples))
    LOGGER.info("Exported %d sample(s) to %s", len(run.samples), target)
    return target
