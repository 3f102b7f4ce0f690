"""Throttle encoding between percent and the ESC's raw DShot range."""

from __future__ import annotations

import math
from typing import Optional

from ..constants import THROTTLE_RAW_MAX, THROTTLE_RAW_MIN

_RAW_SPAN = THROTTLE_RAW_MAX - THROTTLE_RAW_MIN


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def percent_to_raw(percent: float) -> int:
    """Encode a throttle percentage as a raw ESC value in [48, 2047]."""

    percent = clamp(percent, 0.0, 100.0)
    # Round half up, not to even.
    return int(math.floor(THROTTLE_RAW_MIN + (percent / 100.0) * _RAW_SPAN + 0.5))


def raw_to_percent(raw: float) -> float:
    return ((raw - THROTTLE_RAW_MIN) / _RAW_SPAN) * 100.0


def arm_floor_percent(arm_throttle_raw: Optional[int]) -> float:
    """Lowest throttle percentage the sequencer may command.

    Without an active profile the floor is the bottom of the raw range.
    """

    raw = THROTTLE_RAW_MIN if arm_throttle_raw is None else arm_throttle_raw
    return clamp(raw_to_percent(raw), 0.0, 100.0)
