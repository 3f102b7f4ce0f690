"""Data model shared by the channel, decoder, sequencer and history."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from ..constants import THROTTLE_RAW_MAX, THROTTLE_RAW_MIN


class ProfileError(ValueError):
    """Raised when a profile object from the device is malformed."""


@dataclass(frozen=True)
class Command:
    """One outbound command frame."""

    cmd: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: int = 0

    def __post_init__(self) -> None:
        # Freeze the payload so a queued command cannot change under the worker.
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))

    @classmethod
    def create(
        cls, cmd: str, payload: Optional[Mapping[str, Any]] = None, *, now_ms: Optional[int] = None
    ) -> "Command":
        timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
        return cls(cmd=cmd, payload=dict(payload or {}), timestamp=timestamp)

    def as_wire(self) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {"cmd": self.cmd}
        envelope.update(self.payload)
        envelope["timestamp"] = self.timestamp
        return envelope

    def to_json(self) -> str:
        return json.dumps(self.as_wire(), separators=(",", ":"))

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")


def _as_float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(slots=True)
class TelemetrySample:
    timestamp: float = 0.0
    throttle_pct: float = 0.0
    voltage: float = 0.0
    current: float = 0.0
    power: float = 0.0
    rpm: float = 0.0
    thrust_grams: float = 0.0
    esc_temp_c: float = 0.0
    motor_temp_c: float = 0.0

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any], *, timestamp: float) -> "TelemetrySample":
        return cls(
            timestamp=timestamp,
            throttle_pct=_as_float(payload.get("throttle")),
            voltage=_as_float(payload.get("voltage")),
            current=_as_float(payload.get("current")),
            power=_as_float(payload.get("power")),
            rpm=_as_float(payload.get("rpm")),
            thrust_grams=_as_float(payload.get("thrust")),
            esc_temp_c=_as_float(payload.get("escTemp")),
            motor_temp_c=_as_float(payload.get("motorTemp")),
        )

    def with_throttle(self, *, timestamp: float, throttle_pct: float) -> "TelemetrySample":
        """Copy with a sampler timestamp and the commanded throttle."""
        return TelemetrySample(
            timestamp=timestamp,
            throttle_pct=throttle_pct,
            voltage=self.voltage,
            current=self.current,
            power=self.power,
            rpm=self.rpm,
            thrust_grams=self.thrust_grams,
            esc_temp_c=self.esc_temp_c,
            motor_temp_c=self.motor_temp_c,
        )

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TelemetrySample":
        return cls(**{key: _as_float(data.get(key)) for key in cls.__slots__})


_PROFILE_WIRE_KEYS = {
    "motorKV": "motor_kv",
    "propDiameter": "prop_diameter",
    "propPitch": "prop_pitch",
    "propBlades": "prop_blades",
    "batteryCellCount": "battery_cell_count",
    "motorPoles": "motor_poles",
    "motorReverse": "motor_reverse",
    "armThrottleRaw": "arm_throttle_raw",
    "maxRPM": "max_rpm",
    "maxESCTemp": "max_esc_temp",
    "maxMotorTemp": "max_motor_temp",
    "maxCurrent": "max_current",
    "maxThrust": "max_thrust",
}


@dataclass(frozen=True, slots=True)
class Profile:
    """Motor/propeller/battery limits stored on the device."""

    name: str
    motor_kv: float = 0.0
    prop_diameter: float = 0.0
    prop_pitch: float = 0.0
    prop_blades: int = 2
    battery_cell_count: int = 0
    motor_poles: int = 14
    motor_reverse: bool = False
    arm_throttle_raw: int = THROTTLE_RAW_MIN
    max_rpm: float = 0.0
    max_esc_temp: float = 0.0
    max_motor_temp: float = 0.0
    max_current: float = 0.0
    max_thrust: float = 0.0

    def __post_init__(self) -> None:
        if not self.name:
            raise ProfileError("profile name is required")
        if self.motor_poles < 2 or self.motor_poles % 2:
            raise ProfileError(
                f"motor poles must be an even number >= 2 (got {self.motor_poles})"
            )
        if not THROTTLE_RAW_MIN <= self.arm_throttle_raw <= THROTTLE_RAW_MAX:
            raise ProfileError(
                f"arm throttle {self.arm_throttle_raw} outside "
                f"[{THROTTLE_RAW_MIN}, {THROTTLE_RAW_MAX}]"
            )

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> "Profile":
        if not isinstance(payload, Mapping):
            raise ProfileError("profile must be an object")

        data = dict(payload)
        if "armThrottleRaw" not in data and "armThrottle" in data:
            data["armThrottleRaw"] = data["armThrottle"]

        kwargs: Dict[str, Any] = {"name": str(data.get("name") or "")}
        try:
            for wire_key, attr in _PROFILE_WIRE_KEYS.items():
                if data.get(wire_key) is None:
                    continue
                value = data[wire_key]
                if attr in ("prop_blades", "battery_cell_count", "motor_poles", "arm_throttle_raw"):
                    kwargs[attr] = int(value)
                elif attr == "motor_reverse":
                    kwargs[attr] = bool(value)
                else:
                    kwargs[attr] = float(value)
        except (TypeError, ValueError) as exc:
            raise ProfileError(f"invalid profile field: {exc}") from exc

        return cls(**kwargs)

    def as_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"name": self.name}
        for wire_key, attr in _PROFILE_WIRE_KEYS.items():
            wire[wire_key] = getattr(self, attr)
        return wire


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class KvPoint:
    """Mean voltage and RPM over one operator-confirmed supply step."""

    voltage: float
    rpm: float


@dataclass
class TestRun:
    """One sequencer run, from start to seal."""

    __test__ = False  # keep pytest from collecting this class

    mode: str
    params: Dict[str, Any]
    profile: Optional[Profile] = None
    samples: List[TelemetrySample] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ended_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None
    last_error: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    kv_points: List[KvPoint] = field(default_factory=list)

    @property
    def sealed(self) -> bool:
        return self.outcome is not None

    def seal(self, outcome: RunOutcome, *, error: Optional[str] = None) -> None:
        self.outcome = outcome
        self.last_error = error
        self.ended_at = datetime.now(timezone.utc)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "mode": self.mode,
            "params": dict(self.params),
            "profile": self.profile.as_wire() if self.profile else None,
            "samples": [sample.as_dict() for sample in self.samples],
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "outcome": self.outcome.value if self.outcome else None,
            "lastError": self.last_error,
            "analysis": self.analysis,
            "kvPoints": [asdict(point) for point in self.kv_points],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TestRun":
        """Rebuild a run from ``as_dict`` output.

        Raises ``KeyError``/``ValueError``/``TypeError`` on malformed input.
        """

        profile_data = data.get("profile")
        ended_at = data.get("endedAt")
        outcome = data.get("outcome")
        return cls(
            run_id=str(data.get("runId") or uuid.uuid4().hex),
            mode=str(data["mode"]),
            params=dict(data.get("params") or {}),
            profile=Profile.from_wire(profile_data) if profile_data else None,
            samples=[TelemetrySample.from_dict(item) for item in data.get("samples") or []],
            started_at=datetime.fromisoformat(data["startedAt"]),
            ended_at=datetime.fromisoformat(ended_at) if ended_at else None,
            outcome=RunOutcome(outcome) if outcome else None,
            last_error=data.get("lastError"),
            analysis=data.get("analysis"),
            kv_points=[
                KvPoint(voltage=float(item["voltage"]), rpm=float(item["rpm"]))
                for item in data.get("kvPoints") or []
            ],
        )
