"""The seven bench test modes and their parameters.

Parameter names on the wire and in history are camelCase, matching the keys
the operator passes on the command line (``startThrottle=10``). Every mode
polls the run's cancellation token before each send, between ramp steps
and between hold chunks.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Type, TypeVar

from ..core.models import KvPoint, TelemetrySample, TestRun
from ..core.protocols import SleepFunc
from .cancellation import CancellationToken
from .throttle import ThrottleController

LOGGER = logging.getLogger(__name__)

ParamsT = TypeVar("ParamsT", bound="ModeParams")

# Minimum duration of the approach and return ramps of a sweep.
SWEEP_MIN_RAMP_MS = 200.0
# Fixed ramp duration used by endurance and thermal segments.
SEGMENT_RAMP_MS = 2000.0

VoltagePrompt = Callable[[int, int], Awaitable[Any]]


class SequencerError(RuntimeError):
    """Raised for invalid runs and for conditions that abort a run."""


def _key(name: str) -> Dict[str, str]:
    return {"key": name}


@dataclass(frozen=True)
class ModeParams:
    """Base class: coercion from loose mappings and camelCase export."""

    @classmethod
    def from_mapping(cls: Type[ParamsT], values: Optional[Mapping[str, Any]]) -> ParamsT:
        values = dict(values or {})
        kwargs: Dict[str, Any] = {}
        for item in fields(cls):
            wire_key = item.metadata.get("key", item.name)
            if wire_key in values:
                raw = values[wire_key]
            elif item.name in values:
                raw = values[item.name]
            else:
                continue
            if raw is None or raw == "":
                continue
            try:
                if isinstance(item.default, int):
                    kwargs[item.name] = int(float(raw))
                elif isinstance(item.default, float):
                    kwargs[item.name] = float(raw)
                else:
                    kwargs[item.name] = str(raw)
            except (TypeError, ValueError) as exc:
                raise SequencerError(f"Invalid value for '{wire_key}': {raw!r}") from exc

        params = cls(**kwargs)
        params.validate()
        return params

    def validate(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            wire_key = item.metadata.get("key", item.name)
            if item.metadata.get("throttle") and not 0.0 <= value <= 100.0:
                raise SequencerError(f"'{wire_key}' must be within 0..100 % (got {value})")
            if "min" in item.metadata and value < item.metadata["min"]:
                raise SequencerError(f"'{wire_key}' must be >= {item.metadata['min']} (got {value})")
            if item.metadata.get("positive") and value <= 0:
                raise SequencerError(f"'{wire_key}' must be positive (got {value})")

    def as_dict(self) -> Dict[str, Any]:
        return {item.metadata.get("key", item.name): getattr(self, item.name) for item in fields(self)}


def _throttle(default: float, key: str) -> Any:
    return field(default=default, metadata={"key": key, "throttle": True})


def _positive(default: Any, key: str) -> Any:
    return field(default=default, metadata={"key": key, "positive": True})


def _at_least(default: Any, key: str, minimum: float) -> Any:
    return field(default=default, metadata={"key": key, "min": minimum})


@dataclass(frozen=True)
class SweepParams(ModeParams):
    start_throttle: float = _throttle(0.0, "startThrottle")
    end_throttle: float = _throttle(100.0, "endThrottle")
    step_size: float = _positive(5.0, "stepSize")
    dwell: float = _at_least(3.0, "dwell", 0)
    ramp_rate: float = _positive(20.0, "rampRate")
    repeats: int = _at_least(1, "repeats", 1)


@dataclass(frozen=True)
class StepParams(ModeParams):
    low_throttle: float = _throttle(10.0, "lowThrottle")
    high_throttle: float = _throttle(60.0, "highThrottle")
    on_duration: float = _at_least(3.0, "onDuration", 0)
    off_duration: float = _at_least(3.0, "offDuration", 0)
    cycles: int = _at_least(5, "cycles", 1)
    ramp_rate: float = _positive(100.0, "rampRate")


@dataclass(frozen=True)
class EnduranceParams(ModeParams):
    throttle: float = _throttle(50.0, "throttle")
    duration: float = _at_least(10.0, "duration", 0)
    cooldown: float = _at_least(2.0, "cooldown", 0)


@dataclass(frozen=True)
class IrParams(ModeParams):
    baseline: float = _throttle(10.0, "baseline")
    pulse_amplitude: float = _at_least(10.0, "pulseAmplitude", 0)
    on_duration: float = _at_least(1.0, "onDuration", 0)
    off_duration: float = _at_least(1.0, "offDuration", 0)
    pulses: int = _at_least(10, "pulses", 1)


@dataclass(frozen=True)
class KvParams(ModeParams):
    throttle: float = _throttle(20.0, "throttle")
    voltage_steps: int = _at_least(5, "voltageSteps", 1)
    dwell: float = _at_least(2.0, "dwell", 0)
    current_ceiling: float = _positive(10.0, "currentCeiling")


@dataclass(frozen=True)
class ThermalParams(ModeParams):
    segment1_throttle: float = _throttle(70.0, "segment1Throttle")
    segment1_duration: float = _at_least(120.0, "segment1Duration", 0)
    segment2_throttle: float = _throttle(90.0, "segment2Throttle")
    segment2_duration: float = _at_least(30.0, "segment2Duration", 0)


@dataclass(frozen=True)
class MappingParams(ModeParams):
    repeats: int = _at_least(3, "repeats", 1)
    ambient_temp: float = field(default=25.0, metadata={"key": "ambientTemp"})
    notes: str = field(default="", metadata={"key": "notes"})


MAPPING_SWEEP = SweepParams(
    start_throttle=10.0, end_throttle=80.0, step_size=10.0, dwell=2.0, ramp_rate=20.0, repeats=1
)


@dataclass
class ModeContext:
    """Everything a mode may touch while it runs."""

    throttle: ThrottleController
    token: CancellationToken
    run: TestRun
    progress: Callable[[float, str], None]
    status: Callable[[str, str], None]
    telemetry: Callable[[], Optional[TelemetrySample]]
    sleep: SleepFunc
    voltage_prompt: Optional[VoltagePrompt] = None
    kv_sample_interval: float = 0.1

    def check(self) -> None:
        self.token.check()

    async def ramp(self, from_percent: float, to_percent: float, duration_ms: float) -> None:
        await self.throttle.ramp(from_percent, to_percent, duration_ms, token=self.token)

    async def send(self, percent: float) -> None:
        self.check()
        await self.throttle.send_throttle(percent)

    async def hold(self, seconds: float, on_tick: Optional[Callable[[float], Any]] = None) -> None:
        await self.throttle.hold(seconds, token=self.token, on_tick=on_tick)


async def run_sweep(ctx: ModeContext, params: SweepParams) -> None:
    start, end = params.start_throttle, params.end_throttle
    steps = int(math.floor((end - start) / params.step_size + 1e-9)) + 1

    for repeat in range(params.repeats):
        ctx.check()
        await ctx.ramp(0.0, start, max(SWEEP_MIN_RAMP_MS, start / params.ramp_rate * 1000.0))

        for step in range(steps):
            ctx.progress(
                step / max(1, steps - 1) * 100.0,
                f"{step + 1}/{steps} ({repeat + 1}/{params.repeats})",
            )
            await ctx.send(start + step * params.step_size)
            await ctx.hold(params.dwell)

        await ctx.ramp(end, 0.0, max(SWEEP_MIN_RAMP_MS, end / params.ramp_rate * 1000.0))

    ctx.progress(100.0, f"Completed {params.repeats} repeats")


async def run_step(ctx: ModeContext, params: StepParams) -> None:
    low, high = params.low_throttle, params.high_throttle
    ramp_ms = abs(high - low) / params.ramp_rate * 1000.0

    for cycle in range(params.cycles):
        ctx.check()
        ctx.progress((cycle + 1) / params.cycles * 100.0, f"{cycle + 1}/{params.cycles}")
        await ctx.ramp(low, high, ramp_ms)
        await ctx.hold(params.on_duration)
        await ctx.ramp(high, low, ramp_ms)
        await ctx.hold(params.off_duration)

    ctx.progress(100.0, f"Completed {params.cycles} cycles")


async def run_endurance(ctx: ModeContext, params: EnduranceParams) -> None:
    ctx.progress(0.0, "Running endurance test")
    await ctx.ramp(0.0, params.throttle, SEGMENT_RAMP_MS)

    total = params.duration * 60.0
    await ctx.hold(
        total,
        on_tick=lambda elapsed: ctx.progress(
            elapsed / total * 100.0, f"Endurance: {round(elapsed)}s / {total:g}s"
        ),
    )
    ctx.progress(100.0, "Endurance test completed")

    await ctx.ramp(params.throttle, 0.0, SEGMENT_RAMP_MS)

    if params.cooldown > 0:
        cooldown = params.cooldown * 60.0
        await ctx.hold(
            cooldown,
            on_tick=lambda elapsed: ctx.progress(
                100.0, f"Cooldown: {round(elapsed)}s / {cooldown:g}s"
            ),
        )


async def run_ir(ctx: ModeContext, params: IrParams) -> None:
    for pulse in range(params.pulses):
        ctx.progress((pulse + 1) / params.pulses * 100.0, f"{pulse + 1}/{params.pulses}")
        await ctx.send(params.baseline)
        await ctx.hold(params.off_duration)
        await ctx.send(params.baseline + params.pulse_amplitude)
        await ctx.hold(params.on_duration)

    await ctx.send(params.baseline)
    ctx.progress(100.0, "IR test completed")


async def run_kv(ctx: ModeContext, params: KvParams) -> None:
    """Hold a low throttle while the operator steps the supply voltage.

    Each step waits for the operator, then averages voltage and RPM over
    ``dwell`` seconds into a ``KvPoint`` on the run.
    """

    if ctx.voltage_prompt is None:
        raise SequencerError("KV estimation needs an operator voltage prompt")

    await ctx.send(params.throttle)

    for step in range(params.voltage_steps):
        ctx.progress(
            step / max(1, params.voltage_steps - 1) * 100.0,
            f"Step {step + 1}/{params.voltage_steps}",
        )
        ctx.status(
            f"Step {step + 1}: set supply voltage to the desired value, then confirm to continue.",
            "warn",
        )
        await ctx.token.guard(ctx.voltage_prompt(step + 1, params.voltage_steps))
        ctx.status(f"Voltage confirmed for step {step + 1}. Running dwell...", "info")

        voltages: List[float] = []
        rpms: List[float] = []
        elapsed = 0.0
        while elapsed < params.dwell:
            ctx.check()
            last = ctx.telemetry() or TelemetrySample()
            voltages.append(last.voltage)
            rpms.append(last.rpm)
            await ctx.sleep(ctx.kv_sample_interval)
            elapsed += ctx.kv_sample_interval

        point = KvPoint(
            voltage=sum(voltages) / len(voltages) if voltages else 0.0,
            rpm=sum(rpms) / len(rpms) if rpms else 0.0,
        )
        ctx.run.kv_points.append(point)
        LOGGER.info("KV step %d: %.2f V, %.0f RPM", step + 1, point.voltage, point.rpm)

        last = ctx.telemetry()
        if last is not None and last.current > params.current_ceiling:
            raise SequencerError(f"Current ceiling exceeded: {last.current}A")

    await ctx.send(0.0)
    ctx.progress(100.0, "KV estimation completed")


async def run_thermal(ctx: ModeContext, params: ThermalParams) -> None:
    ctx.progress(0.0, "Segment 1")
    await ctx.ramp(0.0, params.segment1_throttle, SEGMENT_RAMP_MS)
    await ctx.hold(params.segment1_duration)

    ctx.progress(50.0, "Segment 2")
    await ctx.ramp(params.segment1_throttle, params.segment2_throttle, SEGMENT_RAMP_MS)
    await ctx.hold(params.segment2_duration)

    ctx.progress(100.0, "Thermal stress test completed")
    await ctx.ramp(params.segment2_throttle, 0.0, SEGMENT_RAMP_MS)


async def run_mapping(ctx: ModeContext, params: MappingParams) -> None:
    for index in range(params.repeats):
        ctx.check()
        ctx.progress((index + 1) / params.repeats * 100.0, f"{index + 1}/{params.repeats}")
        await run_sweep(ctx, MAPPING_SWEEP)

    ctx.progress(100.0, "Mapping test completed")


@dataclass(frozen=True)
class ModeSpec:
    name: str
    title: str
    params_type: Type[ModeParams]
    runner: Callable[[ModeContext, Any], Awaitable[None]]

    def parse(self, values: Optional[Mapping[str, Any]]) -> ModeParams:
        return self.params_type.from_mapping(values)

    def defaults(self) -> Dict[str, Any]:
        return self.params_type().as_dict()


MODES: Dict[str, ModeSpec] = {
    spec.name: spec
    for spec in (
        ModeSpec("sweep", "Static Throttle Sweep", SweepParams, run_sweep),
        ModeSpec("step", "Step Response Test", StepParams, run_step),
        ModeSpec("endurance", "Fixed Throttle Endurance", EnduranceParams, run_endurance),
        ModeSpec("ir", "Battery IR (Internal Resistance)", IrParams, run_ir),
        ModeSpec("kv", "KV Estimation", KvParams, run_kv),
        ModeSpec("thermal", "ESC Thermal Stress Test", ThermalParams, run_thermal),
        ModeSpec("mapping", "Prop/Motor Mapping", MappingParams, run_mapping),
    )
}


def get_mode(name: str) -> ModeSpec:
    try:
        return MODES[name]
    except KeyError:
        raise SequencerError(f"Unknown analyze mode: {name}") from None
