import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest

from conftest import RecordingSleep, instant_sleep, settle
from motorbench.analysis import analyze_run
from motorbench.channel import CommandWriteError
from motorbench.core.models import RunOutcome, TelemetrySample
from motorbench.core.status import DeviceStatus, StatusFlag
from motorbench.core.throttle import percent_to_raw
from motorbench.history import HistoryStore
from motorbench.profiles import ProfileCatalog
from motorbench.sequencer import (
    MODES,
    SequencerError,
    SequencerPhase,
    SweepParams,
    TestSequencer,
    get_mode,
)


class RecordingChannel:
    def __init__(self, *, fail_at: Optional[int] = None) -> None:
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self._fail_at = fail_at
        self._calls = 0

    async def send(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self._calls += 1
        if self._fail_at is not None and self._calls == self._fail_at:
            raise CommandWriteError("Failed to write 'set_throttle': GATT error")
        self.sent.append((cmd, dict(payload or {})))
        await asyncio.sleep(0)

    def throttle_values(self) -> List[int]:
        return [payload["value"] for cmd, payload in self.sent if cmd == "set_throttle"]


class Bench:
    def __init__(self, **channel_kwargs: Any) -> None:
        self.channel = RecordingChannel(**channel_kwargs)
        self.sample = TelemetrySample(voltage=16.0, current=2.0, power=32.0, rpm=8000, thrust_grams=300)
        self.status = DeviceStatus(int(StatusFlag.MOTOR_ARMED))
        self.connected = True
        self.profiles = ProfileCatalog()
        self.history = HistoryStore(capacity=10)
        self.prompts: List[Tuple[int, int]] = []
        self.messages: List[Tuple[str, str]] = []
        self.sequencer = TestSequencer(
            channel=self.channel,
            telemetry=lambda: self.sample,
            status=lambda: self.status,
            is_connected=lambda: self.connected,
            profiles=self.profiles,
            history=self.history,
            analyzer=analyze_run,
            voltage_prompt=self.prompt,
            sleep=instant_sleep,
        )
        self.sequencer.add_status_listener(lambda text, kind: self.messages.append((text, kind)))

    async def prompt(self, step: int, total: int) -> None:
        self.prompts.append((step, total))
        volts = 10.0 + step
        self.sample = TelemetrySample(voltage=volts, current=1.0, rpm=1000.0 * volts)


def test_seven_modes_registered() -> None:
    assert sorted(MODES) == ["endurance", "ir", "kv", "mapping", "step", "sweep", "thermal"]


def test_params_accept_camel_case_strings_and_validate() -> None:
    params = get_mode("sweep").parse({"startThrottle": "10", "endThrottle": "60", "repeats": "2"})

    assert isinstance(params, SweepParams)
    assert params.start_throttle == 10.0
    assert params.repeats == 2
    assert params.as_dict()["endThrottle"] == 60.0

    with pytest.raises(SequencerError):
        get_mode("sweep").parse({"endThrottle": 150})
    with pytest.raises(SequencerError):
        get_mode("step").parse({"cycles": "many"})


def test_unknown_mode_is_rejected() -> None:
    with pytest.raises(SequencerError, match="Unknown analyze mode: spin"):
        get_mode("spin")


@pytest.mark.asyncio
async def test_start_rejects_unknown_mode_without_sending() -> None:
    bench = Bench()

    with pytest.raises(SequencerError):
        bench.sequencer.start("spin")

    assert bench.channel.sent == []
    assert bench.sequencer.phase is SequencerPhase.IDLE


@pytest.mark.asyncio
async def test_sweep_end_to_end() -> None:
    bench = Bench()
    finished = []
    bench.sequencer.add_finished_listener(finished.append)

    run = await bench.sequencer.run(
        "sweep", {"startThrottle": 0, "endThrottle": 20, "stepSize": 10, "dwell": 0}
    )

    values = bench.channel.throttle_values()
    assert len(values) == 55
    assert values[:26] == [48] * 26
    assert values[26:29] == [48, 248, 448]
    assert values[29:] == [percent_to_raw(20 + (0 - 20) / 25 * i) for i in range(26)]
    assert values[-1] == 48

    assert run.outcome is RunOutcome.COMPLETED
    assert run.samples
    assert all(sample.voltage == 16.0 for sample in run.samples)
    assert run.analysis is not None and run.analysis["summary"]["sample_count"] == len(run.samples)
    assert bench.history.latest() is run
    assert finished == [run]
    assert bench.sequencer.phase is SequencerPhase.IDLE
    assert ("sweep analyze is running", "info") in bench.messages
    assert ("sweep analyze completed", "info") in bench.messages


@pytest.mark.asyncio
async def test_ramp_timing_splits_duration_across_steps() -> None:
    sleep = RecordingSleep()
    bench = Bench()
    bench.sequencer = TestSequencer(channel=bench.channel, telemetry=lambda: bench.sample, sleep=sleep)

    await bench.sequencer.run(
        "sweep", {"startThrottle": 0, "endThrottle": 20, "stepSize": 10, "dwell": 0}
    )

    # approach ramp 200 ms (minimum), return ramp 20 % at 20 %/s = 1000 ms
    assert sleep.calls.count(pytest.approx(0.2 / 25)) >= 26
    assert sleep.calls.count(pytest.approx(1.0 / 25)) >= 26


@pytest.mark.asyncio
async def test_throttle_is_clamped_to_active_profile_floor() -> None:
    bench = Bench()
    bench.profiles.replace([{"name": "5inch", "armThrottleRaw": 148}])
    bench.profiles._set_active("5inch")

    await bench.sequencer.run(
        "ir",
        {"baseline": 0, "pulseAmplitude": 10, "pulses": 1, "onDuration": 0, "offDuration": 0},
    )

    values = bench.channel.throttle_values()
    assert min(values) == 148
    assert values == [148, 248, 148]


@pytest.mark.asyncio
async def test_stop_ramps_down_to_floor_and_cancels() -> None:
    bench = Bench()
    task = bench.sequencer.start("endurance", {"throttle": 50, "duration": 1})
    await settle(10)
    assert bench.sequencer.running

    await bench.sequencer.stop()
    run = await task

    assert run.outcome is RunOutcome.CANCELLED
    assert bench.channel.throttle_values()[-1] == 48
    assert bench.sequencer.phase is SequencerPhase.IDLE
    assert ("Stopping analyze...", "warn") in bench.messages
    assert ("endurance analyze stopped", "info") in bench.messages
    assert bench.history.latest() is run


@pytest.mark.asyncio
async def test_stop_when_idle_is_noop() -> None:
    bench = Bench()

    await bench.sequencer.stop()

    assert bench.channel.sent == []


@pytest.mark.asyncio
async def test_cannot_start_while_running() -> None:
    bench = Bench()
    task = bench.sequencer.start("endurance", {"duration": 1})

    with pytest.raises(SequencerError):
        bench.sequencer.start("sweep")

    await bench.sequencer.stop()
    await task


@pytest.mark.asyncio
async def test_command_error_fails_run_and_keeps_partial_data() -> None:
    bench = Bench(fail_at=30)

    run = await bench.sequencer.run(
        "sweep", {"startThrottle": 0, "endThrottle": 50, "stepSize": 10, "dwell": 1}
    )

    assert run.outcome is RunOutcome.FAILED
    assert "GATT error" in run.last_error
    assert bench.sequencer.last_error == run.last_error
    assert any(text.startswith("Error:") for text, _ in bench.messages)
    assert run.samples
    assert bench.history.latest() is run
    assert bench.channel.throttle_values()[-1] == 48
    assert bench.sequencer.phase is SequencerPhase.IDLE


@pytest.mark.asyncio
async def test_kv_waits_for_operator_and_estimates_kv() -> None:
    bench = Bench()

    run = await bench.sequencer.run(
        "kv", {"throttle": 20, "voltageSteps": 3, "dwell": 0.2, "currentCeiling": 10}
    )

    assert run.outcome is RunOutcome.COMPLETED
    assert bench.prompts == [(1, 3), (2, 3), (3, 3)]
    assert [point.voltage for point in run.kv_points] == [11.0, 12.0, 13.0]
    assert run.analysis["kv"]["slope"] == pytest.approx(1000.0)
    assert bench.channel.throttle_values()[-1] == 48


@pytest.mark.asyncio
async def test_kv_current_ceiling_aborts_run() -> None:
    bench = Bench()

    async def hot_prompt(step: int, total: int) -> None:
        bench.sample = TelemetrySample(voltage=12.0, current=25.0, rpm=9000)

    bench.sequencer._voltage_prompt = hot_prompt
    run = await bench.sequencer.run("kv", {"voltageSteps": 2, "dwell": 0.1})

    assert run.outcome is RunOutcome.FAILED
    assert "Current ceiling exceeded" in run.last_error


@pytest.mark.asyncio
async def test_controls_state_follows_connection_and_arming() -> None:
    bench = Bench()
    states = []
    bench.sequencer.add_controls_listener(states.append)

    assert bench.sequencer.controls_state().can_modify

    bench.status = DeviceStatus(0)
    bench.sequencer.refresh_controls()
    assert not states[-1].can_modify

    bench.status = DeviceStatus(int(StatusFlag.MOTOR_ARMED))
    bench.connected = False
    bench.sequencer.refresh_controls()
    assert not states[-1].can_modify
    assert not states[-1].can_stop


@pytest.mark.asyncio
async def test_every_mode_completes_with_short_params() -> None:
    short = {
        "sweep": {"startThrottle": 10, "endThrottle": 20, "stepSize": 10, "dwell": 0},
        "step": {"cycles": 1, "onDuration": 0, "offDuration": 0},
        "endurance": {"duration": 0, "cooldown": 0},
        "ir": {"pulses": 2, "onDuration": 0, "offDuration": 0},
        "kv": {"voltageSteps": 1, "dwell": 0},
        "thermal": {"segment1Duration": 0, "segment2Duration": 0},
        "mapping": {"repeats": 1},
    }
    for mode, params in short.items():
        bench = Bench()
        run = await bench.sequencer.run(mode, params)
        assert run.outcome is RunOutcome.COMPLETED, mode
        assert bench.channel.throttle_values(), mode
