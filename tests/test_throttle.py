import pytest

from conftest import RecordingSleep
from motorbench.core.models import TelemetrySample
from motorbench.core.throttle import arm_floor_percent, percent_to_raw, raw_to_percent
from motorbench.sequencer import CancellationToken, RunCancelled, ThrottleController
from motorbench.sequencer.sampler import Sampler


class RecordingChannel:
    def __init__(self) -> None:
        self.values = []

    async def send(self, cmd, payload=None):
        assert cmd == "set_throttle"
        self.values.append(payload["value"])


@pytest.mark.parametrize(
    "percent, raw",
    [(0, 48), (100, 2047), (50, 1048), (10, 248), (-5, 48), (150, 2047), (0.025, 48), (0.026, 49)],
)
def test_percent_to_raw(percent: float, raw: int) -> None:
    assert percent_to_raw(percent) == raw


def test_arm_floor_percent() -> None:
    assert arm_floor_percent(None) == 0.0
    assert arm_floor_percent(48) == 0.0
    assert arm_floor_percent(2047) == 100.0
    assert percent_to_raw(arm_floor_percent(148)) == 148
    assert raw_to_percent(1048) == pytest.approx(100000 / 1999)
    assert raw_to_percent(percent_to_raw(50)) == pytest.approx(50.0, abs=0.03)


@pytest.mark.asyncio
async def test_ramp_sends_both_endpoints_in_26_steps() -> None:
    channel = RecordingChannel()
    sleep = RecordingSleep()
    controller = ThrottleController(channel, floor_percent=lambda: 0.0, sleep=sleep)

    await controller.ramp(0.0, 50.0, 2500)

    assert channel.values == [percent_to_raw(50 / 25 * i) for i in range(26)]
    assert channel.values[0] == 48
    assert channel.values[-1] == 1048
    assert sleep.calls == [pytest.approx(0.1)] * 26
    assert controller.current_percent == 50.0


@pytest.mark.asyncio
async def test_send_clamps_to_floor_and_reports_first_send() -> None:
    channel = RecordingChannel()
    first = []
    controller = ThrottleController(
        channel,
        floor_percent=lambda: arm_floor_percent(148),
        sleep=RecordingSleep(),
        on_first_send=lambda: first.append(True),
    )

    sent = await controller.send_throttle(0.0)
    await controller.send_throttle(30.0)

    assert channel.values == [148, percent_to_raw(30.0)]
    assert sent == pytest.approx(arm_floor_percent(148))
    assert first == [True]
    assert controller.commands_sent == 2


@pytest.mark.asyncio
async def test_ramp_stops_at_cancelled_token() -> None:
    channel = RecordingChannel()
    controller = ThrottleController(channel, floor_percent=lambda: 0.0, sleep=RecordingSleep())
    token = CancellationToken()
    token.cancel("operator")

    with pytest.raises(RunCancelled, match="operator"):
        await controller.ramp(0.0, 50.0, 1000, token=token)

    assert channel.values == []


@pytest.mark.asyncio
async def test_ramp_to_floor_ignores_tokens() -> None:
    channel = RecordingChannel()
    controller = ThrottleController(channel, floor_percent=lambda: 0.0, sleep=RecordingSleep())
    await controller.send_throttle(40.0)

    await controller.ramp_to_floor(500)

    assert len(channel.values) == 27
    assert channel.values[-1] == 48


@pytest.mark.asyncio
async def test_hold_sleeps_in_bounded_chunks() -> None:
    sleep = RecordingSleep()
    controller = ThrottleController(RecordingChannel(), floor_percent=lambda: 0.0, sleep=sleep)
    ticks = []

    await controller.hold(2.5, on_tick=ticks.append)

    assert sleep.calls == [1.0, 1.0, 0.5]
    assert ticks == [0.0, 1.0, 2.0]


@pytest.mark.asyncio
async def test_sampler_pairs_telemetry_with_commanded_throttle() -> None:
    clock = iter([10.0, 10.2, 10.4])
    sampler = Sampler(
        telemetry=lambda: TelemetrySample(throttle_pct=99.0, voltage=12.0),
        throttle=lambda: 25.0,
        clock=lambda: next(clock),
    )

    sampler._started_at = 10.0
    first = sampler.sample_now()
    second = sampler.sample_now()

    assert first.throttle_pct == 25.0
    assert first.voltage == 12.0
    assert first.timestamp == pytest.approx(0.0)
    assert second.timestamp == pytest.approx(0.2)
    assert await sampler.stop() == [first, second]
