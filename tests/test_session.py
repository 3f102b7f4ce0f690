import asyncio

import pytest

from conftest import FakeTransport, GatedSleep, RecordingSleep, settle
from motorbench.channel import CommandChannel, NotConnectedError
from motorbench.config import DeviceConfig
from motorbench.constants import NUS_SERVICE_UUID
from motorbench.core.status import StatusFlag
from motorbench.session import DeviceSession, SessionError, SessionState
from motorbench.telemetry import TelemetryDecoder
from motorbench.watchdog import SafetyWatchdog, WatchdogState


def _session(transport: FakeTransport, *, sleep=None, config=None):
    sleep = sleep or RecordingSleep()
    channel = CommandChannel(inter_command_delay=0.0, sleep=sleep)
    decoder = TelemetryDecoder()
    watchdog = SafetyWatchdog(channel, grace_seconds=2.0, sleep=GatedSleep())
    session = DeviceSession(
        transport=transport,
        channel=channel,
        decoder=decoder,
        watchdog=watchdog,
        config=config or DeviceConfig(version_request_delay_seconds=1.0),
        sleep=sleep,
    )
    return session, channel, decoder, watchdog


@pytest.mark.asyncio
async def test_connect_binds_channel_and_subscribes(transport: FakeTransport) -> None:
    session, channel, decoder, _ = _session(transport)
    connected = []
    session.add_connected_listener(connected.append)

    handle = await session.connect()

    assert handle is transport.peripheral
    assert session.state is SessionState.CONNECTED
    assert session.is_connected
    assert channel.is_bound
    assert transport.tx.callback is not None
    assert session.app_info == "motorbench-fw"
    assert connected == [transport.peripheral]
    assert transport.requests[0]["service_uuid"] == NUS_SERVICE_UUID

    transport.tx.notify({"type": "data", "voltage": 15.2})
    assert decoder.last_telemetry.voltage == 15.2


@pytest.mark.asyncio
async def test_connect_requests_version_after_delay(transport: FakeTransport) -> None:
    sleep = RecordingSleep()
    session, _, _, _ = _session(transport, sleep=sleep)

    await session.connect()
    await settle()

    assert 1.0 in sleep.calls
    assert transport.rx.names() == ["get_version"]


@pytest.mark.asyncio
async def test_connect_without_app_discovery_service_still_succeeds() -> None:
    transport = FakeTransport(app_info=None)
    session, _, _, _ = _session(transport)

    await session.connect()

    assert session.is_connected
    assert session.app_info is None


@pytest.mark.asyncio
async def test_connect_passes_device_filters() -> None:
    transport = FakeTransport()
    session, _, _, _ = _session(
        transport, config=DeviceConfig(scan_all_devices=True, device_name="MotorBench-07")
    )

    await session.connect()

    assert transport.requests[0]["accept_all"] is True
    assert transport.requests[0]["name"] == "MotorBench-07"


@pytest.mark.parametrize(
    "transport",
    [
        FakeTransport(fail_select=True),
        FakeTransport(fail_connect=True),
        FakeTransport(with_nus=False),
    ],
)
@pytest.mark.asyncio
async def test_failed_connect_tears_down(transport: FakeTransport) -> None:
    session, channel, _, _ = _session(transport)
    disconnected = []
    session.add_disconnected_listener(disconnected.append)

    with pytest.raises(SessionError):
        await session.connect()

    assert session.state is SessionState.DISCONNECTED
    assert not channel.is_bound
    assert session.device is None
    assert disconnected == []
    with pytest.raises(NotConnectedError):
        await channel.send("arm")


@pytest.mark.asyncio
async def test_connect_twice_is_rejected(transport: FakeTransport) -> None:
    session, _, _, _ = _session(transport)
    await session.connect()

    with pytest.raises(SessionError):
        await session.connect()


@pytest.mark.asyncio
async def test_requested_disconnect_tears_down_once(transport: FakeTransport) -> None:
    session, channel, decoder, _ = _session(transport)
    events = []
    session.add_disconnected_listener(events.append)
    await session.connect()
    transport.tx.notify({"type": "version", "firmware": "1.0"})

    await session.disconnect()

    assert events == [True]
    assert transport.tx.stopped
    assert transport.link.disconnect_calls == 1
    assert session.state is SessionState.DISCONNECTED
    assert not channel.is_bound
    assert decoder.firmware_version is None


@pytest.mark.asyncio
async def test_disconnect_without_device_is_noop(transport: FakeTransport) -> None:
    session, _, _, _ = _session(transport)
    events = []
    session.add_disconnected_listener(events.append)

    await session.disconnect()

    assert events == []
    assert session.state is SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_unsolicited_disconnect_clears_session_and_watchdog(
    transport: FakeTransport,
) -> None:
    session, channel, _, watchdog = _session(transport)
    events = []
    session.add_disconnected_listener(events.append)
    await session.connect()

    transport.tx.notify({"type": "status", "status": int(StatusFlag.MOTOR_ARMED)})
    await settle()
    assert watchdog.state is WatchdogState.PENDING_DISARM

    transport.link.drop()
    transport.link.drop()

    assert events == [False]
    assert session.state is SessionState.DISCONNECTED
    assert watchdog.state is WatchdogState.IDLE
    assert not channel.is_bound


@pytest.mark.asyncio
async def test_stale_link_callback_is_ignored(transport: FakeTransport) -> None:
    session, _, _, _ = _session(transport)
    events = []
    session.add_disconnected_listener(events.append)

    await session.connect()
    first_link = transport.link
    await session.disconnect()
    await session.connect()

    first_link.drop()

    assert session.is_connected
    assert events == [True]


@pytest.mark.asyncio
async def test_set_device_id_validates_range(transport: FakeTransport) -> None:
    session, _, _, _ = _session(transport, config=DeviceConfig(version_request_delay_seconds=0))
    await session.connect()

    await session.set_device_id(7)
    with pytest.raises(ValueError):
        await session.set_device_id(256)

    assert {"cmd": "set_dev_id", "value": 7} in [
        {key: value for key, value in item.items() if key != "timestamp"}
        for item in transport.rx.commands
    ]


@pytest.mark.asyncio
async def test_disconnect_while_connecting_leaves_clean_state() -> None:
    gate = asyncio.Event()
    transport = FakeTransport(connect_gate=gate)
    session, channel, _, _ = _session(transport)
    connected = []
    disconnected = []
    session.add_connected_listener(connected.append)
    session.add_disconnected_listener(disconnected.append)

    connecting = asyncio.create_task(session.connect())
    await settle()
    assert session.state is SessionState.CONNECTING

    await session.disconnect()
    gate.set()

    with pytest.raises(SessionError, match="connect aborted"):
        await connecting

    assert session.state is SessionState.DISCONNECTED
    assert not channel.is_bound
    assert not transport.link.is_connected
    assert transport.tx.callback is None
    assert connected == []
    assert disconnected == [True]

    await session.connect()
    assert session.is_connected

    transport.link.drop()
    await settle()
    assert session.state is SessionState.DISCONNECTED
    assert disconnected == [True, False]
