from pathlib import Path

import pytest

from conftest import FakeTransport, instant_sleep, settle
from motorbench.app import BenchApp
from motorbench.config import load_config
from motorbench.core.models import RunOutcome
from motorbench.core.status import StatusFlag
from motorbench.history import HistoryStore, JsonKeyValueStore


def _app(tmp_path: Path, transport: FakeTransport, **config_overrides) -> BenchApp:
    config = load_config(tmp_path / "motorbench.cfg")
    config.history.path = tmp_path / "history.json"
    for key, value in config_overrides.items():
        section, _, attr = key.partition("__")
        setattr(getattr(config, section), attr, value)
    return BenchApp(config, transport=transport, sleep=instant_sleep)


async def _components(app: BenchApp):
    snapshot = await app.health.snapshot()
    return {item["name"]: item for item in snapshot["components"]}


@pytest.mark.asyncio
async def test_run_through_app_persists_history(tmp_path: Path, transport: FakeTransport) -> None:
    app = _app(tmp_path, transport)
    await app.start_services()
    await app.connect()
    transport.tx.notify({"type": "data", "voltage": 16.2, "current": 3.0, "rpm": 12000})

    run = await app.run_test(
        "sweep", {"startThrottle": 0, "endThrottle": 10, "stepSize": 10, "dwell": 0}
    )
    await settle()

    assert run.outcome is RunOutcome.COMPLETED
    assert "set_throttle" in transport.rx.names()
    assert app.history.latest() is run
    stored = HistoryStore(JsonKeyValueStore(tmp_path / "history.json")).load()
    assert [item.run_id for item in stored] == [run.run_id]

    components = await _components(app)
    assert components["ble"]["healthy"] is True
    assert components["sequencer"]["healthy"] is True
    assert components["sequencer"]["detail"] == "idle"

    await app.stop_services()
    assert not app.session.is_connected


@pytest.mark.asyncio
async def test_lost_connection_is_reported(tmp_path: Path, transport: FakeTransport) -> None:
    app = _app(tmp_path, transport)
    await app.start_services()
    await app.connect()
    transport.tx.notify({"type": "profiles", "profiles": [{"name": "5inch"}]})
    assert app.profiles.profiles

    transport.link.drop()
    await settle()

    components = await _components(app)
    assert components["ble"]["healthy"] is False
    assert components["ble"]["detail"] == "connection lost"
    assert (await app.health.snapshot())["session"] == "disconnected"
    assert app.profiles.profiles == []

    await app.stop_services()


@pytest.mark.asyncio
async def test_watchdog_disarms_idle_motor(tmp_path: Path, transport: FakeTransport) -> None:
    app = _app(tmp_path, transport)
    await app.start_services()
    await app.connect()

    transport.tx.notify({"type": "status", "status": int(StatusFlag.MOTOR_ARMED)})
    await settle(40)

    assert "disarm" in transport.rx.names()
    assert app.watchdog.disarm_count == 1
    components = await _components(app)
    assert components["watchdog"]["data"]["disarmCount"] == 1

    await app.stop_services()


@pytest.mark.asyncio
async def test_manual_throttle_and_arming(tmp_path: Path, transport: FakeTransport) -> None:
    app = _app(tmp_path, transport, watchdog__enabled=False)
    await app.start_services()
    await app.connect()

    await app.arm()
    await app.set_throttle(10)
    await app.disarm()

    names = [name for name in transport.rx.names() if name != "get_version"]
    assert names == ["arm", "set_throttle", "disarm"]
    assert transport.rx.throttle_values() == [248]

    await app.stop_services()


@pytest.mark.asyncio
async def test_disconnect_without_connection_is_noop(
    tmp_path: Path, transport: FakeTransport
) -> None:
    app = _app(tmp_path, transport)

    await app.disconnect()

    assert transport.links == []
