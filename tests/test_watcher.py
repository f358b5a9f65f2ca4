"""Tests for orientation_trigger/watcher.py - iio-sensor-proxy presence state machine."""

import asyncio
import logging
import shlex
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
from dbus_next.errors import DBusError

from orientation_trigger.context import AgentContext
from orientation_trigger.dispatcher import ChangeDispatcher
from orientation_trigger.watcher import PresenceWatcher, WatchState

from conftest import RecordingRunner


def make_watcher(bus, config, runner):
    context = AgentContext(config, runner=runner)
    dispatcher = ChangeDispatcher(context)
    return PresenceWatcher(bus, context, dispatcher)


def orientations(runner):
    return [shlex.split(call)[1] for call in runner.calls]


async def appear(bus, watcher):
    bus.sensor_appears()
    await watcher.name_watcher.join()


async def vanish(bus, watcher):
    bus.sensor_vanishes()
    await watcher.name_watcher.join()


@pytest.mark.asyncio
class TestAppearance:
    async def test_waits_while_absent(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()
        await watcher.name_watcher.join()

        assert watcher.state is WatchState.IDLE
        assert watcher.claim_attempts == 0
        assert runner.calls == []
        await watcher.stop()

    async def test_already_present_at_start(self, fake_bus, run_config, runner):
        fake_bus.set_initial_owner(":1.42")
        watcher = make_watcher(fake_bus, run_config, runner)

        await watcher.start()
        await watcher.name_watcher.join()

        assert watcher.state is WatchState.ACTIVE
        assert orientations(runner) == ["normal"]
        await watcher.stop()

    async def test_appear_claims_and_runs_initial_state(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        await appear(fake_bus, watcher)

        fake_bus.sensor.call_claim_accelerometer.assert_awaited_once()
        assert watcher.claim_attempts == 1
        assert watcher.state is WatchState.ACTIVE
        assert watcher.context.connection is not None
        assert orientations(runner) == ["normal"]
        await watcher.stop()

    async def test_show_output_announces(self, fake_bus, run_config, runner, caplog):
        watcher = make_watcher(fake_bus, replace(run_config, show_output=True), runner)

        with caplog.at_level(logging.INFO, logger="orientation_trigger"):
            await watcher.start()
            await appear(fake_bus, watcher)
            await vanish(fake_bus, watcher)

        assert "Waiting for iio-sensor-proxy to appear" in caplog.text
        assert "+++ iio-sensor-proxy appeared +++" in caplog.text
        assert "--- iio-sensor-proxy vanished, waiting for it to appear ---" in caplog.text
        await watcher.stop()


@pytest.mark.asyncio
class TestClaimFailure:
    async def test_claim_error_is_fatal(self, fake_bus, run_config, runner, caplog):
        fake_bus.sensor.call_claim_accelerometer = AsyncMock(
            side_effect=DBusError("org.freedesktop.DBus.Error.AccessDenied", "denied")
        )
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        await appear(fake_bus, watcher)

        assert watcher.state is WatchState.TERMINATED
        assert watcher.context.exit_code == 1
        assert watcher.context.connection is None
        assert runner.calls == []
        assert "Failed to claim accelerometer" in caplog.text
        fake_bus.sensor_properties.off_properties_changed.assert_called_once()
        await watcher.stop()

    async def test_claim_cancelled_is_clean(self, fake_bus, run_config, runner):
        claim_started = asyncio.Event()

        async def slow_claim():
            claim_started.set()
            await asyncio.sleep(10)

        fake_bus.sensor.call_claim_accelerometer = AsyncMock(side_effect=slow_claim)
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        fake_bus.sensor_appears()
        await asyncio.wait_for(claim_started.wait(), timeout=1)
        await watcher.stop()

        assert watcher.state is WatchState.TERMINATED
        assert watcher.context.exit_code == 0
        assert watcher.context.connection is None
        assert runner.calls == []

    async def test_events_after_termination_ignored(self, fake_bus, run_config, runner):
        fake_bus.sensor.call_claim_accelerometer = AsyncMock(
            side_effect=DBusError("org.freedesktop.DBus.Error.AccessDenied", "denied")
        )
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        await appear(fake_bus, watcher)
        await vanish(fake_bus, watcher)
        await appear(fake_bus, watcher)

        assert watcher.claim_attempts == 1
        await watcher.stop()


@pytest.mark.asyncio
class TestInitialState:
    async def test_no_accelerometer_exits_cleanly(self, fake_bus, run_config, runner, caplog):
        fake_bus.set_sensor_properties(HasAccelerometer=False, AccelerometerOrientation="undefined")
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        with caplog.at_level(logging.INFO, logger="orientation_trigger"):
            await appear(fake_bus, watcher)

        assert watcher.context.exit_code == 0
        assert watcher.state is WatchState.TERMINATED
        assert runner.calls == []
        assert "No accelerometer. Exiting" in caplog.text
        await watcher.stop()

    async def test_unreadable_capability_is_fatal(self, fake_bus, run_config, runner):
        fake_bus.set_sensor_properties(AccelerometerOrientation="normal")
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        await appear(fake_bus, watcher)

        assert watcher.context.exit_code == 1
        assert runner.calls == []
        await watcher.stop()

    async def test_unreadable_initial_orientation_is_skipped(self, fake_bus, run_config, runner):
        fake_bus.set_sensor_properties(HasAccelerometer=True)
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        await appear(fake_bus, watcher)
        assert runner.calls == []
        assert watcher.state is WatchState.ACTIVE

        fake_bus.emit_properties_changed({"AccelerometerOrientation": "left-up"})
        assert orientations(runner) == ["left-up"]
        await watcher.stop()

    async def test_initial_script_failure_terminates(self, fake_bus, run_config):
        runner = RecordingRunner(exit_codes=[1])
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        await appear(fake_bus, watcher)

        assert watcher.context.exit_code == 1
        assert watcher.state is WatchState.TERMINATED
        await watcher.stop()


@pytest.mark.asyncio
class TestChanges:
    async def test_only_orientation_changes_run_script(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()
        await appear(fake_bus, watcher)

        fake_bus.emit_properties_changed({"AccelerometerOrientation": "left-up"})
        fake_bus.emit_properties_changed({"SomeOtherProp": "x"})
        fake_bus.emit_properties_changed({"LightLevel": 3.0})
        fake_bus.emit_properties_changed({"AccelerometerOrientation": "bottom-up"})

        assert orientations(runner) == ["normal", "left-up", "bottom-up"]
        await watcher.stop()

    async def test_script_failure_stops_further_runs(self, fake_bus, run_config):
        runner = RecordingRunner(exit_codes=[0, 5])
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()
        await appear(fake_bus, watcher)

        fake_bus.emit_properties_changed({"AccelerometerOrientation": "left-up"})
        fake_bus.emit_properties_changed({"AccelerometerOrientation": "right-up"})

        assert orientations(runner) == ["normal", "left-up"]
        assert watcher.context.exit_code == 1
        assert watcher.state is WatchState.TERMINATED
        await watcher.stop()


@pytest.mark.asyncio
class TestVanish:
    async def test_vanish_returns_to_idle_without_running(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()
        await appear(fake_bus, watcher)

        await vanish(fake_bus, watcher)

        assert watcher.state is WatchState.IDLE
        assert watcher.context.connection is None
        assert orientations(runner) == ["normal"]
        fake_bus.sensor_properties.off_properties_changed.assert_called_once()
        await watcher.stop()

    async def test_repeated_cycles(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        for _ in range(5):
            await appear(fake_bus, watcher)
            await vanish(fake_bus, watcher)

        assert watcher.claim_attempts == 5
        assert fake_bus.sensor.call_claim_accelerometer.await_count == 5
        assert fake_bus.sensor_properties.on_properties_changed.call_count == 5
        assert fake_bus.sensor_properties.off_properties_changed.call_count == 5
        assert orientations(runner) == ["normal"] * 5
        assert watcher.state is WatchState.IDLE
        await watcher.stop()

    async def test_capability_rechecked_on_reappearance(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()
        await appear(fake_bus, watcher)
        await vanish(fake_bus, watcher)

        fake_bus.set_sensor_properties(HasAccelerometer=False)
        await appear(fake_bus, watcher)

        assert watcher.context.exit_code == 0
        assert watcher.state is WatchState.TERMINATED
        await watcher.stop()


@pytest.mark.asyncio
class TestStop:
    async def test_stop_releases_claim(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()
        await appear(fake_bus, watcher)

        await watcher.stop()

        fake_bus.sensor.call_release_accelerometer.assert_awaited_once()
        assert watcher.context.connection is None
        fake_bus.bus_daemon.off_name_owner_changed.assert_called_once()

    async def test_stop_while_idle(self, fake_bus, run_config, runner):
        watcher = make_watcher(fake_bus, run_config, runner)
        await watcher.start()

        await watcher.stop()

        fake_bus.sensor.call_release_accelerometer.assert_not_awaited()


@pytest.mark.asyncio
async def test_full_scenario(fake_bus, run_config, runner):
    """normal -> left-up -> unrelated change -> vanish -> reappear without accelerometer."""
    watcher = make_watcher(fake_bus, run_config, runner)
    await watcher.start()

    await appear(fake_bus, watcher)
    assert orientations(runner) == ["normal"]

    fake_bus.emit_properties_changed({"AccelerometerOrientation": "left-up"})
    assert orientations(runner) == ["normal", "left-up"]

    fake_bus.emit_properties_changed({"SomeOtherProp": "x"})
    assert len(runner.calls) == 2

    await vanish(fake_bus, watcher)
    assert watcher.state is WatchState.IDLE
    assert len(runner.calls) == 2

    fake_bus.set_sensor_properties(HasAccelerometer=False, AccelerometerOrientation="undefined")
    await appear(fake_bus, watcher)

    assert watcher.context.exit_code == 0
    assert len(runner.calls) == 2
    assert watcher.claim_attempts == 2
    await watcher.stop()
