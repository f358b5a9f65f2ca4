"""Pytest configuration and shared fixtures."""

import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from dbus_next import Variant
from dbus_next.constants import ErrorType
from dbus_next.errors import DBusError

# Add project root
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from orientation_trigger.base.dbus import DBUS_DAEMON, PROPERTIES_INTERFACE  # noqa: E402
from orientation_trigger.config import RunConfiguration  # noqa: E402
from orientation_trigger.runner import CommandRunner  # noqa: E402
from orientation_trigger.sensor_proxy import SENSOR_PROXY  # noqa: E402

SENSOR_OWNER = ":1.42"


def variant(value) -> Variant:
    """Wrap a Python value the way dbus-next delivers a{sv} entries."""
    if isinstance(value, bool):
        return Variant("b", value)
    if isinstance(value, float):
        return Variant("d", value)
    if isinstance(value, int):
        return Variant("u", value)
    return Variant("s", value)


# ============================================================================
# Fake message bus
# ============================================================================


class FakeBus:
    """
    Minimal stand-in for dbus_next.aio.MessageBus.

    Every (service, interface) pair maps to one MagicMock, so tests can
    configure replies and fire signal handlers registered through on_*().
    """

    def __init__(self):
        self.connected = True
        self.unique_name = ":1.1"
        self.introspect = AsyncMock(return_value=MagicMock(name="introspection"))
        self.disconnect = MagicMock()
        self._interfaces: dict[tuple[str, str], MagicMock] = {}

        bus_daemon = self.interface(DBUS_DAEMON.service_name, DBUS_DAEMON.interface_name)
        bus_daemon.call_get_name_owner = AsyncMock(
            side_effect=DBusError(ErrorType.NAME_HAS_NO_OWNER, "Could not get owner of name")
        )

        sensor = self.sensor
        sensor.call_claim_accelerometer = AsyncMock(return_value=None)
        sensor.call_release_accelerometer = AsyncMock(return_value=None)
        self.set_sensor_properties(HasAccelerometer=True, AccelerometerOrientation="normal")

    def interface(self, service: str, interface: str) -> MagicMock:
        key = (service, interface)
        if key not in self._interfaces:
            self._interfaces[key] = MagicMock(name=f"{service}:{interface}")
        return self._interfaces[key]

    def get_proxy_object(self, service: str, path: str, introspection):
        proxy = MagicMock(name=f"proxy:{service}{path}")
        proxy.get_interface.side_effect = lambda name: self.interface(service, name)
        return proxy

    # ==================== Bus daemon ====================

    @property
    def bus_daemon(self) -> MagicMock:
        return self.interface(DBUS_DAEMON.service_name, DBUS_DAEMON.interface_name)

    def set_initial_owner(self, owner: str):
        self.bus_daemon.call_get_name_owner = AsyncMock(return_value=owner)

    def change_owner(self, name: str, old_owner: str, new_owner: str):
        handler = self.bus_daemon.on_name_owner_changed.call_args[0][0]
        handler(name, old_owner, new_owner)

    def sensor_appears(self, owner: str = SENSOR_OWNER):
        self.change_owner(SENSOR_PROXY.service_name, "", owner)

    def sensor_vanishes(self, owner: str = SENSOR_OWNER):
        self.change_owner(SENSOR_PROXY.service_name, owner, "")

    # ==================== Sensor service ====================

    @property
    def sensor(self) -> MagicMock:
        return self.interface(SENSOR_PROXY.service_name, SENSOR_PROXY.interface_name)

    @property
    def sensor_properties(self) -> MagicMock:
        return self.interface(SENSOR_PROXY.service_name, PROPERTIES_INTERFACE)

    def set_sensor_properties(self, **values):
        self.sensor_properties.call_get_all = AsyncMock(
            return_value={key: variant(value) for key, value in values.items()}
        )

    def emit_properties_changed(self, changed: dict, invalidated=(), interface=SENSOR_PROXY.interface_name):
        handler = self.sensor_properties.on_properties_changed.call_args[0][0]
        handler(interface, {key: variant(value) for key, value in changed.items()}, list(invalidated))


class RecordingRunner(CommandRunner):
    """CommandRunner that records command lines instead of running them."""

    def __init__(self, exit_codes=None):
        self.calls: list[str] = []
        self._exit_codes = list(exit_codes or [])

    def run(self, command_line: str) -> int:
        self.calls.append(command_line)
        if self._exit_codes:
            return self._exit_codes.pop(0)
        return 0


@pytest.fixture
def fake_bus():
    """Fake message bus with iio-sensor-proxy absent."""
    return FakeBus()


@pytest.fixture
def runner():
    """Runner that records every command line and succeeds."""
    return RecordingRunner()


@pytest.fixture
def run_config():
    """Configuration for an absolute script path."""
    return RunConfiguration(script_path="/usr/local/bin/rotate.sh")


@pytest.fixture(autouse=True)
def setup_env():
    """Keep systemd notification variables out of the tests."""
    original_env = dict(os.environ)
    os.environ.pop("NOTIFY_SOCKET", None)
    os.environ.pop("WATCHDOG_USEC", None)

    yield

    os.environ.clear()
    os.environ.update(original_env)
