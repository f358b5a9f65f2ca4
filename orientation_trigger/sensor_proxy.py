"""
Connection to iio-sensor-proxy.

A SensorProxy exists only while net.hadess.SensorProxy is on the bus. It
subscribes to PropertiesChanged, claims the accelerometer, keeps a cache of
the service's properties and forwards orientation changes to a callback.

D-Bus Service: net.hadess.SensorProxy
Object Path: /net/hadess/SensorProxy
"""

import logging
from enum import Enum
from typing import Any, Callable, Iterable

from dbus_next.aio import MessageBus
from dbus_next.errors import DBusError

from orientation_trigger.base.dbus import PROPERTIES_INTERFACE, ServiceConfig
from orientation_trigger.errors import ClaimError, PropertyReadError

logger = logging.getLogger(__name__)

SENSOR_PROXY = ServiceConfig(
    service_name="net.hadess.SensorProxy",
    object_path="/net/hadess/SensorProxy",
    interface_name="net.hadess.SensorProxy",
)


class SensorProperty(Enum):
    """Properties published on the net.hadess.SensorProxy interface."""

    HAS_ACCELEROMETER = "HasAccelerometer"
    ACCELEROMETER_ORIENTATION = "AccelerometerOrientation"
    ACCELEROMETER_TILT = "AccelerometerTilt"
    HAS_AMBIENT_LIGHT = "HasAmbientLight"
    LIGHT_LEVEL_UNIT = "LightLevelUnit"
    LIGHT_LEVEL = "LightLevel"
    HAS_PROXIMITY = "HasProximity"
    PROXIMITY_NEAR = "ProximityNear"

    @classmethod
    def parse(cls, names: Iterable[str]) -> frozenset["SensorProperty"]:
        """Map D-Bus property names to members. Unknown names are dropped."""
        known = cls._value2member_map_
        return frozenset(known[name] for name in names if name in known)


class SensorProxy:
    """
    Live connection to the sensor service with the accelerometer claimed.

    Args:
        bus: Connected message bus
        on_orientation_changed: Called with the new orientation whenever the
            service reports AccelerometerOrientation changed
        service: Remote service coordinates
    """

    def __init__(
        self,
        bus: MessageBus,
        on_orientation_changed: Callable[[str], Any],
        service: ServiceConfig = SENSOR_PROXY,
    ):
        self._bus = bus
        self._on_orientation_changed = on_orientation_changed
        self.service = service

        self._sensor = None
        self._properties = None
        self._cache: dict[str, Any] = {}
        self._claimed = False

    @property
    def is_claimed(self) -> bool:
        """Whether ClaimAccelerometer succeeded and the cache is filled."""
        return self._claimed

    @property
    def cached_properties(self) -> dict[str, Any]:
        """Copy of the property cache."""
        return dict(self._cache)

    async def connect(self):
        """
        Subscribe to property changes, claim the accelerometer and load
        the current properties.

        Raises:
            ClaimError: the service could not be reached or refused the claim
            asyncio.CancelledError: the claim was cancelled (shutdown)
        """
        name = self.service.service_name
        try:
            introspection = await self._bus.introspect(name, self.service.object_path)
            proxy = self._bus.get_proxy_object(name, self.service.object_path, introspection)
            self._sensor = proxy.get_interface(self.service.interface_name)
            self._properties = proxy.get_interface(PROPERTIES_INTERFACE)

            self._properties.on_properties_changed(self._on_properties_changed)

            await self._sensor.call_claim_accelerometer()
            values = await self._properties.call_get_all(self.service.interface_name)
        except DBusError as e:
            raise ClaimError(e.text or e.type) from e

        self._cache.update({key: variant.value for key, variant in values.items()})
        self._claimed = True
        logger.debug(f"Accelerometer claimed on {name}")

    async def release(self):
        """Release the accelerometer if the service is still there."""
        if not self._claimed or self._sensor is None:
            return
        try:
            await self._sensor.call_release_accelerometer()
            logger.debug("Accelerometer released")
        except DBusError as e:
            logger.warning(f"Failed to release accelerometer: {e.text or e.type}")
        self._claimed = False

    def close(self):
        """Drop the subscription and everything cached for this connection."""
        if self._properties is not None:
            self._properties.off_properties_changed(self._on_properties_changed)
        self._properties = None
        self._sensor = None
        self._cache.clear()
        self._claimed = False

    def read_capability_flag(self) -> bool:
        return self._read(SensorProperty.HAS_ACCELEROMETER, bool)

    def read_orientation(self) -> str:
        return self._read(SensorProperty.ACCELEROMETER_ORIENTATION, str)

    def _read(self, prop: SensorProperty, expected: type):
        try:
            value = self._cache[prop.value]
        except KeyError:
            raise PropertyReadError(prop.value, "not available") from None
        if not isinstance(value, expected):
            raise PropertyReadError(prop.value, f"expected {expected.__name__}, got {type(value).__name__}")
        return value

    def _on_properties_changed(self, interface_name: str, changed: dict, invalidated: list):
        if interface_name != self.service.interface_name:
            return

        for key, variant in changed.items():
            self._cache[key] = variant.value
        for key in invalidated:
            self._cache.pop(key, None)

        properties = SensorProperty.parse([*changed, *invalidated])
        if SensorProperty.ACCELEROMETER_ORIENTATION not in properties:
            return

        if not self._claimed:
            # Initial state is read right after the claim
            logger.debug("Orientation changed before claim completed")
            return

        try:
            orientation = self.read_orientation()
        except PropertyReadError as e:
            logger.error(f"Skipping orientation change: {e}")
            return

        self._on_orientation_changed(orientation)
