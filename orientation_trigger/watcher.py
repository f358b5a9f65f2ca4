"""
Presence tracking for iio-sensor-proxy.

State machine:

    IDLE --appear--> CONNECTING --claimed--> ACTIVE --vanish--> IDLE
                     CONNECTING --claim failed/cancelled--> TERMINATED

Appear and vanish events arrive one at a time from NameOwnerWatcher, so a
vanish is never handled while an appear is still connecting.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable

from dbus_next.aio import MessageBus

from orientation_trigger.base.daemon import EXIT_FAILURE, EXIT_SUCCESS, sd_notify
from orientation_trigger.base.dbus import NameOwnerWatcher, ServiceConfig
from orientation_trigger.context import AgentContext
from orientation_trigger.dispatcher import ChangeDispatcher
from orientation_trigger.errors import PropertyReadError
from orientation_trigger.sensor_proxy import SENSOR_PROXY, SensorProxy

logger = logging.getLogger(__name__)


class WatchState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    TERMINATED = "terminated"


STATUS_MESSAGES = {
    WatchState.IDLE: "Waiting for iio-sensor-proxy",
    WatchState.CONNECTING: "Claiming accelerometer",
    WatchState.ACTIVE: "Accelerometer claimed",
    WatchState.TERMINATED: "Stopping",
}


class PresenceWatcher:
    """
    Follows iio-sensor-proxy on the bus and keeps at most one claimed
    connection to it.

    Args:
        bus: Connected message bus
        context: Shared agent context
        dispatcher: Receives the initial and every changed orientation
        proxy_factory: Builds the connection; called as
            proxy_factory(bus, on_orientation_changed, service)
        service: Remote service coordinates
    """

    def __init__(
        self,
        bus: MessageBus,
        context: AgentContext,
        dispatcher: ChangeDispatcher,
        proxy_factory: Callable[..., SensorProxy] = SensorProxy,
        service: ServiceConfig = SENSOR_PROXY,
    ):
        self._bus = bus
        self.context = context
        self.dispatcher = dispatcher
        self._proxy_factory = proxy_factory
        self._service = service
        self._state = WatchState.IDLE
        self.claim_attempts = 0
        self._name_watcher = NameOwnerWatcher(
            bus, service.service_name, self._handle_appeared, self._handle_vanished
        )

    @property
    def state(self) -> WatchState:
        if self.context.is_terminating:
            return WatchState.TERMINATED
        return self._state

    @property
    def name_watcher(self) -> NameOwnerWatcher:
        return self._name_watcher

    async def start(self):
        """Start following the service. Returns once the watch is set up."""
        await self._name_watcher.start()
        self._announce("Waiting for iio-sensor-proxy to appear")

    async def stop(self):
        """Stop following the service and give back the accelerometer."""
        await self._name_watcher.stop()
        connection = self.context.detach()
        if connection is not None:
            await connection.release()
            connection.close()
        self._set_state(WatchState.TERMINATED)

    # ==================== Name owner events ====================

    async def _handle_appeared(self, owner: str):
        if self.state is WatchState.TERMINATED:
            logger.debug(f"Ignoring appearance of {owner}, agent is stopping")
            return

        self._announce("+++ iio-sensor-proxy appeared +++")
        self._set_state(WatchState.CONNECTING)

        proxy = self._proxy_factory(self._bus, self.dispatcher.on_orientation_changed, self._service)
        self.claim_attempts += 1
        try:
            await proxy.connect()
        except asyncio.CancelledError:
            proxy.close()
            self._set_state(WatchState.TERMINATED)
            self.context.terminate(EXIT_SUCCESS)
            raise
        except Exception as e:
            proxy.close()
            logger.warning(f"Failed to claim accelerometer: {e}")
            self._set_state(WatchState.TERMINATED)
            self.context.terminate(EXIT_FAILURE)
            return

        self.context.attach(proxy)
        self._set_state(WatchState.ACTIVE)
        self._process_initial_state(proxy)

    async def _handle_vanished(self):
        connection = self.context.detach()
        if connection is None:
            return
        connection.close()

        if self.state is WatchState.TERMINATED:
            return
        self._set_state(WatchState.IDLE)
        self._announce("--- iio-sensor-proxy vanished, waiting for it to appear ---")

    def _process_initial_state(self, proxy: SensorProxy):
        try:
            has_accelerometer = proxy.read_capability_flag()
        except PropertyReadError as e:
            self.context.terminate(EXIT_FAILURE, f"Cannot read accelerometer state: {e}")
            return

        if not has_accelerometer:
            self.context.terminate(EXIT_SUCCESS, "No accelerometer. Exiting")
            return

        try:
            orientation = proxy.read_orientation()
        except PropertyReadError as e:
            logger.error(f"Skipping initial orientation: {e}")
            return

        self.dispatcher.on_orientation_changed(orientation)

    # ==================== Helpers ====================

    def _set_state(self, state: WatchState):
        if state is self._state:
            return
        logger.debug(f"Watcher state: {self._state.value} -> {state.value}")
        self._state = state
        sd_notify(f"STATUS={STATUS_MESSAGES[state]}")

    def _announce(self, message: str):
        if self.context.config.show_output:
            logger.info(message)
