#!/usr/bin/env python3
"""
D-Bus helpers for the orientation trigger.

Provides:
- ServiceConfig: well-known name, object path and interface of a remote service
- connect_bus(): connect to the system or session bus
- NameOwnerWatcher: appear/vanish notifications for a bus name, delivered in order

Usage:
    bus = await connect_bus("system")
    watcher = NameOwnerWatcher(bus, "net.hadess.SensorProxy", on_appeared, on_vanished)
    await watcher.start()
    # ... run ...
    await watcher.stop()
    bus.disconnect()
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from dbus_next import BusType
from dbus_next.aio import MessageBus
from dbus_next.constants import ErrorType
from dbus_next.errors import DBusError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceConfig:
    """Configuration for a D-Bus service."""

    service_name: str
    object_path: str
    interface_name: str


DBUS_DAEMON = ServiceConfig(
    service_name="org.freedesktop.DBus",
    object_path="/org/freedesktop/DBus",
    interface_name="org.freedesktop.DBus",
)

PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

BUS_TYPES = {
    "system": BusType.SYSTEM,
    "session": BusType.SESSION,
}


async def connect_bus(bus_type: str = "system") -> MessageBus:
    """Connect to the named message bus ("system" or "session")."""
    if bus_type not in BUS_TYPES:
        raise ValueError(f"Unknown bus type: {bus_type}. Known: {list(BUS_TYPES.keys())}")

    logger.debug(f"[D-Bus] Connecting to {bus_type} bus...")
    bus = await MessageBus(bus_type=BUS_TYPES[bus_type]).connect()
    logger.debug(f"[D-Bus] Connected as {bus.unique_name}")
    return bus


class NameEvent(Enum):
    APPEARED = "appeared"
    VANISHED = "vanished"


class NameOwnerWatcher:
    """
    Watch a well-known bus name and report when it gains or loses an owner.

    Owner changes are read from the bus daemon's NameOwnerChanged signal and
    the initial owner from GetNameOwner. Transitions are queued and a single
    task awaits the callbacks one at a time, so an appear handler always
    finishes before the following vanish handler starts. A direct hand-over
    from one owner to another is reported as a vanish followed by an appear.

    Args:
        bus: Connected message bus
        name: Well-known name to watch
        on_appeared: Async callback taking the new unique owner name
        on_vanished: Async callback taking no arguments
    """

    def __init__(
        self,
        bus: MessageBus,
        name: str,
        on_appeared: Callable[[str], Awaitable[None]],
        on_vanished: Callable[[], Awaitable[None]],
    ):
        self._bus = bus
        self.name = name
        self._on_appeared = on_appeared
        self._on_vanished = on_vanished

        self._owner = ""
        self._events: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        self._bus_interface = None

    @property
    def owner(self) -> str:
        """Current unique owner of the name, or "" when nobody owns it."""
        return self._owner

    @property
    def is_running(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    async def start(self):
        """Subscribe to owner changes and report the current owner."""
        introspection = await self._bus.introspect(DBUS_DAEMON.service_name, DBUS_DAEMON.object_path)
        proxy = self._bus.get_proxy_object(DBUS_DAEMON.service_name, DBUS_DAEMON.object_path, introspection)
        self._bus_interface = proxy.get_interface(DBUS_DAEMON.interface_name)

        # Subscribe before asking, so no transition falls in between
        self._bus_interface.on_name_owner_changed(self._on_name_owner_changed)

        self._dispatch_task = asyncio.create_task(self._dispatch_events(), name=f"watch_{self.name}")

        self._update_owner(await self._get_name_owner())
        logger.debug(f"Watching bus name {self.name} (owner: {self._owner or 'none'})")

    async def stop(self):
        """Stop watching. Pending events are dropped."""
        if self._bus_interface is not None:
            self._bus_interface.off_name_owner_changed(self._on_name_owner_changed)
            self._bus_interface = None

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

    async def join(self):
        """Wait until every queued transition has been handled."""
        await self._events.join()

    async def _get_name_owner(self) -> str:
        try:
            return await self._bus_interface.call_get_name_owner(self.name)
        except DBusError as e:
            if e.type == ErrorType.NAME_HAS_NO_OWNER.value:
                return ""
            raise

    def _on_name_owner_changed(self, name: str, old_owner: str, new_owner: str):
        if name != self.name:
            return
        logger.debug(f"NameOwnerChanged {name}: '{old_owner}' -> '{new_owner}'")
        self._update_owner(new_owner)

    def _update_owner(self, new_owner: str):
        if new_owner == self._owner:
            return
        if self._owner:
            self._events.put_nowait((NameEvent.VANISHED, self._owner))
        self._owner = new_owner
        if new_owner:
            self._events.put_nowait((NameEvent.APPEARED, new_owner))

    async def _dispatch_events(self):
        while True:
            event, owner = await self._events.get()
            try:
                if event is NameEvent.APPEARED:
                    await self._on_appeared(owner)
                else:
                    await self._on_vanished()
            except Exception as e:
                logger.exception(f"Error handling {event.value} of {self.name}: {e}")
            finally:
                self._events.task_done()
