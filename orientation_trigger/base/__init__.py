"""
Base infrastructure for the orientation trigger daemon.

- BaseDaemon: Base class with CLI, signals, exit status and lifecycle management
- InstanceLock: lock and pid files, one agent at a time
- ServiceConfig / connect_bus / NameOwnerWatcher: D-Bus plumbing
"""

from orientation_trigger.base.daemon import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    BaseDaemon,
    InstanceLock,
    watchdog_interval,
    sd_notify,
)
from orientation_trigger.base.dbus import (
    DBUS_DAEMON,
    PROPERTIES_INTERFACE,
    NameEvent,
    NameOwnerWatcher,
    ServiceConfig,
    connect_bus,
)

__all__ = [
    # daemon.py
    "BaseDaemon",
    "InstanceLock",
    "EXIT_SUCCESS",
    "EXIT_FAILURE",
    "sd_notify",
    "watchdog_interval",
    # dbus.py
    "ServiceConfig",
    "DBUS_DAEMON",
    "PROPERTIES_INTERFACE",
    "NameEvent",
    "NameOwnerWatcher",
    "connect_bus",
]
