#!/usr/bin/env python3
"""
Orientation Trigger Daemon

Waits for iio-sensor-proxy on the system bus, claims its accelerometer and
runs a script every time the screen orientation changes. The script gets
the orientation ("normal", "bottom-up", "left-up", "right-up" or
"undefined") as its only argument.

Features:
- Survives iio-sensor-proxy restarts (re-claims when it reappears)
- Runs the script once with the current orientation on every claim
- Stops with failure when the script exits non-zero
- Single instance enforcement (lock file)
- Systemd notify/watchdog support

Usage:
    python -m orientation_trigger --path ~/bin/rotate.sh        # Run daemon
    python -m orientation_trigger -p ~/bin/rotate.sh -o         # Log each run
    python -m orientation_trigger --status                      # Check if running
    python -m orientation_trigger --stop                        # Stop running daemon

Systemd:
    systemctl --user start orientation-trigger
    systemctl --user status orientation-trigger
"""

import argparse
import logging
import sys
from typing import Optional

from orientation_trigger.base.daemon import EXIT_FAILURE, BaseDaemon
from orientation_trigger.base.dbus import connect_bus
from orientation_trigger.config import (
    RunConfiguration,
    build_run_configuration,
    get_config_section,
    get_setting,
    load_config,
)
from orientation_trigger.context import AgentContext
from orientation_trigger.dispatcher import ChangeDispatcher
from orientation_trigger.errors import ConfigError
from orientation_trigger.runner import CommandRunner
from orientation_trigger.watcher import PresenceWatcher, WatchState

logger = logging.getLogger(__name__)


class OrientationTriggerDaemon(BaseDaemon):
    """Runs the user's script on accelerometer orientation changes."""

    name = "orientation-trigger"
    description = "Run a script whenever the screen orientation changes"

    def __init__(
        self,
        config: RunConfiguration,
        verbose: bool = False,
        runner: Optional[CommandRunner] = None,
        lock_dir: str = "/tmp",
    ):
        super().__init__(verbose=verbose, lock_dir=lock_dir)
        self.config = config
        self.context = AgentContext(config, runner=runner, on_terminate=self.terminate)
        self.dispatcher = ChangeDispatcher(self.context)
        self._bus = None
        self._watcher: Optional[PresenceWatcher] = None

    @property
    def watcher(self) -> Optional[PresenceWatcher]:
        return self._watcher

    async def startup(self):
        """Connect to the bus and start following iio-sensor-proxy."""
        self._bus = await connect_bus(self.config.bus_type)
        self._watcher = PresenceWatcher(self._bus, self.context, self.dispatcher)
        await self._watcher.start()

    async def run_daemon(self):
        await self._shutdown_event.wait()

    async def shutdown(self):
        """Release the accelerometer and disconnect."""
        if self._watcher:
            await self._watcher.stop()
            self._watcher = None
        if self._bus:
            self._bus.disconnect()
            self._bus = None
        logger.debug(f"{self.name} stopped (exit status {self.exit_code})")

    async def health_check(self) -> dict:
        """Healthy while the bus is up and the watcher has not given up."""
        bus_ok = self._bus is not None and self._bus.connected
        state = self._watcher.state if self._watcher else WatchState.IDLE
        healthy = bus_ok and state is not WatchState.TERMINATED
        return {
            "healthy": healthy,
            "checks": {"bus_connected": bus_ok, "state": state.value},
            "script_runs": self.dispatcher.runs,
            "message": "Service is healthy" if healthy else "Service is unhealthy",
        }

    @classmethod
    def create_argument_parser(cls) -> argparse.ArgumentParser:
        """Create argument parser with orientation trigger arguments."""
        parser = super().create_argument_parser()
        parser.add_argument(
            "-p",
            "--path",
            help="Path to script to run. First param ($1) of script is screen orientation",
        )
        parser.add_argument(
            "-o",
            "--show_output",
            "--show-output",
            dest="show_output",
            action="store_true",
            default=None,
            help="Show an output when the screen orientation changes",
        )
        parser.add_argument(
            "--config",
            help="Path to config.json (default: ./config.json, ~/.config/orientation-trigger/config.json)",
        )
        parser.add_argument(
            "--session-bus",
            action="store_const",
            const="session",
            dest="bus",
            help="Watch the session bus instead of the system bus",
        )
        return parser

    @classmethod
    def configuration_from_args(cls, parsed: argparse.Namespace) -> RunConfiguration:
        """
        Merge CLI options over config.json and validate the result.

        Raises:
            ConfigError: no script given, or the script/working directory is unusable
        """
        settings = get_config_section(load_config(parsed.config))

        script_path = parsed.path or get_setting(settings, "script", str, "")
        if parsed.show_output is not None:
            show_output = parsed.show_output
        else:
            show_output = get_setting(settings, "show_output", bool, False)
        bus_type = parsed.bus or get_setting(settings, "bus", str, "system")

        return build_run_configuration(script_path, show_output=show_output, bus_type=bus_type)

    @classmethod
    def main(cls, args: Optional[list] = None):
        """
        Main entry point for the daemon.

        Args:
            args: Command line arguments (defaults to sys.argv)
        """
        parser = cls.create_argument_parser()
        parsed = parser.parse_args(args)

        if parsed.status:
            sys.exit(cls.report_status())

        if parsed.stop:
            sys.exit(cls.stop_running())

        cls.configure_logging(verbose=parsed.verbose)

        try:
            config = cls.configuration_from_args(parsed)
        except ConfigError as e:
            if not parsed.path:
                parser.print_help()
            print(str(e))
            sys.exit(EXIT_FAILURE)

        daemon = cls(config, verbose=parsed.verbose)
        sys.exit(daemon.run())


def main():
    """Console script entry point."""
    OrientationTriggerDaemon.main()


if __name__ == "__main__":
    main()
