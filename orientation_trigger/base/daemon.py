#!/usr/bin/env python3
"""
Process lifecycle for the orientation trigger.

- InstanceLock: one agent per user, so two never fight over the claim
- BaseDaemon: startup/run/shutdown on one event loop, SIGTERM/SIGINT,
  the process exit status and the --status/--stop/-v options
- sd_notify(): readiness and STATUS lines for a Type=notify unit

Lifecycle lines are logged at DEBUG; a quiet run only prints what the
agent itself decides to say.
"""

import argparse
import asyncio
import fcntl
import logging
import os
import signal
import socket
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


# =============================================================================
# SYSTEMD
# =============================================================================


def sd_notify(state: str) -> bool:
    """
    Write one datagram to $NOTIFY_SOCKET.

    Returns:
        False when not started by systemd or the socket is gone
    """
    address = os.environ.get("NOTIFY_SOCKET")
    if not address:
        return False
    if address.startswith("@"):
        address = "\0" + address[1:]

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
            sock.connect(address)
            sock.sendall(state.encode())
    except OSError as e:
        logger.warning(f"sd_notify({state}) failed: {e}")
        return False
    return True


def watchdog_interval() -> float:
    """Seconds between WATCHDOG=1 pings: half of WATCHDOG_USEC, 0 when unset."""
    try:
        usec = int(os.environ.get("WATCHDOG_USEC", "0"))
    except ValueError:
        return 0
    return usec / 2_000_000 if usec > 0 else 0


# =============================================================================
# SINGLE INSTANCE
# =============================================================================


class InstanceLock:
    """
    flock()-based lock plus a pid file for --status and --stop.

    Args:
        name: Base name of <lock_dir>/<name>.lock and <lock_dir>/<name>.pid
        lock_dir: Where both files live
    """

    def __init__(self, name: str, lock_dir: str = "/tmp"):
        self.lock_path = Path(lock_dir) / f"{name}.lock"
        self.pid_path = Path(lock_dir) / f"{name}.pid"
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> bool:
        """Take the lock without waiting. False if another process has it."""
        try:
            handle = open(self.lock_path, "w")
        except OSError as e:
            logger.error(f"Cannot open {self.lock_path}: {e}")
            return False
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            return False
        self._handle = handle
        self.pid_path.write_text(str(os.getpid()))
        return True

    def release(self):
        if self._handle is None:
            return
        try:
            self.pid_path.unlink()
        except FileNotFoundError:
            pass
        fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        self._handle.close()
        self._handle = None

    def owner_pid(self) -> Optional[int]:
        """Pid recorded in the pid file, if that process is alive."""
        try:
            pid = int(self.pid_path.read_text().strip())
            os.kill(pid, 0)
        except (OSError, ValueError):
            return None
        return pid


# =============================================================================
# DAEMON
# =============================================================================


class BaseDaemon(ABC):
    """
    One asyncio loop from startup() to shutdown(), ending in an exit status.

    Subclasses set `name` (used for the lock files and as the program name)
    and implement run_daemon(). Any component may end the run with
    terminate(exit_code, reason); the first call decides the status that
    run() returns.
    """

    name: str = ""
    description: str = ""

    def __init__(self, verbose: bool = False, lock_dir: str = "/tmp"):
        if not self.name:
            raise ValueError("Daemon 'name' must be set")

        self.verbose = verbose
        self.exit_code = EXIT_SUCCESS
        self._shutdown_event = asyncio.Event()
        self._lock = InstanceLock(self.name, lock_dir)
        self._watchdog_task: Optional[asyncio.Task] = None
        self._watchdog_healthy = True

    @property
    def pid_file(self) -> Path:
        return self._lock.pid_path

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_event.is_set()

    @abstractmethod
    async def run_daemon(self):
        """Runs until the shutdown event is set."""

    async def startup(self):
        pass

    async def shutdown(self):
        pass

    async def health_check(self) -> dict:
        return {"healthy": not self.is_shutting_down, "message": "ok"}

    def request_shutdown(self):
        """Stop without changing the exit status."""
        if not self._shutdown_event.is_set():
            logger.debug(f"Stopping {self.name}")
        self._shutdown_event.set()

    def terminate(self, exit_code: int, reason: str = ""):
        """Stop with exit_code. Ignored once stopping has begun."""
        if self._shutdown_event.is_set():
            logger.debug(f"Already stopping, ignoring terminate({exit_code}) {reason}")
            return
        self.exit_code = exit_code
        if reason:
            logger.log(logging.INFO if exit_code == EXIT_SUCCESS else logging.ERROR, reason)
        self.request_shutdown()

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()

        def on_signal(sig):
            logger.debug(f"Got {sig.name}")
            self.request_shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal, sig)

    async def _watchdog_loop(self):
        """
        Ping WATCHDOG=1 while health_check() passes.

        Pings stop while anything blocks the loop, a script run included,
        so the shipped unit does not set WatchdogSec.
        """
        interval = watchdog_interval()
        if not interval:
            return
        logger.debug(f"Watchdog ping every {interval:.1f}s")

        while not self._shutdown_event.is_set():
            result = await self.health_check()
            healthy = bool(result.get("healthy"))
            if healthy:
                sd_notify("WATCHDOG=1")
            elif self._watchdog_healthy:
                logger.warning(f"Unhealthy, withholding watchdog pings: {result.get('message', 'unknown')}")
            self._watchdog_healthy = healthy

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _run(self):
        self._install_signal_handlers()

        try:
            await self.startup()
            sd_notify("READY=1")
            logger.debug(f"{self.name} ready")
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())
            await self.run_daemon()
        except asyncio.CancelledError:
            logger.debug(f"{self.name} cancelled")
        except Exception as e:
            logger.exception(f"{self.name} failed: {e}")
            sd_notify(f"STATUS=Failed: {e}")
            self.exit_code = EXIT_FAILURE
        finally:
            if self._watchdog_task is not None:
                self._watchdog_task.cancel()
                try:
                    await self._watchdog_task
                except asyncio.CancelledError:
                    pass
            sd_notify("STOPPING=1")
            await self.shutdown()

    def run(self) -> int:
        """Hold the instance lock for the whole run and return the exit status."""
        if not self._lock.acquire():
            print(f"{self.name} is already running (PID: {self._lock.owner_pid()})")
            return EXIT_FAILURE

        try:
            asyncio.run(self._run())
        finally:
            self._lock.release()
        return self.exit_code

    @classmethod
    def configure_logging(cls, verbose: bool = False):
        # No timestamps: journald adds its own
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="%(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stderr)],
        )

    @classmethod
    def create_argument_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog=cls.name,
            description=cls.description or cls.name,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("--status", action="store_true", help=f"Report whether {cls.name} is running")
        parser.add_argument("--stop", action="store_true", help=f"Send SIGTERM to the running {cls.name}")
        parser.add_argument("-v", "--verbose", action="store_true", help="Log debug messages")
        return parser

    @classmethod
    def report_status(cls, lock_dir: str = "/tmp") -> int:
        pid = InstanceLock(cls.name, lock_dir).owner_pid()
        if pid is None:
            print(f"{cls.name} is not running")
            return EXIT_FAILURE
        print(f"{cls.name} is running (PID: {pid})")
        return EXIT_SUCCESS

    @classmethod
    def stop_running(cls, lock_dir: str = "/tmp") -> int:
        pid = InstanceLock(cls.name, lock_dir).owner_pid()
        if pid is None:
            print(f"{cls.name} is not running")
            return EXIT_FAILURE
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            print(f"Cannot stop {cls.name} (PID: {pid}): {e}")
            return EXIT_FAILURE
        print(f"Sent SIGTERM to {cls.name} (PID: {pid})")
        return EXIT_SUCCESS
