"""Shared state of one agent run, passed explicitly to the event handlers."""

import logging
from typing import TYPE_CHECKING, Callable, Optional

from orientation_trigger.base.daemon import EXIT_SUCCESS
from orientation_trigger.config import RunConfiguration
from orientation_trigger.runner import CommandRunner

if TYPE_CHECKING:
    from orientation_trigger.sensor_proxy import SensorProxy

logger = logging.getLogger(__name__)


class AgentContext:
    """
    Everything the watcher and dispatcher share.

    Holds the run configuration, the command runner, the one live sensor
    connection (if any) and the exit status once the agent decided to stop.

    Args:
        config: Validated run configuration
        runner: Command runner (defaults to CommandRunner())
        on_terminate: Called once with the exit status when terminate() is
            first called; the daemon uses it to stop the event loop
    """

    def __init__(
        self,
        config: RunConfiguration,
        runner: Optional[CommandRunner] = None,
        on_terminate: Optional[Callable[[int], None]] = None,
    ):
        self.config = config
        self.runner = runner or CommandRunner()
        self.exit_code: Optional[int] = None
        self._connection: Optional["SensorProxy"] = None
        self._on_terminate = on_terminate

    @property
    def connection(self) -> Optional["SensorProxy"]:
        """The claimed sensor connection, or None while waiting."""
        return self._connection

    def attach(self, connection: "SensorProxy"):
        """Make connection the live one. Only one may be alive at a time."""
        if self._connection is not None:
            raise RuntimeError("A sensor connection is already active")
        self._connection = connection

    def detach(self) -> Optional["SensorProxy"]:
        """Forget the live connection and return it."""
        connection, self._connection = self._connection, None
        return connection

    @property
    def is_terminating(self) -> bool:
        return self.exit_code is not None

    def terminate(self, exit_code: int, reason: str = ""):
        """Stop the agent with exit_code. Only the first call has an effect."""
        if self.exit_code is not None:
            return
        self.exit_code = exit_code
        if reason:
            if exit_code == EXIT_SUCCESS:
                logger.info(reason)
            else:
                logger.error(reason)
        if self._on_terminate:
            self._on_terminate(exit_code)
