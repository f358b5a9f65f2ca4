"""
Script execution.

The runner is deliberately synchronous: it blocks the event loop until the
script exits, so no bus event is handled while a script is still running and
two runs can never overlap.
"""

import logging
import shlex
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Exit status reported when the shell itself cannot be started
SPAWN_FAILED = 127


@dataclass(frozen=True)
class ScriptInvocationTask:
    """One script run: the configured script plus the orientation to pass."""

    script_path: str
    working_prefix: str
    separator: str
    orientation: str

    def command_line(self) -> str:
        """Shell command line running the script with the orientation as $1."""
        script = f"{self.working_prefix}{self.separator}{self.script_path}"
        return f"{shlex.quote(script)} {shlex.quote(self.orientation)}"


class CommandRunner:
    """Runs a command line through the shell and waits for it."""

    def run(self, command_line: str) -> int:
        """
        Run the command and block until it exits.

        Output is not captured; the child inherits stdout/stderr.

        Returns:
            The child's exit status (negative if killed by a signal)
        """
        logger.debug(f"Running: {command_line}")
        try:
            result = subprocess.run(command_line, shell=True)
        except OSError as e:
            logger.error(f"Failed to start '{command_line}': {e}")
            return SPAWN_FAILED
        logger.debug(f"Command exited with {result.returncode}")
        return result.returncode
