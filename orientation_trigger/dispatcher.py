"""Turns orientation changes into script runs."""

import logging
from typing import Optional

from orientation_trigger.base.daemon import EXIT_FAILURE
from orientation_trigger.context import AgentContext
from orientation_trigger.runner import ScriptInvocationTask

logger = logging.getLogger(__name__)


class ChangeDispatcher:
    """Runs the configured script once per orientation value it is given."""

    def __init__(self, context: AgentContext):
        self.context = context
        self.runs = 0

    def on_orientation_changed(self, orientation: str) -> Optional[int]:
        """
        Run the script with orientation as its only argument and wait for it.

        A non-zero exit status stops the agent with failure.

        Returns:
            The script's exit status, or None if the agent is already stopping
        """
        if self.context.is_terminating:
            logger.debug(f"Not running script for '{orientation}', agent is stopping")
            return None

        config = self.context.config
        if config.show_output:
            logger.info(f"Executing script '{config.script_path}' with orientation: {orientation}")

        task = ScriptInvocationTask(
            script_path=config.script_path,
            working_prefix=config.working_prefix,
            separator=config.separator,
            orientation=orientation,
        )
        self.runs += 1
        exit_code = self.context.runner.run(task.command_line())

        if exit_code != 0:
            self.context.terminate(EXIT_FAILURE, f"Exiting because script returned {exit_code}")
        return exit_code
