"""
Configuration loading for the orientation trigger.

Settings come from two places, command line first:
1. CLI options (--path, --show_output, --session-bus)
2. The "orientation_trigger" section of a config.json

config.json is searched in order:
1. The file given with --config
2. Current working directory
3. ~/.config/orientation-trigger/

Example config.json:
    {
        "orientation_trigger": {
            "script": "/home/me/bin/rotate-screen",
            "show_output": true,
            "bus": "system"
        }
    }
"""

import json
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from orientation_trigger.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_SECTION = "orientation_trigger"

USER_CONFIG_PATH = Path.home() / ".config" / "orientation-trigger" / "config.json"

PATH_SEPARATOR = "/"


@dataclass(frozen=True)
class RunConfiguration:
    """Validated settings handed to the watcher. Never changes after startup.

    Attributes:
        script_path: Script to run, as given by the user
        working_prefix: Directory prepended to script_path ("" when not needed)
        separator: Joins working_prefix and script_path ("" when not needed)
        show_output: Log a line for every appearance, vanish and script run
        bus_type: "system" or "session"
    """

    script_path: str
    working_prefix: str = ""
    separator: str = ""
    show_output: bool = False
    bus_type: str = "system"


def default_config_paths() -> list[Path]:
    """Standard config.json locations, in order of preference."""
    try:
        return [Path.cwd() / "config.json", USER_CONFIG_PATH]
    except OSError:
        # Working directory was removed; fatal later, in build_run_configuration()
        return [USER_CONFIG_PATH]


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Parse one config file. Its top level must be a JSON object."""
    try:
        with open(path) as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object, got {type(config).__name__}")
    return config


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load config.json from an explicit path or the standard locations.

    Args:
        config_path: Explicit config file. It must exist, parse and hold an object.

    Returns:
        Config dict, or empty dict if no usable file was found
    """
    if config_path:
        return _read_config_file(Path(config_path).expanduser())

    for path in default_config_paths():
        if path.exists():
            try:
                config = _read_config_file(path)
            except ConfigError as e:
                logger.warning(f"Ignoring {e}")
                continue
            logger.debug(f"Loaded config from {path}")
            return config
    return {}


def get_config_section(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return the orientation trigger section of a loaded config."""
    if not isinstance(config, dict):
        raise ConfigError("Config must be a JSON object")
    section = config.get(CONFIG_SECTION, {})
    if not isinstance(section, dict):
        raise ConfigError(f"'{CONFIG_SECTION}' in config must be an object")
    return section


def get_setting(settings: Dict[str, Any], key: str, expected: type, default: Any) -> Any:
    """
    Typed lookup in the config section.

    Raises:
        ConfigError: the key is present with a value of another type
    """
    value = settings.get(key, default)
    if not isinstance(value, expected):
        raise ConfigError(
            f"'{CONFIG_SECTION}.{key}' must be {expected.__name__}, got {type(value).__name__}"
        )
    return value


def validate_script(script_path: str):
    """
    Check that the script exists and its owner may execute it.

    Raises:
        ConfigError: with the message shown to the user
    """
    if not os.path.exists(script_path):
        raise ConfigError(f"Script '{script_path}' not found.")

    try:
        mode = os.stat(script_path).st_mode
    except OSError as e:
        raise ConfigError(f"Script '{script_path}' is not executable.") from e

    if not mode & stat.S_IXUSR:
        raise ConfigError(f"Script '{script_path}' is not executable.")


def working_directory_prefix(script_path: str, cwd: str) -> tuple[str, str]:
    """
    Decide what to put in front of the script path when running it.

    A relative path is run from the working directory. A path that already
    starts with the working directory, or any absolute path, is used as is.

    Returns:
        (prefix, separator) pair; both empty when the path is used unchanged
    """
    if script_path.startswith(cwd) or os.path.isabs(script_path):
        return "", ""
    return cwd, PATH_SEPARATOR


def build_run_configuration(
    script_path: str,
    show_output: bool = False,
    bus_type: str = "system",
) -> RunConfiguration:
    """
    Validate the script and build the configuration for this run.

    Raises:
        ConfigError: script missing or not executable, or the working
            directory cannot be determined
    """
    if not script_path:
        raise ConfigError("Path is not specified")

    if bus_type not in ("system", "session"):
        raise ConfigError(f"Unknown bus '{bus_type}', expected 'system' or 'session'")

    validate_script(script_path)

    try:
        cwd = os.getcwd()
    except OSError as e:
        raise ConfigError(f"getcwd() error: {e}") from e

    prefix, separator = working_directory_prefix(script_path, cwd)
    return RunConfiguration(
        script_path=script_path,
        working_prefix=prefix,
        separator=separator,
        show_output=show_output,
        bus_type=bus_type,
    )
