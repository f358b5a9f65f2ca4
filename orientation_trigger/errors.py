"""Exceptions raised by the orientation trigger.

Fatal conditions are not raised through the event loop; they end up in
``AgentContext.terminate()``. These exceptions mark the places where a
failure is detected so callers can decide whether it is fatal or skippable.
"""


class TriggerError(Exception):
    """Base class for orientation trigger errors."""


class ConfigError(TriggerError):
    """The script, working directory or config file is unusable."""


class ClaimError(TriggerError):
    """The sensor service refused or failed the accelerometer claim."""


class PropertyReadError(TriggerError):
    """A cached sensor property is missing or has an unexpected type.

    Attributes:
        property_name: D-Bus name of the property that could not be read
    """

    def __init__(self, property_name: str, message: str):
        super().__init__(f"{property_name}: {message}")
        self.property_name = property_name
