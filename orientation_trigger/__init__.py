"""
Orientation Trigger

Runs a script whenever iio-sensor-proxy reports a new accelerometer
orientation. See orientation_trigger.daemon for usage.

Modules:
- daemon: CLI and daemon lifecycle
- watcher: iio-sensor-proxy presence state machine
- sensor_proxy: claimed connection and property cache
- dispatcher: orientation change -> script run
- runner: synchronous script execution
- config: config.json loading and script validation
"""

__version__ = "1.0.0"
