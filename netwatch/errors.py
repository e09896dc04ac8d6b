"""Exception types raised by the watchdog."""


class NetwatchError(Exception):
    """Base class for watchdog errors."""


class ConfigError(NetwatchError):
    """Configuration could not be loaded or failed validation."""


class ProbeUnavailableError(NetwatchError):
    """The selected health check mode has no usable probing mechanism."""
