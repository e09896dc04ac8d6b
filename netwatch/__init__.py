"""WAN watchdog that reboots the host after a continuous connectivity outage."""

__version__ = "0.1.0"
