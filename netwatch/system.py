"""Host facts and the systemd notify protocol."""

from __future__ import annotations

import os
import socket
import time
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

PROC_UPTIME = Path("/proc/uptime")


def system_uptime_seconds(path: Path = PROC_UPTIME) -> int:
    """Seconds since boot, read from /proc/uptime (falls back to the monotonic clock)."""
    try:
        return int(float(path.read_text(encoding="utf-8").split()[0]))
    except (OSError, ValueError, IndexError):
        return int(time.monotonic())


def hostname() -> str:
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"


def sd_notify(message: str) -> bool:
    """Send a datagram to the systemd notify socket.

    No-op (returns False) when NOTIFY_SOCKET is unset, e.g. outside systemd.
    """
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return False
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(message.encode("utf-8"), addr)
    except OSError as e:
        logger.debug("sd_notify_failed", message=message, error=f"{type(e).__name__}: {e}")
        return False
    finally:
        sock.close()
    return True


def notify_ready() -> bool:
    return sd_notify("READY=1")


def notify_heartbeat() -> bool:
    return sd_notify("WATCHDOG=1")
