from __future__ import annotations

import asyncio
import os
from typing import Sequence

import structlog

logger = structlog.get_logger(__name__)

PRIMARY_REBOOT_COMMAND = ("/usr/bin/systemctl", "reboot", "-i")
FALLBACK_REBOOT_COMMAND = ("/sbin/reboot", "now")


class RebootExecutor:
    """Issues the privileged host reboot.

    The primary command asks systemd for a clean reboot; if it fails or is
    missing, the fallback asks the kernel directly. Success means the host is
    going down, so callers never wait on a result.
    """

    def __init__(
        self,
        primary: Sequence[str] = PRIMARY_REBOOT_COMMAND,
        fallback: Sequence[str] = FALLBACK_REBOOT_COMMAND,
        sync_filesystems=os.sync,
    ):
        self.primary = list(primary)
        self.fallback = list(fallback)
        self.sync_filesystems = sync_filesystems

    async def _run(self, argv: list[str]) -> int | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error("reboot_command_unavailable", argv=argv, error=f"{type(e).__name__}: {e}")
            return None
        return await proc.wait()

    async def reboot(self) -> None:
        logger.warning("reboot_initiated", reason="continuous WAN outage")
        try:
            self.sync_filesystems()
        except OSError as e:
            logger.error("sync_failed", error=f"{type(e).__name__}: {e}")

        code = await self._run(self.primary)
        if code == 0:
            logger.warning("reboot_requested", path="primary", argv=self.primary)
            return

        logger.error("reboot_primary_failed", argv=self.primary, exit_code=code)
        code = await self._run(self.fallback)
        logger.warning("reboot_requested", path="fallback", argv=self.fallback, exit_code=code)
