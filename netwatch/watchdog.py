from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable

import structlog

from netwatch.config import WatchdogConfig
from netwatch.metrics import MetricsStore
from netwatch.notifier import (
    EVENT_DOWN,
    EVENT_HEALTH,
    EVENT_REBOOT,
    EVENT_RECOVERY,
    EVENT_STARTUP,
    NotificationEvent,
    WebhookNotifier,
)
from netwatch.prober import ProbeOutcome, probe
from netwatch.reboot import RebootExecutor
from netwatch.state import Action, OutageState, advance
from netwatch.system import hostname, notify_heartbeat, notify_ready, system_uptime_seconds

logger = structlog.get_logger(__name__)

# Fixed pauses, independent of check_interval.
DISABLED_PAUSE_SECONDS = 30
REBOOT_PAUSE_SECONDS = 30
# A startup within this much system uptime is reported as "came back after boot".
STARTUP_EVENT_MAX_UPTIME = 600


class Watchdog:
    """Single decision-making loop: probe, track outages, reboot, report.

    OutageState and the metrics are only touched from this object's
    coroutines. Every collaborator is injectable so the loop can run against
    a simulated clock.
    """

    def __init__(
        self,
        config: WatchdogConfig,
        *,
        store: MetricsStore,
        notifier: WebhookNotifier,
        executor: RebootExecutor,
        probe_fn: Callable[[WatchdogConfig], Awaitable[ProbeOutcome]] = probe,
        clock: Callable[[], float] = time.time,
        uptime_fn: Callable[[], int] = system_uptime_seconds,
        hostname_fn: Callable[[], str] = hostname,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        ready_fn: Callable[[], object] = notify_ready,
        heartbeat_fn: Callable[[], object] = notify_heartbeat,
    ):
        self.config = config
        self.store = store
        self.notifier = notifier
        self.executor = executor
        self.probe_fn = probe_fn
        self.clock = clock
        self.uptime_fn = uptime_fn
        self.hostname = hostname_fn()
        self.sleep_fn = sleep_fn
        self.ready_fn = ready_fn
        self.heartbeat_fn = heartbeat_fn

        self.state = OutageState()
        self.next_health_report = 0.0
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep, returning True as soon as a stop was requested."""
        if self.sleep_fn is not None:
            await self.sleep_fn(max(0.0, float(seconds)))
            return self.stopped
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, float(seconds)))
        except asyncio.TimeoutError:
            return False
        return True

    def is_disabled(self) -> bool:
        return Path(self.config.disable_file).exists()

    def notify(self, kind: str, message: str, duration: int = 0) -> None:
        event = NotificationEvent(
            kind=kind,
            message=message,
            timestamp=self.clock(),
            hostname=self.hostname,
            duration=int(duration),
            uptime=self.uptime_fn(),
            metrics=self.store.metrics.snapshot(),
        )
        self.notifier.send(event)

    async def wait_boot_grace(self, uptime: int) -> bool:
        wait = max(0, self.config.boot_grace - int(uptime))
        if wait <= 0:
            return False
        logger.info("boot_grace_wait", wait_seconds=wait, uptime_seconds=uptime)
        return await self.sleep(wait)

    def announce_startup(self, uptime: int) -> None:
        if uptime >= STARTUP_EVENT_MAX_UPTIME:
            return
        m = self.store.metrics
        self.notify(
            EVENT_STARTUP,
            f"Service started after system boot (uptime: {uptime // 60}m, total reboots: {m.total_reboots})",
            duration=uptime,
        )
        logger.info("startup_notification", uptime_seconds=uptime, total_reboots=m.total_reboots)

    async def _probe_unless_stopped(self) -> ProbeOutcome | None:
        probe_task = asyncio.ensure_future(self.probe_fn(self.config))
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({probe_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
        if not probe_task.done():
            probe_task.cancel()
            return None
        return probe_task.result()

    async def run_cycle(self) -> float:
        """Run one monitoring cycle and return the pause before the next one."""
        if self.is_disabled():
            logger.info("watchdog_disabled", disable_file=self.config.disable_file)
            self.heartbeat_fn()
            return float(DISABLED_PAUSE_SECONDS)

        outcome = await self._probe_unless_stopped()
        if outcome is None:
            return 0.0

        cfg = self.config
        now = self.clock()
        is_up = outcome.is_up(cfg.min_ok)
        result = advance(
            self.state,
            is_up=is_up,
            now=now,
            down_window_seconds=cfg.down_window_seconds,
            cooldown_seconds=cfg.cooldown_seconds,
        )
        pause = float(cfg.check_interval)

        if result.action == Action.OUTAGE_STARTED:
            logger.warning(
                "wan_down",
                success_count=outcome.success_count,
                total=outcome.total,
                min_ok=cfg.min_ok,
                window_seconds=cfg.down_window_seconds,
            )
            self.store.record_outage()
            self.notify(
                EVENT_DOWN,
                f"WAN connectivity lost, monitoring for {cfg.down_window_seconds}s threshold",
            )
        elif result.action == Action.RECOVERED:
            logger.info("wan_recovered", outage_seconds=result.duration)
            self.store.record_recovery(result.duration)
            self.notify(
                EVENT_RECOVERY,
                f"WAN connectivity restored after {result.duration}s outage",
                duration=result.duration,
            )
        elif result.action == Action.OUTAGE_CONTINUES:
            logger.debug("wan_still_down", outage_seconds=result.duration, window_seconds=cfg.down_window_seconds)
        elif result.action == Action.COOLDOWN_BLOCKED:
            logger.info(
                "cooldown_active",
                remaining_seconds=result.cooldown_remaining,
                outage_seconds=result.duration,
            )
        elif result.action == Action.REBOOT:
            pause = await self._trigger_reboot(result.duration, pause)

        self.maybe_report_health(self.clock())
        self.heartbeat_fn()
        return pause

    async def _trigger_reboot(self, duration: int, pause: float) -> float:
        cfg = self.config
        if cfg.dry_run:
            logger.warning(
                "dry_run_reboot",
                outage_seconds=duration,
                window_seconds=cfg.down_window_seconds,
            )
            self.notify(EVENT_REBOOT, f"DRY_RUN: Would reboot after {duration}s outage", duration=duration)
            return pause

        logger.warning("reboot_threshold_met", outage_seconds=duration, window_seconds=cfg.down_window_seconds)
        self.store.record_reboot()
        self.notify(EVENT_REBOOT, f"Rebooting host after {duration}s continuous WAN outage", duration=duration)
        await self.executor.reboot()
        return float(REBOOT_PAUSE_SECONDS)

    def schedule_health_report(self, now: float) -> None:
        interval = self.config.webhook.health_interval
        self.next_health_report = now + interval if interval > 0 else 0.0

    def maybe_report_health(self, now: float) -> bool:
        interval = self.config.webhook.health_interval
        if interval <= 0 or now < self.next_health_report:
            return False

        m = self.store.metrics
        uptime = self.uptime_fn()
        availability = m.availability_percent(now)
        message = (
            f"Health report: uptime {uptime // 3600}h, {m.total_outages} outages "
            f"({m.total_recoveries} recoveries), {m.total_reboots} reboots, "
            f"{m.total_downtime_seconds // 3600}h total downtime, {availability:.1f}% availability"
        )
        self.notify(EVENT_HEALTH, message)
        logger.info(
            "health_report",
            uptime_seconds=uptime,
            total_outages=m.total_outages,
            total_recoveries=m.total_recoveries,
            total_reboots=m.total_reboots,
            total_downtime_seconds=m.total_downtime_seconds,
            availability_percent=round(availability, 1),
        )
        self.store.record_health_report(now)
        self.next_health_report = now + interval
        return True

    async def run(self) -> None:
        uptime = self.uptime_fn()
        self.store.load()

        if await self.wait_boot_grace(uptime):
            return
        self.ready_fn()
        logger.info("watchdog_started", **self.config.summary())

        self.announce_startup(uptime)
        self.schedule_health_report(self.clock())

        while not self.stopped:
            pause = await self.run_cycle()
            if await self.sleep(pause):
                break
        logger.info("watchdog_stopped", phase=self.state.phase.value)
