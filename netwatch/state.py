"""Outage state machine.

The watchdog is either MONITORING (WAN up) or OUTAGE_TRACKING (a continuous
run of failed cycles since ``down_since``). A reboot is only considered once
the outage reaches the window, and never within the cooldown of the previous
one. advance() is pure apart from mutating the state it is given.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum


class Phase(str, Enum):
    MONITORING = "monitoring"
    OUTAGE_TRACKING = "outage_tracking"


class Action(str, Enum):
    NONE = "none"
    OUTAGE_STARTED = "outage_started"
    OUTAGE_CONTINUES = "outage_continues"
    RECOVERED = "recovered"
    COOLDOWN_BLOCKED = "cooldown_blocked"
    REBOOT = "reboot"


@dataclass
class OutageState:
    down_since: float | None = None
    # None until the first reboot trigger of this process.
    last_reboot_at: float | None = None

    @property
    def phase(self) -> Phase:
        return Phase.MONITORING if self.down_since is None else Phase.OUTAGE_TRACKING


@dataclass(frozen=True)
class CycleResult:
    action: Action
    duration: int = 0
    cooldown_remaining: int = 0


def cooldown_remaining(state: OutageState, *, now: float, cooldown_seconds: int) -> float:
    if state.last_reboot_at is None:
        return 0.0
    return max(0.0, float(cooldown_seconds) - (float(now) - float(state.last_reboot_at)))


def advance(
    state: OutageState,
    *,
    is_up: bool,
    now: float,
    down_window_seconds: int,
    cooldown_seconds: int,
) -> CycleResult:
    if is_up:
        if state.down_since is None:
            return CycleResult(Action.NONE)
        duration = int(now - state.down_since)
        state.down_since = None
        return CycleResult(Action.RECOVERED, duration=duration)

    if state.down_since is None:
        state.down_since = float(now)
        return CycleResult(Action.OUTAGE_STARTED)

    elapsed = float(now) - state.down_since
    duration = int(elapsed)
    if elapsed < down_window_seconds:
        return CycleResult(Action.OUTAGE_CONTINUES, duration=duration)

    remaining = cooldown_remaining(state, now=now, cooldown_seconds=cooldown_seconds)
    if remaining > 0:
        return CycleResult(Action.COOLDOWN_BLOCKED, duration=duration, cooldown_remaining=math.ceil(remaining))

    state.last_reboot_at = float(now)
    return CycleResult(Action.REBOOT, duration=duration)
