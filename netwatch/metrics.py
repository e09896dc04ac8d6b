from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class Metrics:
    total_reboots: int = 0
    total_outages: int = 0
    total_recoveries: int = 0
    total_downtime_seconds: int = 0
    service_start_time: float = 0.0
    last_health_report: float = 0.0

    def snapshot(self) -> "Metrics":
        return replace(self)

    def availability_percent(self, now_ts: float) -> float:
        runtime = float(now_ts) - float(self.service_start_time)
        if self.total_downtime_seconds <= 0 or runtime <= 0:
            return 100.0
        return max(0.0, 100.0 - (self.total_downtime_seconds * 100.0 / runtime))


def coerce_metrics(raw: Any, *, now_ts: float) -> Metrics:
    """
    Best-effort decode of the on-disk metrics document.
    Invalid or missing fields fall back to their defaults.
    """
    out = Metrics(service_start_time=float(now_ts))
    if not isinstance(raw, dict):
        return out

    for f in fields(Metrics):
        if f.name not in raw:
            continue
        value = raw[f.name]
        try:
            coerced = float(value) if f.type in ("float", float) else int(value)
        except (TypeError, ValueError):
            continue
        if coerced < 0:
            continue
        setattr(out, f.name, coerced)
    return out


class MetricsStore:
    """Durable counters kept in a small JSON file.

    Every mutation is written through immediately with write-then-replace, so
    a crash loses at most the event in flight and never leaves a torn file.
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.clock = clock
        self.metrics = Metrics(service_start_time=clock())

    def load(self) -> Metrics:
        now_ts = self.clock()
        raw: Any = None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.info("metrics_file_missing", path=str(self.path))
        except (OSError, ValueError) as e:
            logger.warning("metrics_file_unreadable", path=str(self.path), error=f"{type(e).__name__}: {e}")
        self.metrics = coerce_metrics(raw, now_ts=now_ts)
        return self.metrics

    def save(self, metrics: Metrics | None = None) -> bool:
        if metrics is not None:
            self.metrics = metrics
        payload = asdict(self.metrics)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(f"{self.path.name}.tmp")
            tmp.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            logger.error("metrics_save_failed", path=str(self.path), error=f"{type(e).__name__}: {e}")
            return False
        return True

    def record_outage(self) -> None:
        self.metrics.total_outages += 1
        self.save()

    def record_recovery(self, duration_seconds: int) -> None:
        self.metrics.total_recoveries += 1
        self.metrics.total_downtime_seconds += max(0, int(duration_seconds))
        self.save()

    def record_reboot(self) -> None:
        self.metrics.total_reboots += 1
        self.save()

    def record_health_report(self, now_ts: float) -> None:
        self.metrics.last_health_report = float(now_ts)
        self.save()
