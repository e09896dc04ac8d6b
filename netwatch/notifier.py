from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from netwatch.config import WatchdogConfig
from netwatch.metrics import Metrics

logger = structlog.get_logger(__name__)

EVENT_DOWN = "down"
EVENT_RECOVERY = "recovery"
EVENT_REBOOT = "reboot"
EVENT_STARTUP = "startup"
EVENT_HEALTH = "health"

_PLACEHOLDER_RE = re.compile(r"\{([A-Z_]+)\}")


@dataclass(frozen=True)
class NotificationEvent:
    kind: str
    message: str
    timestamp: float
    hostname: str
    duration: int = 0
    uptime: int = 0
    metrics: Metrics = field(default_factory=Metrics)

    @property
    def service_runtime(self) -> int:
        return max(0, int(self.timestamp - self.metrics.service_start_time))


def format_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def placeholder_values(event: NotificationEvent, config: WatchdogConfig) -> dict[str, str]:
    m = event.metrics
    return {
        "EVENT": event.kind,
        "MESSAGE": event.message,
        "HOSTNAME": event.hostname,
        "TIMESTAMP": format_timestamp(event.timestamp),
        "DURATION": str(int(event.duration)),
        "TARGETS": " ".join(config.active_targets),
        "DOWN_WINDOW": str(config.down_window_seconds),
        "UPTIME": str(int(event.uptime)),
        "TOTAL_REBOOTS": str(m.total_reboots),
        "TOTAL_OUTAGES": str(m.total_outages),
        "TOTAL_RECOVERIES": str(m.total_recoveries),
        "TOTAL_DOWNTIME": str(m.total_downtime_seconds),
        "SERVICE_RUNTIME": str(event.service_runtime),
    }


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute {NAME} placeholders in one pass; unknown names are kept verbatim."""
    return _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def build_body(event: NotificationEvent, config: WatchdogConfig) -> str:
    template = config.webhook.body_template
    if template:
        return render_template(template, placeholder_values(event, config))

    payload: dict[str, Any] = {
        "event": event.kind,
        "message": event.message,
        "hostname": event.hostname,
        "timestamp": format_timestamp(event.timestamp),
    }
    if event.kind in (EVENT_STARTUP, EVENT_HEALTH):
        m = event.metrics
        payload["uptime"] = int(event.uptime)
        payload["metrics"] = {
            "total_reboots": m.total_reboots,
            "total_outages": m.total_outages,
            "total_recoveries": m.total_recoveries,
            "total_downtime_seconds": m.total_downtime_seconds,
            "service_runtime": event.service_runtime,
        }
    else:
        payload["duration"] = int(event.duration)
        payload["targets"] = " ".join(config.active_targets)
    return json.dumps(payload, ensure_ascii=False)


def parse_headers(entries: list[str]) -> list[tuple[str, str]]:
    headers: list[tuple[str, str]] = []
    for entry in entries:
        name, sep, value = str(entry or "").partition(":")
        name = name.strip()
        if not sep or not name:
            logger.warning("webhook_header_invalid", header=entry, expected="Name: Value")
            continue
        value = value.strip()
        if not (name.isascii() and value.isascii()):
            # HTTP header fields are sent as ASCII.
            logger.warning("webhook_header_invalid", header=entry, expected="ASCII name and value")
            continue
        headers.append((name, value))
    return headers


def build_request_headers(config: WatchdogConfig, body: str) -> list[tuple[str, str]]:
    headers = parse_headers(config.webhook.headers)
    has_content_type = any(name.lower() == "content-type" for name, _ in headers)
    if not has_content_type and (body.startswith("{") or not config.webhook.body_template):
        headers.append(("Content-Type", "application/json"))
    return headers


class WebhookNotifier:
    """Fire-and-forget webhook delivery.

    send() schedules delivery on the running event loop and returns at once;
    failures are logged and dropped.
    """

    def __init__(self, config: WatchdogConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.transport = transport
        self._tasks: set[asyncio.Task] = set()

    def should_send(self, event: NotificationEvent) -> bool:
        webhook = self.config.webhook
        if not webhook.enabled or not webhook.url:
            return False
        return event.kind in webhook.events

    async def deliver(self, event: NotificationEvent) -> bool:
        webhook = self.config.webhook
        body = build_body(event, self.config)
        headers = build_request_headers(self.config, body)
        try:
            async with httpx.AsyncClient(timeout=float(webhook.timeout), transport=self.transport) as client:
                resp = await client.request(webhook.method, webhook.url, content=body.encode("utf-8"), headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            # ValueError covers request values httpx cannot encode.
            logger.warning("webhook_failed", kind=event.kind, url=webhook.url, error=f"{type(e).__name__}: {e}")
            return False

        if resp.status_code >= 400:
            logger.warning("webhook_failed", kind=event.kind, url=webhook.url, status_code=resp.status_code)
            return False
        logger.info("webhook_sent", kind=event.kind, status_code=resp.status_code)
        return True

    def send(self, event: NotificationEvent) -> asyncio.Task | None:
        if not self.should_send(event):
            return None
        task = asyncio.get_running_loop().create_task(self.deliver(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def aclose(self) -> None:
        """Cancel deliveries still in flight."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
